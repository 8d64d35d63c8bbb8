"""DuckDB Store - 行存储、血缘/缓存表与参考数据表"""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import duckdb
import pandas as pd

from analytics_engine.core.errors import SchemaDetectionError
from analytics_engine.models.datacard import DatasetInfo, DatasetSample
from analytics_engine.models.semantic import SemanticEntry
from analytics_engine.models.template import AnalyticsTemplate, MetricDefinition
from analytics_engine.utils.logger import log
from analytics_engine.utils.sql_safety import validate_select_only

SEED_DIR = Path(__file__).resolve().parent.parent / "data"

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS datasets (
        dataset_id VARCHAR PRIMARY KEY,
        name VARCHAR,
        source_type VARCHAR,
        columns JSON,
        column_types JSON,
        total_rows BIGINT,
        created_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dataset_rows (
        dataset_id VARCHAR,
        row_index BIGINT,
        data JSON
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS execution_lineage (
        exec_id VARCHAR,
        dataset_id VARCHAR,
        exec_spec JSON,
        exec_spec_hash VARCHAR,
        datacard_summary JSON,
        sql_generated VARCHAR,
        result_summary JSON,
        result_data JSON,
        status VARCHAR,
        execution_time_ms DOUBLE,
        created_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS lineage_artifacts (
        artifact_id VARCHAR,
        exec_id VARCHAR,
        artifact_type VARCHAR,
        payload JSON,
        metadata JSON,
        created_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS analytics_performance_log (
        exec_id VARCHAR,
        dataset_id VARCHAR,
        stage_completed VARCHAR,
        template_used VARCHAR,
        fallback_strategy VARCHAR,
        success BOOLEAN,
        error_code VARCHAR,
        total_time_ms DOUBLE,
        stage_timings JSON,
        created_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS semantic_dictionary (
        sort_order INTEGER,
        canonical_name VARCHAR,
        entity_type VARCHAR,
        aliases JSON,
        domain VARCHAR,
        language VARCHAR,
        confidence DOUBLE,
        description VARCHAR,
        is_active BOOLEAN
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS metrics_registry (
        sort_order INTEGER,
        metric_name VARCHAR,
        definition JSON,
        category VARCHAR,
        is_active BOOLEAN
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS analytics_templates (
        sort_order INTEGER,
        id VARCHAR,
        domain VARCHAR,
        definition JSON,
        is_active BOOLEAN
    )
    """,
]


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def _loads(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value)


class DuckDBStore:
    """
    DuckDB 存储客户端（显式构造并注入，不使用全局单例）

    所有异步方法通过 asyncio.to_thread 执行，每次调用使用独立 cursor。
    """

    def __init__(self, db_path: str | Path = ":memory:", seed: bool = True):
        self.db_path = str(db_path)
        self._conn = duckdb.connect(self.db_path)
        self._init_schema()
        if seed:
            self.seed_reference_data()
        log.info(f"DuckDB 存储已就绪: {self.db_path}")

    def _init_schema(self):
        for statement in SCHEMA_STATEMENTS:
            self._conn.execute(statement)

    def close(self):
        self._conn.close()

    # ------------------------------------------------------------------
    # 底层执行
    # ------------------------------------------------------------------

    def _query(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        cursor = self._conn.cursor()
        try:
            cursor.execute(sql, params or [])
            if cursor.description is None:
                return []
            columns = [d[0] for d in cursor.description]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]
        finally:
            cursor.close()

    async def fetch(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._query, sql, params)

    async def execute_secure_sql(self, sql: str, dataset_id: str, params: List[Any]) -> List[Dict[str, Any]]:
        """
        执行编译器生成的只读查询

        Args:
            sql: 单条 SELECT（第一个占位符固定为 dataset_id）
            dataset_id: 数据集ID
            params: 其余绑定参数

        Returns:
            结果行
        """
        validate_select_only(sql)
        return await self.fetch(sql, [dataset_id, *params])

    # ------------------------------------------------------------------
    # 数据集
    # ------------------------------------------------------------------

    def _save_dataset(self, info: DatasetInfo, records: List[Dict[str, Any]]):
        rows_df = pd.DataFrame({
            "dataset_id": [info.dataset_id] * len(records),
            "row_index": list(range(len(records))),
            "data": [_dumps(r) for r in records],
        })
        cursor = self._conn.cursor()
        try:
            cursor.execute("DELETE FROM dataset_rows WHERE dataset_id = ?", [info.dataset_id])
            cursor.execute("DELETE FROM datasets WHERE dataset_id = ?", [info.dataset_id])
            cursor.execute(
                "INSERT INTO datasets VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    info.dataset_id, info.name, info.source_type,
                    _dumps(info.columns), _dumps(info.column_types),
                    info.total_rows, info.created_at
                ]
            )
            if records:
                cursor.register("rows_df", rows_df)
                cursor.execute(
                    "INSERT INTO dataset_rows SELECT dataset_id, row_index, CAST(data AS JSON) FROM rows_df"
                )
                cursor.unregister("rows_df")
        finally:
            cursor.close()

    async def save_dataset(self, info: DatasetInfo, records: List[Dict[str, Any]]):
        """写入数据集元数据与行"""
        await asyncio.to_thread(self._save_dataset, info, records)
        log.info(f"数据集 {info.dataset_id} 已写入: {len(records)} 行")

    @staticmethod
    def _to_dataset_info(row: Dict[str, Any]) -> DatasetInfo:
        return DatasetInfo(
            dataset_id=row["dataset_id"],
            name=row["name"],
            source_type=row["source_type"],
            columns=_loads(row["columns"]) or [],
            column_types=_loads(row["column_types"]) or {},
            total_rows=row["total_rows"],
            created_at=row["created_at"]
        )

    async def get_dataset(self, dataset_id: str) -> Optional[DatasetInfo]:
        rows = await self.fetch("SELECT * FROM datasets WHERE dataset_id = ?", [dataset_id])
        return self._to_dataset_info(rows[0]) if rows else None

    async def list_datasets(self) -> List[DatasetInfo]:
        rows = await self.fetch("SELECT * FROM datasets ORDER BY created_at")
        return [self._to_dataset_info(r) for r in rows]

    async def get_dataset_sample(self, dataset_id: str, limit: int) -> DatasetSample:
        """
        读取代表性样本

        Raises:
            SchemaDetectionError: 数据集不存在
        """
        info = await self.get_dataset(dataset_id)
        if info is None:
            raise SchemaDetectionError(f"数据集不存在: {dataset_id}", detail={"dataset_id": dataset_id})

        rows = await self.fetch(
            "SELECT data FROM dataset_rows WHERE dataset_id = ? ORDER BY row_index LIMIT ?",
            [dataset_id, limit]
        )
        records = [_loads(r["data"]) for r in rows]
        return DatasetSample(
            columns=info.columns,
            rows=[[record.get(col) for col in info.columns] for record in records],
            total_rows=info.total_rows,
            column_types=info.column_types
        )

    async def delete_dataset(self, dataset_id: str):
        await self.fetch("DELETE FROM dataset_rows WHERE dataset_id = ?", [dataset_id])
        await self.fetch("DELETE FROM datasets WHERE dataset_id = ?", [dataset_id])
        log.info(f"数据集 {dataset_id} 已删除")

    # ------------------------------------------------------------------
    # 血缘与缓存
    # ------------------------------------------------------------------

    async def insert_lineage(self, record: Dict[str, Any]):
        await self.fetch(
            "INSERT INTO execution_lineage VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                record["exec_id"],
                record["dataset_id"],
                _dumps(record.get("exec_spec") or {}),
                record.get("exec_spec_hash"),
                _dumps(record.get("datacard_summary") or {}),
                record.get("sql_generated"),
                _dumps(record.get("result_summary") or {}),
                _dumps(record["result_data"]) if record.get("result_data") is not None else None,
                record["status"],
                record.get("execution_time_ms", 0.0),
                record.get("created_at") or datetime.now(),
            ]
        )

    @staticmethod
    def _decode_lineage(row: Dict[str, Any]) -> Dict[str, Any]:
        for key in ("exec_spec", "datacard_summary", "result_summary", "result_data"):
            row[key] = _loads(row.get(key))
        return row

    async def get_lineage(self, exec_id: str) -> Optional[Dict[str, Any]]:
        """审计记录优先于缓存记录"""
        rows = await self.fetch(
            """
            SELECT * FROM execution_lineage
            WHERE exec_id = ?
            ORDER BY CASE WHEN status = 'cached' THEN 1 ELSE 0 END, created_at DESC
            LIMIT 1
            """,
            [exec_id]
        )
        return self._decode_lineage(rows[0]) if rows else None

    async def find_cache_entry(self, exec_spec_hash: str, dataset_id: str, not_before: datetime) -> Optional[Dict[str, Any]]:
        rows = await self.fetch(
            """
            SELECT * FROM execution_lineage
            WHERE exec_spec_hash = ? AND dataset_id = ? AND status = 'cached' AND created_at >= ?
            ORDER BY created_at DESC
            LIMIT 1
            """,
            [exec_spec_hash, dataset_id, not_before]
        )
        return self._decode_lineage(rows[0]) if rows else None

    def _delete_cache(self, dataset_id: Optional[str], before: Optional[datetime]) -> int:
        conditions = ["status = 'cached'"]
        params: List[Any] = []
        if dataset_id is not None:
            conditions.append("dataset_id = ?")
            params.append(dataset_id)
        if before is not None:
            conditions.append("created_at < ?")
            params.append(before)
        where = " AND ".join(conditions)
        count = self._query(f"SELECT COUNT(*) AS n FROM execution_lineage WHERE {where}", params)[0]["n"]
        if count:
            self._query(f"DELETE FROM execution_lineage WHERE {where}", params)
        return int(count)

    async def delete_cache_entries(self, dataset_id: Optional[str] = None, before: Optional[datetime] = None) -> int:
        return await asyncio.to_thread(self._delete_cache, dataset_id, before)

    async def insert_artifact(self, record: Dict[str, Any]):
        await self.fetch(
            "INSERT INTO lineage_artifacts VALUES (?, ?, ?, ?, ?, ?)",
            [
                record["artifact_id"],
                record["exec_id"],
                record["artifact_type"],
                _dumps(record.get("payload") or {}),
                _dumps(record.get("metadata") or {}),
                record.get("created_at") or datetime.now(),
            ]
        )

    async def get_artifacts(self, exec_id: str) -> List[Dict[str, Any]]:
        rows = await self.fetch(
            "SELECT * FROM lineage_artifacts WHERE exec_id = ? ORDER BY created_at",
            [exec_id]
        )
        for row in rows:
            row["payload"] = _loads(row["payload"])
            row["metadata"] = _loads(row["metadata"])
        return rows

    async def insert_performance(self, record: Dict[str, Any]):
        await self.fetch(
            "INSERT INTO analytics_performance_log VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                record.get("exec_id"),
                record["dataset_id"],
                record["stage_completed"],
                record.get("template_used"),
                record.get("fallback_strategy"),
                record.get("success", True),
                record.get("error_code"),
                record.get("total_time_ms", 0.0),
                _dumps(record.get("stage_timings") or {}),
                record.get("created_at") or datetime.now(),
            ]
        )

    async def performance_rows(self, since: datetime) -> List[Dict[str, Any]]:
        rows = await self.fetch(
            "SELECT * FROM analytics_performance_log WHERE created_at >= ? ORDER BY created_at",
            [since]
        )
        for row in rows:
            row["stage_timings"] = _loads(row["stage_timings"]) or {}
        return rows

    # ------------------------------------------------------------------
    # 参考数据（语义词典 / 指标注册表 / 模板注册表）
    # ------------------------------------------------------------------

    def _table_empty(self, table: str) -> bool:
        return self._query(f"SELECT COUNT(*) AS n FROM {table}")[0]["n"] == 0

    def seed_reference_data(self, seed_dir: Path = SEED_DIR):
        """参考表为空时从内置 JSON 初始化"""
        if self._table_empty("semantic_dictionary"):
            entries = [SemanticEntry(**e) for e in json.loads((seed_dir / "semantic_dictionary.json").read_text(encoding="utf-8"))]
            self.replace_semantic_entries(entries)
        if self._table_empty("metrics_registry"):
            metrics = [MetricDefinition(**m) for m in json.loads((seed_dir / "metrics_registry.json").read_text(encoding="utf-8"))]
            self.replace_metrics(metrics)
        if self._table_empty("analytics_templates"):
            templates = [AnalyticsTemplate(**t) for t in json.loads((seed_dir / "templates.json").read_text(encoding="utf-8"))]
            self.replace_templates(templates)

    def replace_semantic_entries(self, entries: List[SemanticEntry]):
        self._query("DELETE FROM semantic_dictionary")
        for order, e in enumerate(entries):
            self._query(
                "INSERT INTO semantic_dictionary VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [order, e.canonical_name, e.entity_type, _dumps(e.aliases), e.domain,
                 e.language, e.confidence, e.description, e.is_active]
            )
        log.info(f"语义词典已载入 {len(entries)} 条")

    def replace_metrics(self, metrics: List[MetricDefinition]):
        self._query("DELETE FROM metrics_registry")
        for order, m in enumerate(metrics):
            self._query(
                "INSERT INTO metrics_registry VALUES (?, ?, ?, ?, ?)",
                [order, m.metric_name, m.model_dump_json(), m.category, m.is_active]
            )
        log.info(f"指标注册表已载入 {len(metrics)} 条")

    def replace_templates(self, templates: List[AnalyticsTemplate]):
        self._query("DELETE FROM analytics_templates")
        for order, t in enumerate(templates):
            self._query(
                "INSERT INTO analytics_templates VALUES (?, ?, ?, ?, ?)",
                [order, t.id, t.domain, t.model_dump_json(), t.is_active]
            )
        log.info(f"模板注册表已载入 {len(templates)} 条")

    async def load_semantic_entries(self) -> List[SemanticEntry]:
        rows = await self.fetch("SELECT * FROM semantic_dictionary WHERE is_active ORDER BY sort_order")
        return [
            SemanticEntry(
                canonical_name=r["canonical_name"],
                entity_type=r["entity_type"],
                aliases=_loads(r["aliases"]) or [],
                domain=r["domain"],
                language=r["language"],
                confidence=r["confidence"],
                description=r["description"] or "",
                is_active=r["is_active"]
            )
            for r in rows
        ]

    async def load_metrics(self) -> List[MetricDefinition]:
        rows = await self.fetch("SELECT definition FROM metrics_registry WHERE is_active ORDER BY sort_order")
        return [MetricDefinition(**_loads(r["definition"])) for r in rows]

    async def load_templates(self) -> List[AnalyticsTemplate]:
        rows = await self.fetch("SELECT definition FROM analytics_templates WHERE is_active ORDER BY sort_order")
        return [AnalyticsTemplate(**_loads(r["definition"])) for r in rows]
