"""Lineage Logger - 执行血缘、产物与性能日志（写入均为尽力而为）"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from analytics_engine.engines.duckdb_store import DuckDBStore
from analytics_engine.models.datacard import DataCard
from analytics_engine.models.lineage import ArtifactRecord, LineageTrace, PerformanceLogEntry
from analytics_engine.models.result import ExecResult
from analytics_engine.utils.logger import log


class LineageLogger:
    """血缘记录器"""

    def __init__(self, store: DuckDBStore):
        self.store = store

    async def log_execution(
        self,
        result: ExecResult,
        datacard: DataCard,
        extra: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        记录一次执行

        Args:
            result: 执行结果
            datacard: 执行时使用的 DataCard
            extra: 附加到结果摘要的信息（模板、兜底策略等）

        Returns:
            是否写入成功（失败只记日志）
        """
        summary: Dict[str, Any] = {
            "success": result.success,
            "rows_returned": result.rows_returned,
            "rows_processed": result.rows_processed,
            "error_code": result.error_code,
            "cache_hit": result.cache_hit,
            "cached_from_exec_id": result.cached_from_exec_id,
            "warnings": len(result.warnings),
            "policies_applied": [p.policy_name for p in result.policies_applied],
        }
        if extra:
            summary.update(extra)

        trace = LineageTrace(
            exec_id=result.exec_id,
            dataset_id=datacard.dataset_id,
            exec_spec=result.executed_spec.model_dump(mode="json") if result.executed_spec else {},
            exec_spec_hash=result.exec_spec_hash,
            datacard_summary=datacard.summary(),
            sql_generated=result.sql_generated,
            result_summary=summary,
            status="success" if result.success else "failed",
            execution_time_ms=result.execution_time_ms
        )
        try:
            await self.store.insert_lineage(trace.model_dump())
        except Exception as e:
            log.error(f"血缘写入失败 ({result.exec_id}): {e}")
            return False
        return True

    async def log_artifact(
        self,
        exec_id: str,
        artifact_type: str,
        payload: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[str]:
        """记录产物，返回 artifact_id（失败返回 None）"""
        try:
            record = ArtifactRecord(
                artifact_id=str(uuid.uuid4()),
                exec_id=exec_id,
                artifact_type=artifact_type,
                payload=payload,
                metadata=metadata or {}
            )
            await self.store.insert_artifact(record.model_dump())
        except Exception as e:
            log.error(f"产物写入失败 ({exec_id}): {e}")
            return None
        return record.artifact_id

    async def log_performance(self, entry: PerformanceLogEntry) -> bool:
        try:
            await self.store.insert_performance(entry.model_dump())
        except Exception as e:
            log.error(f"性能日志写入失败 ({entry.dataset_id}): {e}")
            return False
        return True

    async def get_lineage_trace(self, exec_id: str) -> Optional[LineageTrace]:
        row = await self.store.get_lineage(exec_id)
        if row is None:
            return None
        return LineageTrace(
            exec_id=row["exec_id"],
            dataset_id=row["dataset_id"],
            exec_spec=row.get("exec_spec") or {},
            exec_spec_hash=row.get("exec_spec_hash"),
            datacard_summary=row.get("datacard_summary") or {},
            sql_generated=row.get("sql_generated"),
            result_summary=row.get("result_summary") or {},
            status=row["status"],
            execution_time_ms=row.get("execution_time_ms") or 0.0,
            created_at=row["created_at"]
        )

    async def get_artifacts(self, exec_id: str) -> List[ArtifactRecord]:
        rows = await self.store.get_artifacts(exec_id)
        return [ArtifactRecord(**row) for row in rows]

    async def get_performance_stats(self, days: int = 7) -> Dict[str, Any]:
        """
        最近 N 天的流水线统计

        Returns:
            总次数、成功率、平均/最大耗时、模板命中率、兜底策略分布、各阶段平均耗时
        """
        rows = await self.store.performance_rows(datetime.now() - timedelta(days=days))
        total = len(rows)
        if total == 0:
            return {"days": days, "total_analyses": 0}

        times = [r["total_time_ms"] or 0.0 for r in rows]
        fallback_counts: Dict[str, int] = {}
        stage_totals: Dict[str, List[float]] = {}
        for row in rows:
            if row.get("fallback_strategy"):
                key = row["fallback_strategy"]
                fallback_counts[key] = fallback_counts.get(key, 0) + 1
            for stage, ms in (row.get("stage_timings") or {}).items():
                stage_totals.setdefault(stage, []).append(ms)

        return {
            "days": days,
            "total_analyses": total,
            "success_rate": round(sum(1 for r in rows if r["success"]) / total, 4),
            "avg_time_ms": round(sum(times) / total, 2),
            "max_time_ms": round(max(times), 2),
            "template_hit_rate": round(sum(1 for r in rows if r.get("template_used")) / total, 4),
            "fallback_strategies": fallback_counts,
            "avg_stage_timings": {k: round(sum(v) / len(v), 2) for k, v in stage_totals.items()},
        }
