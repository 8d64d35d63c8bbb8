"""执行缓存 - 以 ExecSpec 哈希为键，存放于 execution_lineage（status='cached'）"""

import hashlib
import json
import uuid
from datetime import datetime, timedelta
from typing import Optional

from analytics_engine.core.constants import CACHE_TTL_SECONDS
from analytics_engine.engines.duckdb_store import DuckDBStore
from analytics_engine.models.exec_spec import ExecSpec
from analytics_engine.models.result import AnalysisWarning, ExecResult, PolicyApplication
from analytics_engine.utils.logger import log


class ExecCache:
    """
    尽力而为的结果缓存

    读写失败只记录日志，调用方退化为直接执行。
    """

    def __init__(self, store: DuckDBStore, ttl_seconds: int = CACHE_TTL_SECONDS):
        self.store = store
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def generate_cache_key(spec: ExecSpec, dataset_id: str) -> str:
        """SHA-256(规范化 JSON(ExecSpec, dataset_id))，纯函数"""
        payload = {"exec_spec": spec.model_dump(mode="json"), "dataset_id": dataset_id}
        canonical = json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def _not_before(self) -> datetime:
        return datetime.now() - timedelta(seconds=self.ttl_seconds)

    async def get(self, cache_key: str, dataset_id: str) -> Optional[ExecResult]:
        """
        读取未过期的缓存

        Returns:
            新 exec_id 的 ExecResult（cache_hit=True），未命中或出错返回 None
        """
        try:
            entry = await self.store.find_cache_entry(cache_key, dataset_id, self._not_before())
            if entry is None or entry.get("result_data") is None:
                return None
            summary = entry.get("result_summary") or {}
            result = ExecResult(
                exec_id=str(uuid.uuid4()),
                success=True,
                data=entry["result_data"],
                warnings=[AnalysisWarning(**w) for w in summary.get("warnings", [])],
                execution_time_ms=entry.get("execution_time_ms") or 0.0,
                rows_processed=summary.get("rows_processed", 0),
                rows_returned=len(entry["result_data"]),
                policies_applied=[PolicyApplication(**p) for p in summary.get("policies_applied", [])],
                sql_generated=entry.get("sql_generated"),
                exec_spec_hash=cache_key,
                executed_spec=ExecSpec(**entry["exec_spec"]) if entry.get("exec_spec") else None,
                cache_hit=True,
                cached_from_exec_id=entry["exec_id"]
            )
        except Exception as e:
            log.warning(f"缓存读取失败，直接执行: {e}")
            return None
        log.info(f"缓存命中: {cache_key[:12]}... (来源 {result.cached_from_exec_id})")
        return result

    async def set(self, cache_key: str, dataset_id: str, result: ExecResult) -> bool:
        """写入成功的执行结果"""
        try:
            await self.store.insert_lineage({
                "exec_id": result.exec_id,
                "dataset_id": dataset_id,
                "exec_spec": result.executed_spec.model_dump(mode="json") if result.executed_spec else {},
                "exec_spec_hash": cache_key,
                "sql_generated": result.sql_generated,
                "result_summary": {
                    "rows_processed": result.rows_processed,
                    "rows_returned": result.rows_returned,
                    "policies_applied": [p.model_dump() for p in result.policies_applied],
                    "warnings": [w.model_dump() for w in result.warnings],
                },
                "result_data": result.data,
                "status": "cached",
                "execution_time_ms": result.execution_time_ms,
            })
        except Exception as e:
            log.warning(f"缓存写入失败: {e}")
            return False
        log.debug(f"缓存写入: {cache_key[:12]}...")
        return True

    async def invalidate_cache(self, dataset_id: str) -> int:
        """删除某数据集的全部缓存记录"""
        try:
            removed = await self.store.delete_cache_entries(dataset_id=dataset_id)
        except Exception as e:
            log.warning(f"缓存失效失败 ({dataset_id}): {e}")
            return 0
        log.info(f"数据集 {dataset_id} 缓存已失效: {removed} 条")
        return removed

    async def clean_expired_cache(self) -> int:
        """删除超过 TTL 的缓存记录"""
        try:
            removed = await self.store.delete_cache_entries(before=self._not_before())
        except Exception as e:
            log.warning(f"过期缓存清理失败: {e}")
            return 0
        if removed:
            log.info(f"已清理过期缓存 {removed} 条")
        return removed
