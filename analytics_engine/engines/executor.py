"""Executor - 校验 → 策略改写 → 编译 → 执行（带超时与缓存）"""

import asyncio
import math
import time
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

from analytics_engine.core.config import AnalyticsConfig, get_analytics_config, settings
from analytics_engine.core.constants import SUPPORTED_OPERATIONS
from analytics_engine.core.errors import ErrorCode, QueryExecutionError
from analytics_engine.engines.exec_cache import ExecCache
from analytics_engine.engines.policies_engine import PoliciesEngine
from analytics_engine.engines.sql_compiler import CompiledQuery, SQLCompiler, check_filter_shape, coerce_value
from analytics_engine.models.datacard import DataCard
from analytics_engine.models.exec_spec import ExecSpec
from analytics_engine.models.result import AnalysisWarning, ExecResult, PolicyApplication
from analytics_engine.utils.logger import log
from analytics_engine.utils.sql_safety import bare_identifiers, validate_query_complexity

NUMERIC_AGGREGATIONS = {"sum", "avg", "median", "stddev"}
RANKING_WINDOWS = {"row_number", "rank", "dense_rank"}
SLOW_QUERY_MS = 5000.0


class SQLPort(Protocol):
    """关系执行端口"""

    async def execute_secure_sql(self, sql: str, dataset_id: str, params: List[Any]) -> List[Dict[str, Any]]:
        ...


def _normalize_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        value = float(value)
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def normalize_rows(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """结果行转为 JSON 友好的取值"""
    return [{k: _normalize_value(v) for k, v in row.items()} for row in rows]


def validate_spec(spec: ExecSpec, datacard: DataCard) -> List[str]:
    """
    编译前的最后一道校验

    Returns:
        错误列表（空表示通过）
    """
    errors = validate_query_complexity(spec.model_dump())
    columns = {c.name: c for c in datacard.columns}

    for operation in spec.operations:
        if operation.op not in SUPPORTED_OPERATIONS:
            errors.append(f"不支持的操作: {operation.op}")

    for dim in spec.dimensions:
        if dim not in columns:
            errors.append(f"维度列不存在: {dim}")
    if len(set(spec.dimensions)) != len(spec.dimensions):
        errors.append("维度重复")

    measure_names = [m.name for m in spec.measures]
    if len(set(measure_names)) != len(measure_names):
        errors.append("度量名重复")
    for name in set(measure_names) & set(spec.dimensions):
        errors.append(f"度量名与维度冲突: {name}")

    for measure in spec.measures:
        if measure.aggregation == "custom":
            try:
                bare = bare_identifiers(measure.formula, set(columns))
            except ValueError as e:
                errors.append(f"度量 {measure.name} 公式无效: {e}")
                continue
            ungrouped = [name for name in bare if name not in spec.dimensions]
            if ungrouped:
                errors.append(f"度量 {measure.name} 公式中的列必须位于聚合函数内: {', '.join(ungrouped)}")
            continue
        if measure.aggregation == "count" and measure.column in (None, "*"):
            continue
        col = columns.get(measure.column)
        if col is None:
            errors.append(f"度量列不存在: {measure.column}")
        elif measure.aggregation in NUMERIC_AGGREGATIONS and col.type != "numeric":
            errors.append(f"度量 {measure.name} 的 {measure.aggregation} 需要数值列，{col.name} 为 {col.type}")

    for f in spec.filters:
        col = columns.get(f.column)
        if col is None:
            errors.append(f"过滤列不存在: {f.column}")
            continue
        shape_error = check_filter_shape(f)
        if shape_error:
            errors.append(shape_error)
            continue
        values = f.value if isinstance(f.value, (list, tuple)) else [f.value]
        if f.operator in {"is_null", "is_not_null", "like"}:
            continue
        for value in values:
            try:
                coerce_value(value, col.type)
            except ValueError as e:
                errors.append(f"过滤列 {f.column}: {e}")

    output = set(spec.output_columns) if spec.is_aggregated else set(columns)
    for order in spec.order_by:
        if order.column not in output:
            errors.append(f"排序列不存在: {order.column}")

    if spec.top_n:
        if not spec.dimensions:
            errors.append("top_n 需要至少一个维度")
        if spec.top_n.order_by not in set(spec.dimensions) | set(measure_names):
            errors.append(f"Top N 排序列不存在: {spec.top_n.order_by}")

    if spec.window_functions:
        grouped = set(spec.dimensions) | set(measure_names)
        if not spec.is_aggregated:
            errors.append("窗口函数需要维度或度量")
        if spec.top_n and spec.top_n.include_others:
            errors.append("窗口函数不能与 include_others 同时使用")
        for window in spec.window_functions:
            if window.name in grouped:
                errors.append(f"窗口函数名冲突: {window.name}")
            if window.function in RANKING_WINDOWS:
                if not window.order_by:
                    errors.append(f"窗口函数 {window.name} 需要 order_by")
            elif not window.column:
                errors.append(f"窗口函数 {window.name} 需要 column")
            for ref in [window.column, window.order_by, *window.partition_by]:
                if ref and ref not in grouped:
                    errors.append(f"窗口函数 {window.name} 引用的列不在聚合结果中: {ref}")

    return errors


class Executor:
    """ExecSpec 执行器"""

    def __init__(
        self,
        port: SQLPort,
        policies: Optional[PoliciesEngine] = None,
        cache: Optional[ExecCache] = None,
        config: Optional[AnalyticsConfig] = None,
        timeout_seconds: Optional[float] = None,
        retry_backoff_seconds: float = 0.5
    ):
        self.port = port
        self.config = config or get_analytics_config()
        self.policies = policies or PoliciesEngine(self.config.policies)
        self.cache = cache
        self.timeout_seconds = timeout_seconds or settings.query_timeout_seconds
        self.retry_backoff_seconds = retry_backoff_seconds

    def validate_spec(self, spec: ExecSpec, datacard: DataCard) -> List[str]:
        return validate_spec(spec, datacard)

    @staticmethod
    def _failure(
        code: str,
        message: str,
        spec: ExecSpec,
        started: float,
        warnings: List[AnalysisWarning],
        policies: List[PolicyApplication],
        cache_key: Optional[str] = None,
        sql: Optional[str] = None
    ) -> ExecResult:
        return ExecResult(
            success=False,
            warnings=warnings,
            policies_applied=policies,
            execution_time_ms=round((time.perf_counter() - started) * 1000, 2),
            error_code=code,
            error_message=message,
            sql_generated=sql,
            exec_spec_hash=cache_key,
            executed_spec=spec
        )

    async def _run(self, compiled: CompiledQuery, dataset_id: str) -> List[Dict[str, Any]]:
        try:
            return await asyncio.wait_for(
                self.port.execute_secure_sql(compiled.sql, dataset_id, compiled.params),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise QueryExecutionError(
                f"查询超时（{self.timeout_seconds}s）", sql=compiled.sql, params=compiled.params, cause=e
            ) from e
        except Exception as e:
            raise QueryExecutionError("查询执行失败", sql=compiled.sql, params=compiled.params, cause=e) from e

    async def execute(
        self,
        spec: ExecSpec,
        datacard: DataCard,
        use_cache: bool = True,
        prior_policies: Optional[List[PolicyApplication]] = None,
        prior_warnings: Optional[List[AnalysisWarning]] = None
    ) -> ExecResult:
        """
        执行 ExecSpec

        Args:
            spec: 查询规范（原始输入，不会被修改）
            datacard: 数据集画像
            use_cache: 是否读写缓存
            prior_policies: 上游已应用的策略（合并进结果）
            prior_warnings: 上游告警（合并进结果）

        Returns:
            ExecResult，失败时 success=False 并带 error_code
        """
        started = time.perf_counter()
        dataset_id = datacard.dataset_id
        policies: List[PolicyApplication] = list(prior_policies or [])
        warnings: List[AnalysisWarning] = list(prior_warnings or [])
        caching = use_cache and self.cache is not None and self.config.enable_cache

        # 1. 缓存
        cache_key = ExecCache.generate_cache_key(spec, dataset_id)
        if caching:
            cached = await self.cache.get(cache_key, dataset_id)
            if cached is not None:
                known = {w.message for w in warnings}
                warnings.extend(w for w in cached.warnings if w.message not in known)
                policies.extend(p for p in cached.policies_applied if p not in policies)
                return cached.model_copy(update={"warnings": warnings, "policies_applied": policies})

        # 2. 校验
        errors = self.validate_spec(spec, datacard)
        if errors:
            log.warning(f"ExecSpec 校验失败: {errors}")
            warnings.append(AnalysisWarning(type="calculation", severity="error", message="; ".join(errors)))
            return self._failure(
                ErrorCode.VALIDATION_FAILURE, f"ExecSpec 校验失败: {'; '.join(errors)}",
                spec, started, warnings, policies, cache_key
            )

        # 3. 策略
        enforcement = self.policies.enforce(spec, datacard)
        known = {w.message for w in warnings}
        warnings.extend(w for w in enforcement.warnings if w.message not in known)
        policies.extend(enforcement.policies_applied)
        if not enforcement.should_proceed:
            return self._failure(
                ErrorCode.QUALITY_GATE_BLOCKED, enforcement.blocked_reason,
                spec, started, warnings, policies, cache_key
            )
        adjusted = enforcement.adjusted_spec

        # 4. 编译
        errors = self.validate_spec(adjusted, datacard)
        try:
            if errors:
                raise ValueError("; ".join(errors))
            compiled = SQLCompiler(datacard, quote_all=self.config.quote_identifiers).compile(adjusted)
        except ValueError as e:
            log.warning(f"策略改写后的 ExecSpec 无法编译: {e}")
            warnings.append(AnalysisWarning(type="calculation", severity="error", message=str(e)))
            return self._failure(
                ErrorCode.VALIDATION_FAILURE, f"ExecSpec 无法编译: {e}",
                adjusted, started, warnings, policies, cache_key
            )
        log.debug(f"生成 SQL: {compiled.sql} | params: {compiled.params}")

        # 5. 执行
        try:
            rows = await self._run(compiled, dataset_id)
        except QueryExecutionError as e:
            log.error(f"{e} | SQL: {e.sql} | params: {e.params} | cause: {e.cause}")
            warnings.append(AnalysisWarning(
                type="calculation",
                severity="error",
                message=f"{e}: {e.cause}" if e.cause else str(e)
            ))
            return self._failure(
                ErrorCode.SQL_EXECUTION_ERROR, str(e),
                adjusted, started, warnings, policies, cache_key, compiled.sql
            )

        data = normalize_rows(rows)
        elapsed = round((time.perf_counter() - started) * 1000, 2)
        if elapsed > SLOW_QUERY_MS:
            warnings.append(AnalysisWarning(
                type="performance",
                severity="warning",
                message=f"查询耗时 {elapsed:.0f}ms"
            ))

        result = ExecResult(
            success=True,
            data=data,
            warnings=warnings,
            execution_time_ms=elapsed,
            rows_processed=datacard.total_rows,
            rows_returned=len(data),
            policies_applied=policies,
            sql_generated=compiled.sql,
            exec_spec_hash=cache_key,
            executed_spec=adjusted
        )
        log.info(f"查询完成: dataset={dataset_id} rows={len(data)} ({elapsed:.2f}ms)")

        # 6. 写缓存
        if caching:
            await self.cache.set(cache_key, dataset_id, result)
        return result

    async def execute_with_retry(
        self,
        spec: ExecSpec,
        datacard: DataCard,
        max_retries: Optional[int] = None,
        use_cache: bool = True
    ) -> ExecResult:
        """仅对 sql_execution_error 重试，最多 max_retries 次"""
        retries = self.config.max_retries if max_retries is None else max_retries
        result = await self.execute(spec, datacard, use_cache=use_cache)
        attempt = 0
        while not result.success and result.error_code == ErrorCode.SQL_EXECUTION_ERROR and attempt < retries:
            attempt += 1
            log.warning(f"查询失败，第 {attempt}/{retries} 次重试: {result.error_message}")
            await asyncio.sleep(self.retry_backoff_seconds * attempt)
            result = await self.execute(spec, datacard, use_cache=use_cache)
        return result
