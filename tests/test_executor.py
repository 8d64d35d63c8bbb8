"""执行器测试"""

import math
from datetime import date
from decimal import Decimal

from analytics_engine.core.config import AnalyticsConfig
from analytics_engine.core.errors import ErrorCode
from analytics_engine.engines.exec_cache import ExecCache
from analytics_engine.engines.executor import Executor, normalize_rows, validate_spec
from analytics_engine.models.exec_spec import ExecSpec, Filter, Measure, Operation, TopNSpec, WindowFunction
from analytics_engine.models.result import AnalysisWarning, PolicyApplication

from conftest import CountingPort, load_sales


def _spec(**kwargs) -> ExecSpec:
    return ExecSpec(
        dimensions=["region"],
        measures=[Measure(name="total", aggregation="sum", column="revenue")],
        **kwargs
    )


def test_validate_spec(sales_datacard):
    """校验失败项"""
    assert validate_spec(_spec(limit=10), sales_datacard) == []

    errors = validate_spec(ExecSpec(
        operations=[Operation(op="pivot")],
        dimensions=["nope"],
        measures=[Measure(name="total", aggregation="sum", column="region")],
        filters=[Filter(column="revenue", operator="=", value="abc")],
        order_by=[{"column": "missing"}]
    ), sales_datacard)
    assert len(errors) == 5


def test_validate_windows_and_top_n(sales_datacard):
    errors = validate_spec(_spec(
        top_n=TopNSpec(n=2, order_by="total", include_others=True),
        window_functions=[WindowFunction(name="rk", function="rank")]
    ), sales_datacard)

    assert "窗口函数不能与 include_others 同时使用" in errors
    assert "窗口函数 rk 需要 order_by" in errors


async def test_unknown_column_never_reaches_port(sales_datacard, config):
    """校验失败时不访问执行端口"""
    port = CountingPort()
    result = await Executor(port, config=config).execute(
        ExecSpec(dimensions=["nope"], measures=[Measure(name="n", aggregation="count")]),
        sales_datacard
    )

    assert not result.success
    assert result.error_code == ErrorCode.VALIDATION_FAILURE
    assert "nope" in result.error_message
    assert port.calls == []


async def test_policies_applied_before_compile(sales_datacard, config):
    port = CountingPort()
    result = await Executor(port, config=config).execute(_spec(), sales_datacard)

    assert result.success
    assert result.executed_spec.limit == config.policies.max_rows_default
    assert [p.policy_name for p in result.policies_applied] == ["row_limit"]
    assert port.calls[0]["dataset_id"] == sales_datacard.dataset_id
    assert port.calls[0]["sql"].endswith(f"LIMIT {config.policies.max_rows_default}")


async def test_cache_idempotence(empty_store, sales_datacard, config):
    """第二次执行命中缓存，端口只调用一次"""
    port = CountingPort()
    executor = Executor(port, cache=ExecCache(empty_store), config=config)
    spec = _spec(limit=10)

    first = await executor.execute(spec, sales_datacard)
    second = await executor.execute(spec, sales_datacard)

    assert len(port.calls) == 1
    assert not first.cache_hit
    assert second.cache_hit
    assert second.data == first.data
    assert second.cached_from_exec_id == first.exec_id
    assert second.exec_id != first.exec_id
    assert second.exec_spec_hash == first.exec_spec_hash == ExecCache.generate_cache_key(spec, sales_datacard.dataset_id)


async def test_cache_bypass(empty_store, sales_datacard):
    """关闭缓存或 use_cache=False 时每次都执行"""
    port = CountingPort()
    disabled = Executor(port, cache=ExecCache(empty_store), config=AnalyticsConfig(enable_cache=False))
    await disabled.execute(_spec(limit=10), sales_datacard)
    await disabled.execute(_spec(limit=10), sales_datacard)
    assert len(port.calls) == 2

    port = CountingPort()
    executor = Executor(port, cache=ExecCache(empty_store), config=AnalyticsConfig())
    await executor.execute(_spec(limit=5), sales_datacard, use_cache=False)
    await executor.execute(_spec(limit=5), sales_datacard, use_cache=False)
    assert len(port.calls) == 2


async def test_retry_only_on_sql_errors(sales_datacard):
    """执行错误重试 max_retries 次"""
    port = CountingPort(error=RuntimeError("connection reset"))
    executor = Executor(port, config=AnalyticsConfig(max_retries=2), retry_backoff_seconds=0)

    result = await executor.execute_with_retry(_spec(limit=10), sales_datacard)

    assert not result.success
    assert result.error_code == ErrorCode.SQL_EXECUTION_ERROR
    assert result.sql_generated is not None
    assert len(port.calls) == 3

    invalid = await executor.execute_with_retry(ExecSpec(dimensions=["nope"]), sales_datacard)
    assert invalid.error_code == ErrorCode.VALIDATION_FAILURE
    assert len(port.calls) == 3


async def test_timeout(sales_datacard, config):
    port = CountingPort(delay=0.5)
    result = await Executor(port, config=config, timeout_seconds=0.05).execute(_spec(limit=10), sales_datacard)

    assert result.error_code == ErrorCode.SQL_EXECUTION_ERROR
    assert "超时" in result.error_message


async def test_quality_gate_blocks_execution(sales_datacard, config):
    port = CountingPort()
    datacard = sales_datacard.model_copy(update={"quality_score": 10})

    result = await Executor(port, config=config).execute(_spec(limit=10), datacard)

    assert result.error_code == ErrorCode.QUALITY_GATE_BLOCKED
    assert port.calls == []


async def test_execute_against_duckdb(store, sales_datacard, config):
    """端到端：DuckDB 行存储"""
    await load_sales(store)
    datacard = sales_datacard.model_copy(update={"dataset_id": "ds_sales"})
    executor = Executor(store, cache=ExecCache(store), config=config)

    result = await executor.execute(_spec(order_by=[{"column": "total", "direction": "desc"}], limit=2), datacard)

    assert result.success
    assert result.data == [{"region": "Oeste", "total": 3100.0}, {"region": "Leste", "total": 3000.0}]
    assert result.rows_returned == 2
    assert result.rows_processed == 40


def test_normalize_rows():
    rows = normalize_rows([{"a": Decimal("1.5"), "b": math.nan, "c": date(2024, 1, 2), "d": "x"}])
    assert rows == [{"a": 1.5, "b": None, "c": "2024-01-02", "d": "x"}]


def test_formula_columns_must_be_aggregated(sales_datacard):
    """聚合查询中公式的列引用须在聚合函数内（维度列除外）"""
    def custom(formula: str) -> ExecSpec:
        return ExecSpec(
            dimensions=["region"],
            measures=[Measure(name="x", aggregation="custom", formula=formula)]
        )

    errors = validate_spec(custom("revenue * 2"), sales_datacard)
    assert len(errors) == 1
    assert "revenue" in errors[0]

    assert validate_spec(custom("SUM(revenue) * 2"), sales_datacard) == []
    assert validate_spec(custom("ROUND(AVG(discount), 2)"), sales_datacard) == []
    assert validate_spec(custom("COUNT(*) + 0"), sales_datacard) == []
    assert len(validate_spec(custom("ROUND(revenue, 2)"), sales_datacard)) == 1


async def test_ungrouped_formula_is_not_retried(sales_datacard):
    port = CountingPort()
    executor = Executor(port, config=AnalyticsConfig(max_retries=2), retry_backoff_seconds=0)
    spec = ExecSpec(
        dimensions=["region"],
        measures=[Measure(name="x", aggregation="custom", formula="revenue * 2")]
    )

    result = await executor.execute_with_retry(spec, sales_datacard)

    assert result.error_code == ErrorCode.VALIDATION_FAILURE
    assert port.calls == []


async def test_cache_hit_keeps_caller_context(empty_store, sales_datacard, config):
    """命中缓存时合并上游策略与告警"""
    port = CountingPort()
    executor = Executor(port, cache=ExecCache(empty_store), config=config)
    await executor.execute(_spec(), sales_datacard)

    upstream_policy = PolicyApplication(policy_name="semantic_fallback", reason="regiao → region")
    upstream_warning = AnalysisWarning(type="semantic", severity="info", message="列名已替换")
    hit = await executor.execute(
        _spec(), sales_datacard,
        prior_policies=[upstream_policy],
        prior_warnings=[upstream_warning]
    )

    assert hit.cache_hit
    assert len(port.calls) == 1
    assert [p.policy_name for p in hit.policies_applied] == ["semantic_fallback", "row_limit"]
    assert hit.warnings[0] == upstream_warning
