"""执行缓存测试"""

from analytics_engine.engines.exec_cache import ExecCache
from analytics_engine.engines.lineage_logger import LineageLogger
from analytics_engine.models.exec_spec import ExecSpec, Measure
from analytics_engine.models.result import ExecResult, PolicyApplication


def _spec(limit: int = 10) -> ExecSpec:
    return ExecSpec(
        dimensions=["region"],
        measures=[Measure(name="total", aggregation="sum", column="revenue")],
        limit=limit
    )


def _result(spec: ExecSpec) -> ExecResult:
    return ExecResult(
        success=True,
        data=[{"region": "Norte", "total": 2800.0}],
        rows_processed=40,
        rows_returned=1,
        policies_applied=[PolicyApplication(policy_name="row_limit", reason="未指定 limit")],
        sql_generated="SELECT 1",
        executed_spec=spec
    )


def test_cache_key_is_deterministic():
    """同一 ExecSpec + 数据集得到同一个键"""
    key = ExecCache.generate_cache_key(_spec(), "ds_a")

    assert key == ExecCache.generate_cache_key(_spec(), "ds_a")
    assert len(key) == 64
    assert key != ExecCache.generate_cache_key(_spec(limit=11), "ds_a")
    assert key != ExecCache.generate_cache_key(_spec(), "ds_b")


async def test_set_and_get(empty_store):
    cache = ExecCache(empty_store)
    spec = _spec()
    key = ExecCache.generate_cache_key(spec, "ds_a")
    original = _result(spec)

    assert await cache.get(key, "ds_a") is None
    assert await cache.set(key, "ds_a", original)

    hit = await cache.get(key, "ds_a")
    assert hit.cache_hit
    assert hit.cached_from_exec_id == original.exec_id
    assert hit.exec_id != original.exec_id
    assert hit.data == original.data
    assert hit.executed_spec == spec
    assert [p.policy_name for p in hit.policies_applied] == ["row_limit"]
    # 数据集不同不命中
    assert await cache.get(key, "ds_b") is None


async def test_expired_entries(empty_store):
    """TTL 过期后不再命中，清理只删除缓存记录"""
    spec = _spec()
    key = ExecCache.generate_cache_key(spec, "ds_a")
    await ExecCache(empty_store).set(key, "ds_a", _result(spec))

    expired = ExecCache(empty_store, ttl_seconds=0)
    assert await expired.get(key, "ds_a") is None
    assert await expired.clean_expired_cache() == 1


async def test_invalidate_keeps_audit_records(empty_store, sales_datacard):
    """失效只删除 status=cached 的记录"""
    spec = _spec()
    key = ExecCache.generate_cache_key(spec, sales_datacard.dataset_id)
    cache = ExecCache(empty_store)
    result = _result(spec)

    await cache.set(key, sales_datacard.dataset_id, result)
    await LineageLogger(empty_store).log_execution(result, sales_datacard)

    assert await cache.invalidate_cache(sales_datacard.dataset_id) == 1
    assert await cache.get(key, sales_datacard.dataset_id) is None

    trace = await LineageLogger(empty_store).get_lineage_trace(result.exec_id)
    assert trace.status == "success"


async def test_failures_degrade_to_miss(empty_store):
    """存储不可用时缓存读写不抛异常"""
    cache = ExecCache(empty_store)
    empty_store.close()

    assert await cache.get("k", "ds_a") is None
    assert not await cache.set("k", "ds_a", _result(_spec()))
    assert await cache.invalidate_cache("ds_a") == 0
