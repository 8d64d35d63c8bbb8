"""SQL 编译测试（含 DuckDB 实际执行）"""

import pytest

from analytics_engine.engines.sql_compiler import SQLCompiler, check_filter_shape, coerce_value
from analytics_engine.models.exec_spec import ExecSpec, Filter, Measure, TopNSpec, WindowFunction
from analytics_engine.utils.sql_safety import UnsafeSQLError, bare_identifiers, validate_select_only

from conftest import load_sales


def _revenue_by_region(**kwargs) -> ExecSpec:
    return ExecSpec(
        dimensions=["region"],
        measures=[Measure(name="total", aggregation="sum", column="revenue")],
        **kwargs
    )


async def _run(store, datacard, spec):
    compiled = SQLCompiler(datacard).compile(spec)
    return await store.execute_secure_sql(compiled.sql, datacard.dataset_id, compiled.params)


def test_compile_shape(sales_datacard):
    """参数化：过滤值只出现在 params 中"""
    spec = _revenue_by_region(filters=[Filter(column="region", operator="=", value="Norte")], limit=10)
    compiled = SQLCompiler(sales_datacard).compile(spec)

    assert compiled.params == ["Norte"]
    assert "Norte" not in compiled.sql
    assert compiled.sql.startswith("WITH ")
    assert "json_extract_string(data, '/region')" in compiled.sql
    assert 'GROUP BY "region"' in compiled.sql
    assert compiled.sql.endswith("LIMIT 10")
    validate_select_only(compiled.sql)


def test_identifier_quoting(sales_datacard):
    """quote_all=False 时仅保留字加引号"""
    spec = ExecSpec(dimensions=["region", "date"], measures=[Measure(name="n", aggregation="count")])
    sql = SQLCompiler(sales_datacard, quote_all=False).compile(spec).sql

    assert "GROUP BY region, \"date\"" in sql


def test_limit_capped_by_max_rows(sales_datacard):
    sql = SQLCompiler(sales_datacard, max_rows=25).compile(_revenue_by_region(limit=1000)).sql
    assert sql.endswith("LIMIT 25")


def test_coerce_value():
    assert coerce_value("10", "numeric") == 10.0
    assert coerce_value("sim", "boolean") == "true"
    assert coerce_value(False, "boolean") == "false"
    assert coerce_value(5, "text") == "5"
    with pytest.raises(ValueError):
        coerce_value(float("nan"), "numeric")
    with pytest.raises(ValueError):
        coerce_value("talvez", "boolean")


def test_filter_shape():
    assert check_filter_shape(Filter(column="a", operator="in", value=[])) is not None
    assert check_filter_shape(Filter(column="a", operator="between", value=[1])) is not None
    assert check_filter_shape(Filter(column="a", operator="=", value=None)) is not None
    assert check_filter_shape(Filter(column="a", operator="is_null")) is None


def test_like_escapes_pattern(sales_datacard):
    clause, params = SQLCompiler(sales_datacard).build_filter(Filter(column="product", operator="like", value="50%_x"))

    assert "ILIKE" in clause
    assert params == ["%50\\%\\_x%"]


def test_select_only_guard():
    with pytest.raises(UnsafeSQLError):
        validate_select_only("DELETE FROM dataset_rows")
    with pytest.raises(UnsafeSQLError):
        validate_select_only("SELECT 1; DROP TABLE datasets")


async def test_group_by_sum(store, sales_datacard):
    await load_sales(store)
    spec = _revenue_by_region(order_by=[{"column": "total", "direction": "desc"}])
    rows = await _run(store, sales_datacard.model_copy(update={"dataset_id": "ds_sales"}), spec)

    assert [r["region"] for r in rows] == ["Oeste", "Leste", "Sul", "Norte"]
    assert [r["total"] for r in rows] == [3100.0, 3000.0, 2900.0, 2800.0]


async def test_top_n_with_others(store, sales_datacard):
    """前 3 个产品 + Others（合计保持不变）"""
    await load_sales(store)
    spec = ExecSpec(
        dimensions=["product"],
        measures=[Measure(name="total", aggregation="sum", column="revenue")],
        top_n=TopNSpec(n=3, order_by="total", include_others=True)
    )
    rows = await _run(store, sales_datacard.model_copy(update={"dataset_id": "ds_sales"}), spec)

    assert [r["product"] for r in rows] == ["P09", "P08", "P07", "Others"]
    assert [r["total"] for r in rows] == [1020.0, 990.0, 960.0, 8830.0]
    assert sum(r["total"] for r in rows) == 11800.0


async def test_top_n_without_others(store, sales_datacard):
    await load_sales(store)
    spec = ExecSpec(
        dimensions=["product"],
        measures=[Measure(name="total", aggregation="sum", column="revenue")],
        top_n=TopNSpec(n=2, order_by="total")
    )
    rows = await _run(store, sales_datacard.model_copy(update={"dataset_id": "ds_sales"}), spec)
    assert [r["product"] for r in rows] == ["P09", "P08"]


async def test_filters(store, sales_datacard):
    """like 为大小写不敏感的包含匹配；between/in 按列类型绑定"""
    await load_sales(store)
    datacard = sales_datacard.model_copy(update={"dataset_id": "ds_sales"})
    count = [Measure(name="n", aggregation="count")]

    like = await _run(store, datacard, ExecSpec(
        dimensions=["region"], measures=count,
        filters=[Filter(column="region", operator="like", value="nor")]
    ))
    assert like == [{"region": "Norte", "n": 10}]

    between = await _run(store, datacard, ExecSpec(
        measures=count, filters=[Filter(column="revenue", operator="between", value=["100", 190])]
    ))
    assert between[0]["n"] == 10

    in_list = await _run(store, datacard, ExecSpec(
        measures=count, filters=[Filter(column="region", operator="in", value=["Sul", "Leste"])]
    ))
    assert in_list[0]["n"] == 20

    raw = await _run(store, datacard, ExecSpec(filters=[Filter(column="revenue", operator=">", value=480)]))
    assert len(raw) == 1
    assert raw[0]["revenue"] == 490.0
    assert raw[0]["region"] == "Oeste"


async def test_window_functions(store, sales_datacard):
    await load_sales(store)
    spec = _revenue_by_region(
        window_functions=[WindowFunction(name="rk", function="rank", order_by="total", direction="desc")],
        order_by=[{"column": "region"}]
    )
    rows = await _run(store, sales_datacard.model_copy(update={"dataset_id": "ds_sales"}), spec)

    ranks = {r["region"]: r["rk"] for r in rows}
    assert ranks == {"Oeste": 1, "Leste": 2, "Sul": 3, "Norte": 4}


async def test_moving_average(store, sales_datacard):
    await load_sales(store, n=3)
    spec = ExecSpec(
        dimensions=["date"],
        measures=[Measure(name="total", aggregation="sum", column="revenue")],
        window_functions=[WindowFunction(name="ma", function="moving_avg", column="total", order_by="date", window_size=2)],
        order_by=[{"column": "date"}]
    )
    rows = await _run(store, sales_datacard.model_copy(update={"dataset_id": "ds_sales"}), spec)

    assert [r["ma"] for r in rows] == [100.0, 105.0, 115.0]


def test_bare_identifiers():
    """只收集聚合函数之外的列引用"""
    allowed = {"revenue", "cost", "Região"}

    assert bare_identifiers("SUM(revenue) - SUM(cost)", allowed) == []
    assert bare_identifiers("revenue - SUM(cost) + revenue", allowed) == ["revenue"]
    assert bare_identifiers('NULLIF("Região", 0) / MAX(cost)', allowed) == ["Região"]
    assert bare_identifiers("ROUND(AVG(revenue * 2), 1)", allowed) == []
    with pytest.raises(ValueError):
        bare_identifiers("SUM(price)", allowed)
