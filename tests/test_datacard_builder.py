"""DataCard 构建测试"""

from analytics_engine.engines.datacard_builder import (
    build_datacard,
    calculate_quality_score,
    infer_column_type,
    is_present,
    to_number,
)
from analytics_engine.models.datacard import DatasetSample

from conftest import make_datacard, sales_records


def test_quality_score_half_null_numeric():
    """50% 空值的数值列 + 完整文本列 → 93"""
    records = [
        {"amount": float(i + 1) if i < 5 else None, "name": chr(ord("a") + i)}
        for i in range(10)
    ]
    datacard = make_datacard(records)

    amount = datacard.get_column("amount")
    assert amount.type == "numeric"
    assert amount.nullable_pct == 50.0
    assert datacard.get_column("name").type == "text"
    assert datacard.quality_score == 93


def test_quality_score_penalties():
    """空列与常量列扣分"""
    records = [{"a": i, "empty": None, "const": "x"} for i in range(10)]
    datacard = make_datacard(records)

    # 100 - 0.3 * (100 / 3) - 20 / 3 - 10 / 3 = 80
    assert datacard.get_column("empty").type == "empty"
    assert datacard.quality_score == 80


def test_empty_sample():
    """空样本质量分为 0"""
    sample = DatasetSample(columns=["a", "b"], rows=[], total_rows=0)
    datacard = build_datacard("ds_empty", sample)

    assert datacard.total_rows == 0
    assert datacard.quality_score == 0
    assert calculate_quality_score([], 0) == 0


def test_type_inference():
    """测试类型推断"""
    assert infer_column_type([1, "2.5", None]) == "numeric"
    assert infer_column_type(["2024-01-01", "2024-02-01T10:00:00"]) == "date"
    assert infer_column_type(["sim", "nao", ""]) == "boolean"
    assert infer_column_type(["abc", 1]) == "text"
    assert infer_column_type([None, ""]) == "empty"


def test_declared_types_win():
    records = [{"code": str(i)} for i in range(10)]
    assert make_datacard(records).get_column("code").type == "numeric"
    assert make_datacard(records, column_types={"code": "text"}).get_column("code").type == "text"


def test_value_helpers():
    assert to_number("3.5") == 3.5
    assert to_number(True) is None
    assert to_number("abc") is None
    assert to_number(float("nan")) is None
    assert not is_present("")
    assert not is_present(float("nan"))
    assert is_present(0)


def test_column_profile(sales_datacard):
    """列画像"""
    revenue = sales_datacard.get_column("revenue")
    assert revenue.cardinality == 40
    assert revenue.stats.min == 100.0
    assert revenue.stats.max == 490.0
    assert revenue.is_candidate_key

    region = sales_datacard.get_column("region")
    assert region.cardinality == 4
    assert len(region.unique_values_sample) == 4
    assert sales_datacard.get_column("date").type == "date"
    assert sales_datacard.column_names == ["region", "product", "revenue", "discount", "quantity", "date"]
    assert len(sales_datacard.sample_rows) == 10


def test_domain_detection():
    """领域识别"""
    logistics = make_datacard([{"transportadora": "A", "data_entrega": "2024-01-01"}] * 3)
    assert logistics.detected_domain == "logistics"
    assert make_datacard(sales_records()).detected_domain == "sales"
    assert make_datacard([{"foo": 1, "bar": 2}]).detected_domain == "generic"


def test_dataset_stats():
    records = [{"a": 1, "b": "x"}, {"a": 1, "b": "x"}, {"a": 2, "b": "y"}, {"a": None, "b": "z"}]
    datacard = make_datacard(records)

    assert datacard.stats.duplicates_detected == 1
    assert datacard.stats.completeness_pct == 87.5
    assert datacard.stats.size_category == "small"


def test_datacard_is_immutable(sales_datacard):
    """DataCard 不可变，更新得到新对象"""
    updated = sales_datacard.model_copy(update={"quality_score": 10})
    assert sales_datacard.quality_score == 100
    assert updated.quality_score == 10
