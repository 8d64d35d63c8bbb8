"""配置与模型测试"""

import pytest
from pydantic import ValidationError

from analytics_engine.core.config import AnalyticsConfig, PolicyConfig, load_profile, settings
from analytics_engine.core.errors import AnalyticsError, ErrorCode, LLMDraftError, SchemaDetectionError
from analytics_engine.models.exec_spec import ExecSpec, Filter, Measure, WindowFunction


def test_settings():
    """测试配置加载"""
    assert settings is not None
    assert settings.query_timeout_seconds > 0
    assert settings.datacard_sample_size >= 10


def test_profiles():
    """测试 profile 阈值"""
    relaxed = load_profile("dev_relaxed")
    strict = load_profile("prod_strict")

    assert relaxed.template_match_threshold == 0.6
    assert relaxed.policies.quality_floor == 30
    assert strict.template_match_threshold == 0.8
    assert strict.semantic_confidence_threshold == 0.85
    assert strict.policies.quality_floor == 50


def test_unknown_profile_falls_back_to_prod_strict():
    """未知 profile 回退到 prod_strict"""
    config = load_profile("does_not_exist")
    assert config == load_profile("prod_strict")


def test_config_ranges_validated():
    """数值范围在构建时校验"""
    with pytest.raises(ValidationError):
        AnalyticsConfig(semantic_confidence_threshold=1.5)
    with pytest.raises(ValidationError):
        AnalyticsConfig(fallback_max_rows=0)
    with pytest.raises(ValidationError):
        PolicyConfig(quality_floor=101)


def test_config_requires_an_execution_path():
    """模板与兜底不能同时关闭"""
    with pytest.raises(ValidationError):
        AnalyticsConfig(fallback_enabled=False, load_templates_from_models=False)


def test_active_flags():
    flags = AnalyticsConfig(enable_cache=False).active_flags()
    assert flags["enable_cache"] is False
    assert flags["fallback_enabled"] is True


def test_measure_validation():
    """测试度量模型"""
    with pytest.raises(ValidationError):
        Measure(name="x", aggregation="variance", column="a")
    with pytest.raises(ValidationError):
        Measure(name="x", aggregation="sum")
    with pytest.raises(ValidationError):
        Measure(name="x", aggregation="custom")

    count = Measure(name="n", aggregation="count")
    assert count.column is None


def test_filter_and_window_validation():
    with pytest.raises(ValidationError):
        Filter(column="a", operator="regex", value="x")
    with pytest.raises(ValidationError):
        WindowFunction(name="w", function="ntile")


def test_exec_spec_output_columns():
    """测试查询规范"""
    spec = ExecSpec(
        dimensions=["region"],
        measures=[Measure(name="total", aggregation="sum", column="revenue")],
        window_functions=[WindowFunction(name="rk", function="rank", order_by="total")]
    )
    assert spec.output_columns == ["region", "total", "rk"]
    assert spec.is_aggregated
    assert not ExecSpec().is_aggregated


def test_error_codes():
    """结构化错误"""
    assert SchemaDetectionError("x").code == ErrorCode.SCHEMA_DETECTION_FAILURE
    assert LLMDraftError("x").code == ErrorCode.LLM_DRAFT_INVALID

    error = AnalyticsError("不可分析", code=ErrorCode.DATASET_UNANALYZABLE)
    assert error.to_dict() == {"code": "dataset_unanalyzable", "message": "不可分析", "detail": {}}
