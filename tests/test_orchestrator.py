"""分析流水线测试"""

import json

import pytest

from analytics_engine.core.config import AnalyticsConfig, load_profile
from analytics_engine.core.errors import ErrorCode
from analytics_engine.engines.dataset_loader import DatasetLoader
from analytics_engine.engines.lineage_logger import LineageLogger
from analytics_engine.engines.orchestrator import build_orchestrator
from analytics_engine.engines.semantic_layer import DEFAULT_FUZZY_THRESHOLD, SemanticLayer
from analytics_engine.engines.template_matcher import TemplateMatcher
from analytics_engine.models.exec_spec import ExecSpec, Measure
from analytics_engine.models.template import AnalyticsTemplate

from conftest import FakeLLM, load_sales


@pytest.fixture
async def orchestrator(store):
    orchestrator = await build_orchestrator(store, AnalyticsConfig())
    yield orchestrator
    await orchestrator.drain()


async def test_template_path(store, orchestrator):
    """内置模板满分命中"""
    dataset_id = await load_sales(store)

    response = await orchestrator.analyze(dataset_id, "各区域每天的收入")

    assert response.success
    assert response.metadata.template_matched
    assert response.metadata.template_used == "regional_revenue_trend"
    assert response.metadata.template_score == 1.0
    assert response.metadata.pipeline_stage_completed == "log"
    assert response.metadata.semantic_mappings_applied == 6
    assert response.metadata.quality_score == 100
    assert response.metadata.flags_active["enable_cache"]
    assert set(response.metadata.stage_timings) >= {"schema", "analyzability", "semantic", "template", "execute", "log"}
    assert len(response.data) == 28
    assert response.data[0] == {"date": "2024-01-01", "region": "Norte", "total_revenue": 480.0}
    assert response.exec_spec.metadata["template_id"] == "regional_revenue_trend"


async def test_partial_template_match_uses_fallback(store, orchestrator):
    """模板得分 0.667 < 0.8 时走兜底"""
    dataset_id = await load_sales(store)
    orchestrator.template_matcher = TemplateMatcher([AnalyticsTemplate(
        id="customer_revenue",
        name="客户收入",
        required_columns=["date", "revenue", "customer"],
        shape=ExecSpec(dimensions=["customer"], measures=[Measure(name="total", aggregation="sum", column="revenue")])
    )])

    response = await orchestrator.analyze(dataset_id)

    assert response.success
    assert not response.metadata.template_matched
    assert response.metadata.template_score == pytest.approx(0.6667)
    assert response.metadata.fallback_strategy == "Top N with Others"
    assert response.metadata.pipeline_stage_completed == "log"
    assert response.data[-1]["region"] == "Others"
    assert sum(r["total_revenue"] for r in response.data) == 11800.0


async def test_missing_dataset(orchestrator):
    response = await orchestrator.analyze("ds_missing")

    assert not response.success
    assert response.error_code == ErrorCode.SCHEMA_DETECTION_FAILURE
    assert response.metadata.pipeline_stage_completed == "none"
    assert response.exec_id is None


async def test_unanalyzable_dataset(store, orchestrator):
    info = await DatasetLoader(store).load_records([{"k": "x"}] * 20, "constante")

    response = await orchestrator.analyze(info.dataset_id)

    assert response.error_code == ErrorCode.DATASET_UNANALYZABLE
    assert response.metadata.pipeline_stage_completed == "schema"
    assert response.metadata.quality_score == 90


async def test_fallback_disabled(store):
    info = await DatasetLoader(store).load_records(
        [{"k": f"v{i % 3}", "amount": float(i)} for i in range(30)], "sem_modelo"
    )
    orchestrator = await build_orchestrator(store, AnalyticsConfig(fallback_enabled=False))

    response = await orchestrator.analyze(info.dataset_id)

    assert not response.success
    assert response.error_code == ErrorCode.NO_TEMPLATE_AND_FALLBACK_DISABLED
    assert response.metadata.pipeline_stage_completed == "template"
    await orchestrator.drain()


async def test_lineage_and_cache(store, orchestrator):
    """后台写入血缘；重复分析命中缓存"""
    dataset_id = await load_sales(store)

    first = await orchestrator.analyze(dataset_id)
    second = await orchestrator.analyze(dataset_id)
    await orchestrator.drain()

    assert not first.cache_hit
    assert second.cache_hit
    assert second.data == first.data

    trace = await orchestrator.lineage.get_lineage_trace(first.exec_id)
    assert trace.status == "success"
    assert trace.result_summary["template_id"] == "regional_revenue_trend"
    assert trace.result_summary["semantic_mapping"]["revenue"] == "revenue"

    stats = await orchestrator.lineage.get_performance_stats()
    assert stats["total_analyses"] == 2
    assert stats["template_hit_rate"] == 1.0


async def test_execute_spec(store, orchestrator):
    dataset_id = await load_sales(store)
    spec = ExecSpec(dimensions=["region"], measures=[Measure(name="n", aggregation="count")], limit=10)

    response = await orchestrator.execute_spec(dataset_id, spec)
    assert response.success
    assert {r["region"]: r["n"] for r in response.data} == {"Norte": 10, "Sul": 10, "Leste": 10, "Oeste": 10}
    assert response.metadata.pipeline_stage_completed == "log"

    invalid = await orchestrator.execute_spec(dataset_id, ExecSpec(dimensions=["nope"]))
    assert invalid.error_code == ErrorCode.VALIDATION_FAILURE
    assert invalid.metadata.pipeline_stage_completed == "schema"


async def test_plan_and_execute(store, orchestrator):
    dataset_id = await load_sales(store)
    llm = FakeLLM(json.dumps({
        "dimensions": ["region"],
        "measures": [{"name": "total", "aggregation": "sum", "column": "revenue"}],
        "order_by": [{"column": "total", "direction": "desc"}],
        "limit": 1
    }))

    response = await orchestrator.plan_and_execute(dataset_id, "收入最高的区域？", lambda: llm)

    assert response.success
    assert response.data == [{"region": "Oeste", "total": 3100.0}]
    assert response.metadata.pipeline_stage_completed == "log"
    assert "plan" in response.metadata.stage_timings
    assert len(llm.prompts) == 1


async def test_plan_failures(store, orchestrator):
    dataset_id = await load_sales(store)

    invalid = await orchestrator.plan_and_execute(dataset_id, "?", lambda: FakeLLM("无法回答"))
    assert invalid.error_code == ErrorCode.LLM_DRAFT_INVALID
    assert invalid.metadata.pipeline_stage_completed == "semantic"

    def no_key():
        raise ValueError("未配置 openai 的 API Key")

    missing_key = await orchestrator.plan_and_execute(dataset_id, "?", no_key)
    assert missing_key.error_code == ErrorCode.LLM_DRAFT_INVALID
    assert "API Key" in missing_key.reason


class BrokenSemanticLayer(SemanticLayer):
    def resolve_datacard(self, datacard, context=None):
        raise RuntimeError("词典不可用")


class FailingLineage(LineageLogger):
    async def log_execution(self, result, datacard, extra=None):
        raise RuntimeError("lineage 表不可写")

    async def log_performance(self, entry):
        raise RuntimeError("性能日志不可写")


async def test_profile_does_not_relax_fuzzy_tier(store):
    """置信度阈值只影响统计，不改变模糊匹配下限"""
    config = load_profile("dev_relaxed")
    assert config.semantic_confidence_threshold < DEFAULT_FUZZY_THRESHOLD

    orchestrator = await build_orchestrator(store, config)

    assert orchestrator.semantic_layer.fuzzy_threshold == DEFAULT_FUZZY_THRESHOLD
    assert orchestrator.semantic_layer.resolve_column("revenu_x").matched_via == "fallback"


async def test_semantic_failure_degrades_to_raw_names(store, orchestrator):
    dataset_id = await load_sales(store)
    orchestrator.semantic_layer = BrokenSemanticLayer([])

    response = await orchestrator.analyze(dataset_id)

    assert response.success
    assert response.metadata.template_used == "regional_revenue_trend"
    assert response.metadata.semantic_mappings_applied == 0
    semantic = [w for w in response.warnings if w.type == "semantic"]
    assert len(semantic) == 1
    assert "词典不可用" in semantic[0].message


async def test_logging_failures_do_not_affect_response(store, orchestrator):
    dataset_id = await load_sales(store)
    orchestrator.lineage = FailingLineage(store)

    response = await orchestrator.analyze(dataset_id)
    await orchestrator.drain()

    assert response.success
    assert len(response.data) == 28
    assert response.metadata.pipeline_stage_completed == "log"
