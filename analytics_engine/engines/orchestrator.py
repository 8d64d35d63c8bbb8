"""Analytics Orchestrator - 五阶段确定性分析流水线"""

import asyncio
import time
from typing import Any, Callable, Coroutine, List, Optional, Set

from analytics_engine.core.config import AnalyticsConfig, get_analytics_config, settings
from analytics_engine.core.errors import AnalyticsError, ErrorCode
from analytics_engine.engines.datacard_builder import build_datacard
from analytics_engine.engines.duckdb_store import DuckDBStore
from analytics_engine.engines.exec_cache import ExecCache
from analytics_engine.engines.executor import Executor
from analytics_engine.engines.lineage_logger import LineageLogger
from analytics_engine.engines.metrics_calculator import MetricsCalculator
from analytics_engine.engines.policies_engine import PoliciesEngine
from analytics_engine.engines.semantic_layer import SemanticLayer
from analytics_engine.engines.spec_planner import LLMPort, SpecPlanner
from analytics_engine.engines.template_matcher import TemplateMatcher, bind_template
from analytics_engine.engines.universal_fallback import UniversalFallback, can_analyze
from analytics_engine.models.datacard import DataCard
from analytics_engine.models.exec_spec import ExecSpec
from analytics_engine.models.lineage import PerformanceLogEntry
from analytics_engine.models.response import AnalysisResponse, PipelineMetadata
from analytics_engine.models.result import AnalysisWarning, ExecResult
from analytics_engine.utils.logger import log
from analytics_engine.utils.trace import PipelineTrace

STAGE_SCHEMA = "schema"
STAGE_ANALYZABILITY = "analyzability"
STAGE_SEMANTIC = "semantic"
STAGE_TEMPLATE = "template"
STAGE_PLAN = "plan"
STAGE_EXECUTE = "execute"
STAGE_LOG = "log"


class AnalyticsOrchestrator:
    """
    分析流水线

    schema → analyzability → semantic → template → execute → log
    各阶段顺序执行；失败时短路并在 pipeline_stage_completed 中体现进度。
    日志阶段以后台任务写入，失败不影响响应。
    """

    def __init__(
        self,
        store: DuckDBStore,
        executor: Executor,
        semantic_layer: SemanticLayer,
        template_matcher: TemplateMatcher,
        fallback: UniversalFallback,
        lineage: LineageLogger,
        metrics: MetricsCalculator,
        config: Optional[AnalyticsConfig] = None
    ):
        self.store = store
        self.executor = executor
        self.semantic_layer = semantic_layer
        self.template_matcher = template_matcher
        self.fallback = fallback
        self.lineage = lineage
        self.metrics = metrics
        self.config = config or get_analytics_config()
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # 后台日志
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]):
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task):
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.error(f"后台日志任务失败: {error}")

    async def drain(self):
        """等待所有后台日志任务结束"""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _log_stage(
        self,
        trace: PipelineTrace,
        dataset_id: str,
        datacard: Optional[DataCard],
        result: Optional[ExecResult],
        metadata: PipelineMetadata,
        error_code: Optional[str]
    ):
        started = time.perf_counter()
        if self.config.log_performance:
            entry = PerformanceLogEntry(
                exec_id=result.exec_id if result else None,
                dataset_id=dataset_id,
                stage_completed=trace.completed_stage,
                template_used=metadata.template_used,
                fallback_strategy=metadata.fallback_strategy,
                success=bool(result and result.success),
                error_code=error_code,
                total_time_ms=trace.total_ms(),
                stage_timings=trace.timings()
            )
            self._spawn(self.lineage.log_performance(entry))
        if self.config.log_lineage and result is not None and datacard is not None:
            extra = {
                "template_id": metadata.template_used,
                "fallback_strategy": metadata.fallback_strategy,
                "semantic_mapping": datacard.semantic_mapping or {},
            }
            self._spawn(self.lineage.log_execution(result, datacard, extra))
        trace.record(STAGE_LOG, started)

    # ------------------------------------------------------------------
    # 响应组装
    # ------------------------------------------------------------------

    def _metadata(self, trace: PipelineTrace, datacard: Optional[DataCard] = None, **fields) -> PipelineMetadata:
        metadata = PipelineMetadata(flags_active=self.config.active_flags(), **fields)
        if datacard is not None:
            metadata.detected_domain = datacard.detected_domain
            metadata.quality_score = datacard.quality_score
        metadata.pipeline_stage_completed = trace.completed_stage
        metadata.stage_timings = trace.timings()
        metadata.total_time_ms = trace.total_ms()
        return metadata

    def _fail(
        self,
        trace: PipelineTrace,
        dataset_id: str,
        error: AnalyticsError,
        warnings: List[AnalysisWarning],
        datacard: Optional[DataCard] = None,
        **fields
    ) -> AnalysisResponse:
        log.warning(f"流水线中止 [{error.code}]: {error.message}")
        warnings = warnings + [AnalysisWarning(type="data_quality", severity="error", message=error.message)]
        metadata = self._metadata(trace, datacard, **fields)
        self._log_stage(trace, dataset_id, datacard, None, metadata, error.code)
        return AnalysisResponse(
            success=False,
            warnings=warnings,
            metadata=metadata,
            error_code=error.code,
            reason=error.message
        )

    def _respond(
        self,
        trace: PipelineTrace,
        dataset_id: str,
        datacard: DataCard,
        result: ExecResult,
        warnings: List[AnalysisWarning],
        **fields
    ) -> AnalysisResponse:
        metadata = self._metadata(trace, datacard, **fields)
        self._log_stage(trace, dataset_id, datacard, result, metadata, result.error_code)
        if result.success:
            metadata.pipeline_stage_completed = trace.completed_stage
        metadata.stage_timings = trace.timings()
        metadata.total_time_ms = trace.total_ms()
        log.info(
            f"流水线完成: dataset={dataset_id} success={result.success} "
            f"stage={trace.completed_stage} ({metadata.total_time_ms:.2f}ms)"
        )
        return AnalysisResponse(
            success=result.success,
            exec_id=result.exec_id,
            data=result.data,
            warnings=warnings + result.warnings,
            policies_applied=result.policies_applied,
            metadata=metadata,
            exec_spec=result.executed_spec,
            sql_generated=result.sql_generated,
            cache_hit=result.cache_hit,
            error_code=result.error_code,
            reason=result.error_message
        )

    # ------------------------------------------------------------------
    # 阶段
    # ------------------------------------------------------------------

    async def build_datacard(self, dataset_id: str) -> DataCard:
        """读取样本并构建 DataCard"""
        sample = await self.store.get_dataset_sample(dataset_id, settings.datacard_sample_size)
        datacard = build_datacard(dataset_id, sample)
        log.info(
            f"结构识别: {len(datacard.columns)} 列, {datacard.total_rows} 行, "
            f"质量分 {datacard.quality_score}/100"
        )
        return datacard

    async def _schema_stage(self, trace: PipelineTrace, dataset_id: str) -> DataCard:
        try:
            with trace.stage(STAGE_SCHEMA):
                return await self.build_datacard(dataset_id)
        except AnalyticsError:
            raise
        except Exception as e:
            log.error(f"结构识别失败: {e}")
            raise AnalyticsError(f"结构识别失败: {e}", code=ErrorCode.SCHEMA_DETECTION_FAILURE) from e

    def _analyzability_stage(self, trace: PipelineTrace, datacard: DataCard):
        with trace.stage(STAGE_ANALYZABILITY):
            check = can_analyze(datacard)
            if not check.can:
                raise AnalyticsError(check.reason, code=ErrorCode.DATASET_UNANALYZABLE)

    def _semantic_stage(self, trace: PipelineTrace, datacard: DataCard, warnings: List[AnalysisWarning]) -> DataCard:
        with trace.stage(STAGE_SEMANTIC):
            if not self.config.enable_semantic_mapping:
                log.info("语义映射已关闭")
                return datacard
            try:
                return self.semantic_layer.resolve_datacard(datacard)
            except Exception as e:
                log.warning(f"语义映射失败，使用原始列名: {e}")
                warnings.append(AnalysisWarning(
                    type="semantic",
                    severity="warning",
                    message=f"语义映射失败，使用原始列名: {e}"
                ))
                return datacard

    def _semantic_fields(self, datacard: DataCard) -> dict:
        threshold = self.config.semantic_confidence_threshold
        confident = [
            c.mapping_confidence for c in datacard.columns
            if c.matched_via and c.matched_via != "fallback" and (c.mapping_confidence or 0) >= threshold
        ]
        return {
            "semantic_mappings_applied": len(confident),
            "semantic_confidence_avg": round(sum(confident) / len(confident), 4) if confident else None,
        }

    # ------------------------------------------------------------------
    # 入口
    # ------------------------------------------------------------------

    async def analyze(self, dataset_id: str, question: Optional[str] = None) -> AnalysisResponse:
        """
        自动分析（模板优先，否则兜底）

        Args:
            dataset_id: 数据集ID
            question: 用户问题（仅记录）

        Returns:
            AnalysisResponse
        """
        trace = PipelineTrace()
        warnings: List[AnalysisWarning] = []
        log.info(f"开始分析: dataset={dataset_id} question={question!r}")

        # 1 / 1.5
        try:
            datacard = await self._schema_stage(trace, dataset_id)
        except AnalyticsError as e:
            return self._fail(trace, dataset_id, e, warnings)
        try:
            self._analyzability_stage(trace, datacard)
        except AnalyticsError as e:
            return self._fail(trace, dataset_id, e, warnings, datacard)

        # 2
        enriched = self._semantic_stage(trace, datacard, warnings)
        fields = self._semantic_fields(enriched)

        # 3
        template_spec: Optional[ExecSpec] = None
        with trace.stage(STAGE_TEMPLATE):
            if self.config.load_templates_from_models:
                template_spec = self._match_template(enriched, warnings, fields)
            else:
                log.info("模板匹配已关闭")

        # 4
        started = time.perf_counter()
        if template_spec is not None:
            result = await self.executor.execute_with_retry(template_spec, enriched)
        elif not self.config.fallback_enabled:
            trace.record(STAGE_EXECUTE, started, "fallback disabled")
            error = AnalyticsError("没有匹配的模板且兜底策略已关闭", code=ErrorCode.NO_TEMPLATE_AND_FALLBACK_DISABLED)
            return self._fail(trace, dataset_id, error, warnings, enriched, **fields)
        else:
            strategy = self.fallback.choose_strategy(enriched)
            fields["fallback_strategy"] = strategy.name if strategy else None
            result = await self.fallback.execute(enriched)
        trace.record(STAGE_EXECUTE, started, None if result.success else result.error_message)

        # 5
        return self._respond(trace, dataset_id, enriched, result, warnings, **fields)

    def _match_template(self, datacard: DataCard, warnings: List[AnalysisWarning], fields: dict) -> Optional[ExecSpec]:
        try:
            match = self.template_matcher.match(datacard, self.config.template_match_threshold)
        except Exception as e:
            log.warning(f"模板匹配失败: {e}")
            warnings.append(AnalysisWarning(type="semantic", severity="warning", message=f"模板匹配失败: {e}"))
            return None

        fields["template_score"] = round(match.score, 4) if match.best_template_id else None
        if not match.matched:
            warnings.append(AnalysisWarning(
                type="semantic",
                severity="info",
                message=f"未命中模板: {match.reason}",
                details={"best_template_id": match.best_template_id, "missing_columns": match.missing_columns}
            ))
            return None

        if self.config.log_template_matches:
            log.info(f"使用模板 {match.template.id} (score={match.score:.3f})")
        try:
            spec = bind_template(match.template, datacard)
        except AnalyticsError as e:
            warnings.append(AnalysisWarning(type="semantic", severity="warning", message=e.message))
            return None
        fields["template_matched"] = True
        fields["template_used"] = match.template.id
        return spec

    async def execute_spec(self, dataset_id: str, spec: ExecSpec, use_cache: bool = True) -> AnalysisResponse:
        """直接执行调用方提供的 ExecSpec（原始列名）"""
        trace = PipelineTrace()
        warnings: List[AnalysisWarning] = []
        try:
            datacard = await self._schema_stage(trace, dataset_id)
        except AnalyticsError as e:
            return self._fail(trace, dataset_id, e, warnings)

        started = time.perf_counter()
        result = await self.executor.execute(spec, datacard, use_cache=use_cache)
        trace.record(STAGE_EXECUTE, started, None if result.success else result.error_message)
        return self._respond(trace, dataset_id, datacard, result, warnings)

    async def plan_and_execute(
        self,
        dataset_id: str,
        question: str,
        llm_factory: Callable[[], LLMPort]
    ) -> AnalysisResponse:
        """
        自然语言问题 → LLM 草稿 → 校验/策略/编译 → 执行

        Args:
            dataset_id: 数据集ID
            question: 用户问题
            llm_factory: 创建 LLM 端口（延迟到 schema 阶段之后）
        """
        trace = PipelineTrace()
        warnings: List[AnalysisWarning] = []
        try:
            datacard = await self._schema_stage(trace, dataset_id)
        except AnalyticsError as e:
            return self._fail(trace, dataset_id, e, warnings)
        try:
            self._analyzability_stage(trace, datacard)
        except AnalyticsError as e:
            return self._fail(trace, dataset_id, e, warnings, datacard)

        enriched = self._semantic_stage(trace, datacard, warnings)
        fields = self._semantic_fields(enriched)

        try:
            with trace.stage(STAGE_PLAN):
                try:
                    planner = SpecPlanner(llm_factory(), self.executor.policies, self.metrics)
                except ValueError as e:
                    raise AnalyticsError(f"LLM 初始化失败: {e}", code=ErrorCode.LLM_DRAFT_INVALID) from e
                planned = await planner.plan(enriched, question)
        except AnalyticsError as e:
            return self._fail(trace, dataset_id, e, warnings, enriched, **fields)

        started = time.perf_counter()
        result = await self.executor.execute(
            planned.spec,
            enriched,
            prior_policies=planned.policies_applied,
            prior_warnings=planned.warnings
        )
        trace.record(STAGE_EXECUTE, started, None if result.success else result.error_message)
        return self._respond(trace, dataset_id, enriched, result, warnings, **fields)


async def build_orchestrator(store: DuckDBStore, config: Optional[AnalyticsConfig] = None) -> AnalyticsOrchestrator:
    """按配置组装流水线（参考数据从存储载入一次）"""
    config = config or get_analytics_config()
    policies = PoliciesEngine(config.policies)
    cache = ExecCache(store)
    executor = Executor(store, policies=policies, cache=cache, config=config)

    semantic_layer = SemanticLayer(
        await store.load_semantic_entries(),
        log_mappings=config.log_semantic_mappings
    )
    template_matcher = TemplateMatcher(await store.load_templates())
    metrics = MetricsCalculator(await store.load_metrics())

    log.info(
        f"流水线已组装: {len(semantic_layer.entries)} 条语义词条, "
        f"{len(template_matcher.templates)} 个模板, {len(metrics.registry)} 个指标"
    )
    return AnalyticsOrchestrator(
        store=store,
        executor=executor,
        semantic_layer=semantic_layer,
        template_matcher=template_matcher,
        fallback=UniversalFallback(executor, config),
        lineage=LineageLogger(store),
        metrics=metrics,
        config=config
    )
