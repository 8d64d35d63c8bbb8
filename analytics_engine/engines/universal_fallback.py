"""Universal Fallback - 无模板命中时按列类型选择通用分析"""

from typing import Dict, List, NamedTuple, Optional

from analytics_engine.core.config import AnalyticsConfig, get_analytics_config
from analytics_engine.core.constants import UNANALYZABLE_QUALITY_SCORE
from analytics_engine.core.errors import ErrorCode
from analytics_engine.engines.executor import Executor
from analytics_engine.models.datacard import DataCard
from analytics_engine.models.exec_spec import ExecSpec, Measure, Operation, OrderSpec, TopNSpec
from analytics_engine.models.result import AnalysisWarning, ExecResult
from analytics_engine.utils.logger import log

QUANTITATIVE_MIN_CARDINALITY = 20
CATEGORICAL_MAX_CARDINALITY = 100

TOP_N_SIZE = 10
TIME_SERIES_MAX_POINTS = 365
PIVOT_MAX_ROWS = 20


class ColumnTypology(NamedTuple):
    categorical: List[str]
    quantitative: List[str]
    dates: List[str]


class AnalyzabilityCheck(NamedTuple):
    can: bool
    reason: Optional[str] = None


def detect_column_typology(datacard: DataCard) -> ColumnTypology:
    """
    列分类：
    - 日期列
    - 数值且基数 > 20：度量
    - 基数在 (1, 100]：维度
    """
    categorical, quantitative, dates = [], [], []
    for col in datacard.columns:
        if col.type == "date":
            dates.append(col.name)
        elif col.type == "numeric" and col.cardinality > QUANTITATIVE_MIN_CARDINALITY:
            quantitative.append(col.name)
        elif 1 < col.cardinality <= CATEGORICAL_MAX_CARDINALITY:
            categorical.append(col.name)
    return ColumnTypology(categorical, quantitative, dates)


def can_analyze(datacard: DataCard) -> AnalyzabilityCheck:
    """执行前的可分析性预检"""
    if datacard.total_rows < 1:
        return AnalyzabilityCheck(False, "数据集为空")
    if not datacard.columns:
        return AnalyzabilityCheck(False, "数据集没有列")
    if datacard.quality_score < UNANALYZABLE_QUALITY_SCORE:
        return AnalyzabilityCheck(False, f"数据质量过低（{datacard.quality_score} < {UNANALYZABLE_QUALITY_SCORE}）")
    typology = detect_column_typology(datacard)
    if not typology.categorical and not typology.quantitative:
        return AnalyzabilityCheck(False, "数据集没有可用的维度列或度量列")
    return AnalyzabilityCheck(True)


class FallbackStrategy:
    """兜底策略基类"""

    key = ""
    name = ""
    description = ""

    def can_apply(self, typology: ColumnTypology) -> bool:
        raise NotImplementedError

    def generate_spec(self, typology: ColumnTypology, max_rows: int) -> ExecSpec:
        raise NotImplementedError


class TopNStrategy(FallbackStrategy):
    key = "top_n"
    name = "Top N with Others"
    description = "按 1-2 个维度分组，对一个度量求和，保留前 N 组并合并其余为 Others"

    def can_apply(self, typology: ColumnTypology) -> bool:
        return bool(typology.categorical) and bool(typology.quantitative)

    def generate_spec(self, typology: ColumnTypology, max_rows: int) -> ExecSpec:
        dimensions = typology.categorical[:2]
        measure_col = typology.quantitative[0]
        measure_name = f"total_{measure_col}"
        n = max(1, min(TOP_N_SIZE, max_rows - 1))
        return ExecSpec(
            operations=[
                Operation(op="aggregate", params={"group_by": dimensions}),
                Operation(op="topN", params={"n": n, "include_others": True}),
            ],
            dimensions=dimensions,
            measures=[Measure(name=measure_name, aggregation="sum", column=measure_col)],
            order_by=[OrderSpec(column=measure_name, direction="desc")],
            top_n=TopNSpec(n=n, order_by=measure_name, direction="desc", include_others=True),
            limit=n + 1,
            metadata={"fallback_strategy": self.key}
        )


class TimeSeriesStrategy(FallbackStrategy):
    key = "time_series"
    name = "Time Series"
    description = "按日期（可附加一个维度）分组，对一个度量求和，按日期升序"

    def can_apply(self, typology: ColumnTypology) -> bool:
        return bool(typology.dates) and bool(typology.quantitative)

    def generate_spec(self, typology: ColumnTypology, max_rows: int) -> ExecSpec:
        date_col = typology.dates[0]
        dimensions = [date_col] + typology.categorical[:1]
        measure_col = typology.quantitative[0]
        return ExecSpec(
            operations=[Operation(op="aggregate", params={"group_by": dimensions})],
            dimensions=dimensions,
            measures=[Measure(name=f"total_{measure_col}", aggregation="sum", column=measure_col)],
            order_by=[OrderSpec(column=date_col, direction="asc")],
            limit=min(TIME_SERIES_MAX_POINTS, max_rows),
            metadata={"fallback_strategy": self.key}
        )


class SimplePivotStrategy(FallbackStrategy):
    key = "pivot"
    name = "Simple Pivot"
    description = "按第一个维度分组计数"

    def can_apply(self, typology: ColumnTypology) -> bool:
        return bool(typology.categorical)

    def generate_spec(self, typology: ColumnTypology, max_rows: int) -> ExecSpec:
        dimension = typology.categorical[0]
        return ExecSpec(
            operations=[Operation(op="aggregate", params={"group_by": [dimension]})],
            dimensions=[dimension],
            measures=[Measure(name="count", aggregation="count")],
            order_by=[OrderSpec(column="count", direction="desc")],
            limit=min(PIVOT_MAX_ROWS, max_rows),
            metadata={"fallback_strategy": self.key}
        )


class UniversalFallback:
    """兜底执行器（按优先级尝试策略，首个可用者胜出）"""

    def __init__(self, executor: Executor, config: Optional[AnalyticsConfig] = None):
        self.executor = executor
        self.config = config or get_analytics_config()
        strategies: List[FallbackStrategy] = [TopNStrategy(), TimeSeriesStrategy()]
        if self.config.enable_generic_pivot_fallback:
            strategies.append(SimplePivotStrategy())
        self.strategies = strategies

    def _ordered_strategies(self) -> List[FallbackStrategy]:
        preferred = self.config.fallback_strategy
        if preferred == "smart":
            return self.strategies
        first = [s for s in self.strategies if s.key == preferred]
        return first + [s for s in self.strategies if s.key != preferred]

    def choose_strategy(self, datacard: DataCard) -> Optional[FallbackStrategy]:
        typology = detect_column_typology(datacard)
        for strategy in self._ordered_strategies():
            if strategy.can_apply(typology):
                return strategy
        return None

    def suggest_strategy(self, datacard: DataCard) -> Optional[str]:
        """建议的策略名（不执行）"""
        strategy = self.choose_strategy(datacard)
        return strategy.name if strategy else None

    def build_spec(self, datacard: DataCard) -> Optional[ExecSpec]:
        strategy = self.choose_strategy(datacard)
        if strategy is None:
            return None
        return strategy.generate_spec(detect_column_typology(datacard), self.config.fallback_max_rows)

    def strategy_overview(self, datacard: DataCard) -> Dict[str, bool]:
        typology = detect_column_typology(datacard)
        return {s.name: s.can_apply(typology) for s in self.strategies}

    async def execute(self, datacard: DataCard) -> ExecResult:
        """
        执行兜底分析

        Returns:
            ExecResult；没有可用策略时返回 fallback_unsuitable
        """
        log.info("无模板命中，执行兜底分析")
        strategy = self.choose_strategy(datacard)
        if strategy is None:
            reason = "无法生成分析：数据集没有可用的维度列或度量列"
            log.warning(f"兜底策略均不可用: {datacard.dataset_id}")
            return ExecResult(
                success=False,
                warnings=[AnalysisWarning(type="data_quality", severity="error", message=reason)],
                error_code=ErrorCode.FALLBACK_UNSUITABLE,
                error_message=reason
            )

        log.info(f"兜底策略: {strategy.name}")
        spec = strategy.generate_spec(detect_column_typology(datacard), self.config.fallback_max_rows)
        notice = AnalysisWarning(
            type="policy_applied",
            severity="info",
            message=f"未命中模板，使用兜底策略: {strategy.name}",
            details={"strategy": strategy.key, "description": strategy.description}
        )
        return await self.executor.execute(spec, datacard, use_cache=False, prior_warnings=[notice])
