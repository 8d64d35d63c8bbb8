"""Metrics Calculator - 业务指标公式解析（主公式 → 备用公式 → 明确失败）"""

import re
from typing import Dict, List, Tuple

from analytics_engine.engines.semantic_layer import available_names
from analytics_engine.models.datacard import DataCard
from analytics_engine.models.exec_spec import ExecSpec, Measure
from analytics_engine.models.result import AnalysisWarning
from analytics_engine.models.template import MetricCalculationResult, MetricDefinition
from analytics_engine.utils.logger import log
from analytics_engine.utils.sql_safety import quote_identifier

PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")
PRIMARY_CONFIDENCE = 1.0
FALLBACK_CONFIDENCE = 0.7


def formula_placeholders(formula: str) -> List[str]:
    """提取公式中的 {列} 占位符"""
    seen: List[str] = []
    for name in PLACEHOLDER_PATTERN.findall(formula):
        if name not in seen:
            seen.append(name)
    return seen


def substitute_formula(formula: str, column_mapping: Dict[str, str]) -> str:
    """用带引号的原始列名替换占位符"""
    return PLACEHOLDER_PATTERN.sub(lambda m: quote_identifier(column_mapping[m.group(1).lower()]), formula)


class MetricsCalculator:
    """指标计算器"""

    def __init__(self, metrics: List[MetricDefinition]):
        self.registry: Dict[str, MetricDefinition] = {
            m.metric_name: m for m in metrics if m.is_active
        }

    def calculate(self, metric_name: str, datacard: DataCard) -> MetricCalculationResult:
        """
        解析单个指标

        Returns:
            primary（1.0）/ fallback（0.7）/ unsatisfiable（附缺失列）
        """
        metric = self.registry.get(metric_name)
        if metric is None:
            return MetricCalculationResult(
                metric_name=metric_name,
                status="unsatisfiable",
                reason=f"未知指标: {metric_name}"
            )

        names = available_names(datacard)
        required = list(dict.fromkeys(metric.required_columns + formula_placeholders(metric.formula)))
        missing = [c for c in required if c.lower() not in names]

        if not missing:
            return MetricCalculationResult(
                metric_name=metric_name,
                status="primary",
                formula_used=substitute_formula(metric.formula, names),
                confidence=PRIMARY_CONFIDENCE,
                columns_used=[names[c.lower()] for c in required],
                reason="主公式所需列齐全"
            )

        if metric.fallback_formula:
            fallback_cols = formula_placeholders(metric.fallback_formula)
            if all(c.lower() in names for c in fallback_cols):
                log.info(f"指标 {metric_name} 使用备用公式，缺失列: {missing}")
                return MetricCalculationResult(
                    metric_name=metric_name,
                    status="fallback",
                    formula_used=substitute_formula(metric.fallback_formula, names),
                    confidence=FALLBACK_CONFIDENCE,
                    columns_used=[names[c.lower()] for c in fallback_cols],
                    missing_columns=missing,
                    reason=f"主公式缺少列 {', '.join(missing)}，使用备用公式"
                )

        return MetricCalculationResult(
            metric_name=metric_name,
            status="unsatisfiable",
            missing_columns=missing,
            reason=f"缺少列: {', '.join(missing)}"
        )

    def calculate_many(self, metric_names: List[str], datacard: DataCard) -> List[MetricCalculationResult]:
        return [self.calculate(name, datacard) for name in metric_names]

    def can_calculate(self, metric_name: str, datacard: DataCard) -> bool:
        return self.calculate(metric_name, datacard).status != "unsatisfiable"

    def suggest_metrics(self, datacard: DataCard) -> List[str]:
        """当前数据集可计算的指标（主公式优先排序）"""
        primary, fallback = [], []
        for name in self.registry:
            status = self.calculate(name, datacard).status
            if status == "primary":
                primary.append(name)
            elif status == "fallback":
                fallback.append(name)
        return primary + fallback

    def metrics_by_category(self, category: str) -> List[MetricDefinition]:
        return [m for m in self.registry.values() if m.category == category]

    def enrich_exec_spec(
        self,
        spec: ExecSpec,
        metric_names: List[str],
        datacard: DataCard
    ) -> Tuple[ExecSpec, List[MetricCalculationResult], List[AnalysisWarning]]:
        """
        将指标追加为自定义度量

        Returns:
            (新的 ExecSpec, 每个指标的解析结果, 告警)
        """
        measures = list(spec.measures)
        existing = {m.name for m in measures}
        results = self.calculate_many(metric_names, datacard)
        warnings: List[AnalysisWarning] = []

        for result in results:
            if result.status == "unsatisfiable":
                warnings.append(AnalysisWarning(
                    type="calculation",
                    severity="warning",
                    message=f"指标 {result.metric_name} 无法计算: {result.reason}",
                    details={"missing_columns": result.missing_columns}
                ))
                continue
            if result.status == "fallback":
                warnings.append(AnalysisWarning(
                    type="calculation",
                    severity="info",
                    message=f"指标 {result.metric_name} 使用备用公式（置信度 {result.confidence:.0%}）"
                ))
            if result.metric_name in existing:
                continue
            measures.append(Measure(
                name=result.metric_name,
                aggregation="custom",
                formula=result.formula_used,
                metric_id=result.metric_name
            ))
            existing.add(result.metric_name)

        return spec.model_copy(update={"measures": measures}), results, warnings
