"""Policies Engine - 查询规范的安全/质量改写"""

from typing import List, Optional

from analytics_engine.core.config import PolicyConfig
from analytics_engine.models.datacard import DataCard
from analytics_engine.models.exec_spec import ExecSpec, Filter
from analytics_engine.models.result import AnalysisWarning, PolicyApplication, PolicyEnforcementResult
from analytics_engine.utils.logger import log
from analytics_engine.utils.text import levenshtein

MISSING_DATA_THRESHOLD_PCT = 50.0
SEMANTIC_FALLBACK_MAX_DISTANCE = 3


class PoliciesEngine:
    """
    按固定顺序执行策略：
    质量门禁 → 行数上限 → 缺失值处理 → 异常值提示 → 维度替换 → 聚合安全

    每次改写都记录为 PolicyApplication，输入的 ExecSpec 不会被修改。
    """

    def __init__(self, config: Optional[PolicyConfig] = None):
        self.config = config or PolicyConfig()

    def enforce(self, spec: ExecSpec, datacard: DataCard) -> PolicyEnforcementResult:
        """
        执行全部策略

        Args:
            spec: 草稿 ExecSpec
            datacard: 数据集画像

        Returns:
            PolicyEnforcementResult
        """
        adjusted = spec.model_copy(deep=True)
        policies: List[PolicyApplication] = []
        warnings: List[AnalysisWarning] = []

        # 1. 质量门禁
        blocked_reason = self._quality_gate(datacard)
        if blocked_reason:
            log.warning(f"质量门禁阻断: {blocked_reason}")
            warnings.append(AnalysisWarning(
                type="data_quality",
                severity="error",
                message=blocked_reason,
                details={"quality_score": datacard.quality_score, "total_rows": datacard.total_rows}
            ))
            return PolicyEnforcementResult(
                adjusted_spec=adjusted,
                policies_applied=policies,
                warnings=warnings,
                should_proceed=False,
                blocked_reason=blocked_reason
            )

        # 2-6
        adjusted = self._apply_row_limit(adjusted, policies)
        adjusted = self._apply_missing_data(adjusted, datacard, policies)
        self._detect_outliers(adjusted, datacard, warnings)
        if self.config.allow_auto_fallbacks:
            adjusted = self._apply_semantic_fallback(adjusted, datacard, policies, warnings)
        adjusted = self._apply_aggregation_safety(adjusted, datacard, policies, warnings)

        if policies:
            log.info(f"已应用策略: {[p.policy_name for p in policies]}")
            warnings.extend(
                AnalysisWarning(type="policy_applied", severity="info", message=f"{p.policy_name}: {p.reason}")
                for p in policies
            )

        return PolicyEnforcementResult(
            adjusted_spec=adjusted,
            policies_applied=policies,
            warnings=warnings,
            should_proceed=True
        )

    def _quality_gate(self, datacard: DataCard) -> Optional[str]:
        if datacard.quality_score < self.config.quality_floor:
            return f"数据质量分 {datacard.quality_score} 低于下限 {self.config.quality_floor}"
        if datacard.total_rows < self.config.min_sample_size:
            return f"数据行数 {datacard.total_rows} 少于最小样本量 {self.config.min_sample_size}"
        return None

    def _apply_row_limit(self, spec: ExecSpec, policies: List[PolicyApplication]) -> ExecSpec:
        cap = self.config.max_rows_default
        if spec.limit is not None and spec.limit <= cap:
            return spec
        reason = "未指定 limit" if spec.limit is None else f"limit {spec.limit} 超过上限 {cap}"
        policies.append(PolicyApplication(
            policy_name="row_limit",
            reason=reason,
            impact=f"limit 设为 {cap}"
        ))
        return spec.model_copy(update={"limit": cap})

    def _apply_missing_data(self, spec: ExecSpec, datacard: DataCard, policies: List[PolicyApplication]) -> ExecSpec:
        filters = list(spec.filters)
        existing = {(f.column, f.operator) for f in filters}
        added: List[str] = []

        for measure in spec.measures:
            if not measure.column:
                continue
            col = datacard.get_column(measure.column)
            if col is None or col.nullable_pct <= MISSING_DATA_THRESHOLD_PCT:
                continue
            if (measure.column, "is_not_null") in existing:
                continue
            filters.append(Filter(column=measure.column, operator="is_not_null"))
            existing.add((measure.column, "is_not_null"))
            added.append(measure.column)
            policies.append(PolicyApplication(
                policy_name="missing_data_handling",
                reason=f"度量列 {measure.column} 空值率 {col.nullable_pct:.1f}% 超过 {MISSING_DATA_THRESHOLD_PCT:.0f}%",
                impact=f"新增过滤 {measure.column} IS NOT NULL"
            ))

        if not added:
            return spec
        return spec.model_copy(update={"filters": filters})

    def _detect_outliers(self, spec: ExecSpec, datacard: DataCard, warnings: List[AnalysisWarning]):
        """仅提示，不删除数据"""
        k = self.config.outlier_threshold_std_dev
        checked = set()
        for measure in spec.measures:
            if not measure.column or measure.column in checked:
                continue
            checked.add(measure.column)
            col = datacard.get_column(measure.column)
            if col is None or col.stats is None or col.stats.stddev == 0:
                continue
            lower = col.stats.mean - k * col.stats.stddev
            upper = col.stats.mean + k * col.stats.stddev
            if col.stats.min < lower or col.stats.max > upper:
                warnings.append(AnalysisWarning(
                    type="data_quality",
                    severity="info",
                    message=f"列 {col.name} 存在超出 ±{k}σ 的取值，结果可能受异常值影响",
                    details={"min": col.stats.min, "max": col.stats.max, "lower": lower, "upper": upper}
                ))

    def _find_substitute(self, missing: str, datacard: DataCard) -> Optional[str]:
        target = missing.lower()
        for col in datacard.columns:
            name = col.name.lower()
            if target in name or name in target:
                return col.name
            if levenshtein(target, name) <= SEMANTIC_FALLBACK_MAX_DISTANCE:
                return col.name
        return None

    def _apply_semantic_fallback(
        self,
        spec: ExecSpec,
        datacard: DataCard,
        policies: List[PolicyApplication],
        warnings: List[AnalysisWarning]
    ) -> ExecSpec:
        available = set(datacard.column_names)
        replacements = {}
        for dim in spec.dimensions:
            if dim in available or dim in replacements:
                continue
            substitute = self._find_substitute(dim, datacard)
            if substitute is None:
                warnings.append(AnalysisWarning(
                    type="semantic",
                    severity="warning",
                    message=f"维度 {dim} 不存在且找不到相近的列"
                ))
                continue
            replacements[dim] = substitute
            policies.append(PolicyApplication(
                policy_name="semantic_fallback",
                reason=f"维度 {dim} 不存在，使用最相近的列 {substitute}",
                impact=f"{dim} → {substitute}"
            ))
            warnings.append(AnalysisWarning(
                type="semantic",
                severity="warning",
                message=f"维度 {dim} 已替换为 {substitute}",
                details={"original": dim, "substitute": substitute}
            ))

        if not replacements:
            return spec

        def swap(name: Optional[str]) -> Optional[str]:
            return replacements.get(name, name) if name else name

        dimensions: List[str] = []
        for dim in spec.dimensions:
            new_dim = swap(dim)
            if new_dim not in dimensions:
                dimensions.append(new_dim)

        return spec.model_copy(update={
            "dimensions": dimensions,
            "order_by": [o.model_copy(update={"column": swap(o.column)}) for o in spec.order_by],
            "top_n": spec.top_n.model_copy(update={"order_by": swap(spec.top_n.order_by)}) if spec.top_n else None,
            "window_functions": [
                w.model_copy(update={
                    "partition_by": [swap(p) for p in w.partition_by],
                    "order_by": swap(w.order_by),
                    "column": swap(w.column),
                })
                for w in spec.window_functions
            ],
        })

    def _apply_aggregation_safety(
        self,
        spec: ExecSpec,
        datacard: DataCard,
        policies: List[PolicyApplication],
        warnings: List[AnalysisWarning]
    ) -> ExecSpec:
        if not spec.measures or spec.dimensions:
            return spec
        text_column = next((c.name for c in datacard.columns if c.type == "text"), None)
        if text_column is None:
            warnings.append(AnalysisWarning(
                type="policy_applied",
                severity="info",
                message="聚合缺少维度且没有可用的文本列，结果为单行汇总"
            ))
            return spec
        policies.append(PolicyApplication(
            policy_name="aggregation_safety",
            reason="存在度量但没有维度，避免整表聚合为单行",
            impact=f"新增维度 {text_column}"
        ))
        return spec.model_copy(update={"dimensions": [text_column]})


def validate_policy_application(
    original: ExecSpec,
    adjusted: ExecSpec,
    policies: List[PolicyApplication]
) -> List[str]:
    """
    事后校验策略记录与实际改写一致

    Returns:
        不一致项（空表示一致）
    """
    issues: List[str] = []
    names = {p.policy_name for p in policies}

    limit_changed = original.limit != adjusted.limit
    filters_added = len(adjusted.filters) > len(original.filters)
    dims_swapped = bool(original.dimensions) and original.dimensions != adjusted.dimensions
    dims_injected = not original.dimensions and bool(adjusted.dimensions)

    for name, changed in [
        ("row_limit", limit_changed),
        ("missing_data_handling", filters_added),
        ("semantic_fallback", dims_swapped),
        ("aggregation_safety", dims_injected),
    ]:
        if name in names and not changed:
            issues.append(f"策略 {name} 已记录但 ExecSpec 未改变")
        if changed and name not in names:
            issues.append(f"ExecSpec 发生改变但缺少 {name} 记录")
    return issues


def get_policy_recommendations(datacard: DataCard, config: Optional[PolicyConfig] = None) -> List[str]:
    """根据 DataCard 给出数据改进建议"""
    config = config or PolicyConfig()
    recommendations: List[str] = []

    if datacard.quality_score < config.quality_floor:
        recommendations.append(f"数据质量分 {datacard.quality_score} 低于 {config.quality_floor}，建议先清洗数据")
    if datacard.total_rows < config.min_sample_size:
        recommendations.append(f"样本量不足（{datacard.total_rows} < {config.min_sample_size}），结论可能不可靠")

    sparse = [c.name for c in datacard.columns if c.nullable_pct > MISSING_DATA_THRESHOLD_PCT]
    if sparse:
        recommendations.append(f"以下列空值率超过 {MISSING_DATA_THRESHOLD_PCT:.0f}%: {', '.join(sparse)}")

    if datacard.stats.outliers_detected:
        recommendations.append(f"检测到 {datacard.stats.outliers_detected} 个异常值，建议核查极端数据")
    if datacard.stats.duplicates_detected:
        recommendations.append(f"样本中有 {datacard.stats.duplicates_detected} 行重复，建议去重")
    if datacard.stats.consistency_issues:
        recommendations.append(f"有 {datacard.stats.consistency_issues} 个取值与列类型不一致")

    return recommendations
