"""Template Matcher - 分析模板匹配与绑定"""

from typing import Dict, List, Optional, Set

from analytics_engine.core.errors import AnalyticsError
from analytics_engine.engines.semantic_layer import available_names
from analytics_engine.models.datacard import DataCard
from analytics_engine.models.exec_spec import ExecSpec
from analytics_engine.models.template import AnalyticsTemplate, TemplateMatchResult
from analytics_engine.utils.logger import log
from analytics_engine.utils.sql_safety import expression_identifiers, parse_expression, quote_identifier

DEFAULT_MATCH_THRESHOLD = 0.8


class TemplateBindingError(AnalyticsError):
    """模板无法绑定到数据集"""
    code = "template_binding_failure"


class TemplateMatcher:
    """模板匹配器"""

    def __init__(self, templates: List[AnalyticsTemplate]):
        self.templates = [t for t in templates if t.is_active]

    def match(self, datacard: DataCard, threshold: float = DEFAULT_MATCH_THRESHOLD) -> TemplateMatchResult:
        """
        为 DataCard 寻找最佳模板

        score = |必需列 ∩ 可用列| / |必需列|，大小写不敏感；
        平分保留注册顺序靠前者，满分立即返回。
        """
        available = set(available_names(datacard))

        best: Optional[AnalyticsTemplate] = None
        best_score = 0.0
        best_missing: List[str] = []

        for template in self.templates:
            if not template.required_columns:
                continue
            required = [c.lower() for c in template.required_columns]
            missing = [c for c in template.required_columns if c.lower() not in available]
            score = (len(required) - len(missing)) / len(required)

            if best is None or score > best_score:
                best, best_score, best_missing = template, score, missing
            if score == 1.0:
                break

        if best is None:
            return TemplateMatchResult(matched=False, reason="没有可用模板")

        if best_score >= threshold:
            log.info(f"模板命中: {best.id} (score={best_score:.3f})")
            return TemplateMatchResult(
                matched=True,
                template=best,
                score=best_score,
                best_template_id=best.id,
                missing_columns=best_missing,
                reason=f"模板 {best.id} 得分 {best_score:.3f} ≥ 阈值 {threshold}"
            )

        log.info(f"无模板达到阈值: 最佳 {best.id} (score={best_score:.3f})，缺失 {best_missing}")
        return TemplateMatchResult(
            matched=False,
            score=best_score,
            best_template_id=best.id,
            missing_columns=best_missing,
            reason=f"最佳模板 {best.id} 得分 {best_score:.3f} < 阈值 {threshold}，缺失列: {', '.join(best_missing)}"
        )

    def get_template(self, template_id: str) -> Optional[AnalyticsTemplate]:
        for template in self.templates:
            if template.id == template_id:
                return template
        return None

    def templates_by_domain(self, domain: str) -> List[AnalyticsTemplate]:
        return [t for t in self.templates if t.domain == domain]

    def search_by_tags(self, tags: List[str]) -> List[AnalyticsTemplate]:
        """按标签检索（命中任一标签）"""
        wanted = {t.lower() for t in tags}
        return [t for t in self.templates if wanted & {tag.lower() for tag in t.semantic_tags}]


def bind_template(template: AnalyticsTemplate, datacard: DataCard) -> ExecSpec:
    """
    将模板形状（规范列名）绑定为可执行的 ExecSpec（原始列名）

    缺失的可选列连同引用它的维度/度量/过滤/排序一并移除；
    缺失必需列时抛出 TemplateBindingError。
    """
    names = available_names(datacard)
    required = {c.lower() for c in template.required_columns}
    missing_required = [c for c in template.required_columns if c.lower() not in names]
    if missing_required:
        raise TemplateBindingError(
            f"模板 {template.id} 缺少必需列: {', '.join(missing_required)}",
            detail={"template_id": template.id, "missing_columns": missing_required}
        )

    def bind(name: Optional[str]) -> Optional[str]:
        if name is None:
            return None
        return names.get(name.lower())

    shape = template.shape
    canonical_refs: Set[str] = set(required) | {c.lower() for c in template.optional_columns}
    lookup: Dict[str, str] = {k: v for k, v in names.items() if k in canonical_refs}

    dimensions = [bind(d) for d in shape.dimensions if bind(d)]

    measures = []
    for measure in shape.measures:
        if measure.formula:
            try:
                refs = expression_identifiers(measure.formula, canonical_refs)
            except ValueError as e:
                log.warning(f"模板 {template.id} 度量 {measure.name} 公式无效，已跳过: {e}")
                continue
            if any(r not in lookup for r in refs):
                continue
            formula = parse_expression(
                measure.formula,
                set(refs),
                lambda n: quote_identifier(lookup[n])
            )
            measures.append(measure.model_copy(update={"formula": formula}))
        elif measure.column is None:
            measures.append(measure)
        elif bind(measure.column):
            measures.append(measure.model_copy(update={"column": bind(measure.column)}))

    output = set(dimensions) | {m.name for m in measures}

    filters = [f.model_copy(update={"column": bind(f.column)}) for f in shape.filters if bind(f.column)]

    def bind_output(name: str) -> Optional[str]:
        if name in {m.name for m in measures}:
            return name
        bound = bind(name)
        return bound if bound in output else None

    order_by = [o.model_copy(update={"column": bind_output(o.column)}) for o in shape.order_by if bind_output(o.column)]

    top_n = shape.top_n
    if top_n is not None:
        order_col = bind_output(top_n.order_by)
        top_n = top_n.model_copy(update={"order_by": order_col}) if order_col and dimensions else None

    windows = []
    for window in shape.window_functions:
        column = bind_output(window.column) if window.column else None
        order_col = bind_output(window.order_by) if window.order_by else None
        partitions = [bind(p) for p in window.partition_by]
        if (window.column and not column) or (window.order_by and not order_col) or not all(partitions):
            continue
        windows.append(window.model_copy(update={"column": column, "order_by": order_col, "partition_by": partitions}))

    metadata = dict(shape.metadata)
    metadata.update({"template_id": template.id, "template_version": template.version})

    return shape.model_copy(update={
        "dimensions": dimensions,
        "measures": measures,
        "filters": filters,
        "order_by": order_by,
        "top_n": top_n,
        "window_functions": windows,
        "metadata": metadata,
    })
