"""Semantic Layer - 原始列名 → 规范业务实体"""

from typing import Dict, List, Optional, Tuple

from analytics_engine.models.datacard import ColumnMetadata, DataCard
from analytics_engine.models.semantic import SemanticContext, SemanticEntry, SemanticMapping
from analytics_engine.utils.logger import log
from analytics_engine.utils.text import normalize_text, similarity

EXACT_CONFIDENCE = 1.0
ALIAS_CONFIDENCE = 0.95
FALLBACK_CONFIDENCE = 0.5
DEFAULT_FUZZY_THRESHOLD = 0.85


class SemanticLayer:
    """
    四级解析，命中即停：
    1. 规范名精确匹配（1.0）
    2. 同义词匹配（0.95）
    3. 模糊匹配，归一化 Levenshtein 相似度 ≥ 阈值（置信度 = 相似度）
    4. 保留原名（0.5，matched_via=fallback）

    级别顺序绝对优先；同级平局依次比较 领域、语言、条目置信度、词典顺序。
    """

    def __init__(
        self,
        entries: List[SemanticEntry],
        fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
        log_mappings: bool = False
    ):
        self.entries = [e for e in entries if e.is_active]
        self.fuzzy_threshold = fuzzy_threshold
        self.log_mappings = log_mappings
        # 预先归一化，避免每列重复计算
        self._canonical: List[Tuple[int, SemanticEntry, str]] = []
        self._aliases: List[Tuple[int, SemanticEntry, List[str]]] = []
        for order, entry in enumerate(self.entries):
            self._canonical.append((order, entry, normalize_text(entry.canonical_name)))
            self._aliases.append((order, entry, [normalize_text(a) for a in entry.aliases]))

    @staticmethod
    def _tie_key(order: int, entry: SemanticEntry, context: Optional[SemanticContext]):
        domain_hit = bool(context and context.domain and entry.domain == context.domain)
        language_hit = bool(context and context.language and entry.language == context.language)
        # 越小越优先
        return (not domain_hit, not language_hit, -entry.confidence, order)

    def _pick(self, candidates: List[Tuple[int, SemanticEntry]], context: Optional[SemanticContext]) -> SemanticEntry:
        return min(candidates, key=lambda c: self._tie_key(c[0], c[1], context))[1]

    def resolve_column(
        self,
        raw_name: str,
        context: Optional[SemanticContext] = None,
        column_type: Optional[str] = None
    ) -> SemanticMapping:
        """
        解析单个列名

        Args:
            raw_name: 原始列名
            context: 领域/语言提示
            column_type: 列类型（仅用于兜底时推断实体类型）

        Returns:
            SemanticMapping
        """
        target = normalize_text(raw_name)

        # 1. 精确匹配
        exact = [(order, entry) for order, entry, canonical in self._canonical if canonical == target]
        if exact:
            entry = self._pick(exact, context)
            return SemanticMapping(
                raw_name=raw_name,
                canonical_name=entry.canonical_name,
                entity_type=entry.entity_type,
                confidence=EXACT_CONFIDENCE,
                matched_via="exact"
            )

        # 2. 同义词
        alias_hits = [(order, entry) for order, entry, aliases in self._aliases if target in aliases]
        if alias_hits:
            entry = self._pick(alias_hits, context)
            return SemanticMapping(
                raw_name=raw_name,
                canonical_name=entry.canonical_name,
                entity_type=entry.entity_type,
                confidence=ALIAS_CONFIDENCE,
                matched_via="alias"
            )

        # 3. 模糊匹配
        best_score = 0.0
        fuzzy: List[Tuple[int, SemanticEntry]] = []
        for (order, entry, canonical), (_, _, aliases) in zip(self._canonical, self._aliases):
            score = max(similarity(target, name) for name in [canonical, *aliases])
            if score < self.fuzzy_threshold:
                continue
            if score > best_score:
                best_score = score
                fuzzy = [(order, entry)]
            elif score == best_score:
                fuzzy.append((order, entry))
        if fuzzy:
            entry = self._pick(fuzzy, context)
            return SemanticMapping(
                raw_name=raw_name,
                canonical_name=entry.canonical_name,
                entity_type=entry.entity_type,
                confidence=round(best_score, 4),
                matched_via="fuzzy"
            )

        # 4. 兜底：保留原名
        return SemanticMapping(
            raw_name=raw_name,
            canonical_name=raw_name,
            entity_type="measure" if column_type == "numeric" else "dimension",
            confidence=FALLBACK_CONFIDENCE,
            matched_via="fallback"
        )

    def resolve_datacard(self, datacard: DataCard, context: Optional[SemanticContext] = None) -> DataCard:
        """
        解析 DataCard 所有列

        Returns:
            新的 DataCard（原对象不变）
        """
        if context is None and datacard.detected_domain:
            context = SemanticContext(domain=datacard.detected_domain)

        columns: List[ColumnMetadata] = []
        semantic_mapping: Dict[str, str] = {}
        for col in datacard.columns:
            mapping = self.resolve_column(col.name, context, col.type)
            semantic_mapping[col.name] = mapping.canonical_name
            columns.append(col.model_copy(update={
                "canonical_name": mapping.canonical_name,
                "mapping_confidence": mapping.confidence,
                "entity_type": mapping.entity_type,
                "matched_via": mapping.matched_via,
            }))
            if self.log_mappings:
                log.info(
                    f"语义映射: \"{col.name}\" → \"{mapping.canonical_name}\" "
                    f"({mapping.matched_via}, conf={mapping.confidence:.2f})"
                )

        mapped = sum(1 for c in columns if c.matched_via != "fallback")
        log.info(f"语义解析完成: {mapped}/{len(columns)} 列命中词典")
        return datacard.model_copy(update={"columns": columns, "semantic_mapping": semantic_mapping})


def available_names(datacard: DataCard) -> Dict[str, str]:
    """
    小写名称 → 原始列名

    规范名优先；原始列名作为补充键，不覆盖规范名。
    """
    names: Dict[str, str] = {}
    for col in datacard.columns:
        names.setdefault((col.canonical_name or col.name).lower(), col.name)
    for col in datacard.columns:
        names.setdefault(col.name.lower(), col.name)
    return names
