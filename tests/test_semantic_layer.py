"""语义层测试"""

from analytics_engine.engines.semantic_layer import SemanticLayer, available_names
from analytics_engine.models.semantic import SemanticContext, SemanticEntry

from conftest import make_datacard


def _layer(**kwargs) -> SemanticLayer:
    entries = [
        SemanticEntry(canonical_name="revenue", entity_type="measure", aliases=["receita", "faturamento"], domain="sales", language="en"),
        SemanticEntry(canonical_name="revenues", entity_type="measure", aliases=[], domain="financial", language="en"),
        SemanticEntry(canonical_name="region", entity_type="dimension", aliases=["regiao"], domain="sales", language="en"),
        SemanticEntry(canonical_name="carrier", entity_type="dimension", aliases=["transportadora"], domain="logistics", language="en"),
    ]
    return SemanticLayer(entries, **kwargs)


def test_exact_beats_fuzzy():
    """精确匹配优先于模糊候选"""
    mapping = _layer().resolve_column("revenue")

    assert mapping.canonical_name == "revenue"
    assert mapping.matched_via == "exact"
    assert mapping.confidence == 1.0


def test_alias_match_normalized():
    """同义词匹配（大小写/重音/下划线归一化）"""
    mapping = _layer().resolve_column("  Região ")

    assert mapping.canonical_name == "region"
    assert mapping.matched_via == "alias"
    assert mapping.confidence == 0.95
    assert mapping.entity_type == "dimension"


def test_fuzzy_match():
    """模糊匹配置信度等于相似度"""
    mapping = _layer().resolve_column("transportadra")

    assert mapping.canonical_name == "carrier"
    assert mapping.matched_via == "fuzzy"
    assert 0.85 <= mapping.confidence < 1.0


def test_fuzzy_threshold_respected():
    mapping = _layer(fuzzy_threshold=0.99).resolve_column("transportadra")
    assert mapping.matched_via == "fallback"


def test_fallback_keeps_raw_name():
    """未命中保留原名，置信度 0.5"""
    layer = _layer()
    numeric = layer.resolve_column("xyz_total", column_type="numeric")
    text = layer.resolve_column("xyz_label", column_type="text")

    assert numeric.canonical_name == "xyz_total"
    assert numeric.matched_via == "fallback"
    assert numeric.confidence == 0.5
    assert numeric.entity_type == "measure"
    assert text.entity_type == "dimension"


def test_tie_break_prefers_context_domain():
    """同级平局按领域优先"""
    entries = [
        SemanticEntry(canonical_name="valor_venda", aliases=["valor"], domain="sales", language="pt"),
        SemanticEntry(canonical_name="valor_custo", aliases=["valor"], domain="financial", language="pt"),
    ]
    layer = SemanticLayer(entries)

    assert layer.resolve_column("valor").canonical_name == "valor_venda"
    financial = layer.resolve_column("valor", SemanticContext(domain="financial"))
    assert financial.canonical_name == "valor_custo"


def test_inactive_entries_ignored():
    layer = SemanticLayer([SemanticEntry(canonical_name="revenue", is_active=False)])
    assert layer.resolve_column("revenue").matched_via == "fallback"


def test_resolve_datacard_returns_new_copy():
    """resolve_datacard 不修改原 DataCard"""
    datacard = make_datacard([{"Receita": float(i), "Regiao": f"R{i % 3}"} for i in range(12)])
    enriched = _layer().resolve_datacard(datacard)

    assert datacard.semantic_mapping is None
    assert datacard.get_column("Receita").canonical_name is None
    assert enriched.semantic_mapping == {"Receita": "revenue", "Regiao": "region"}
    assert enriched.get_column("Receita").matched_via == "alias"

    names = available_names(enriched)
    assert names["revenue"] == "Receita"
    assert names["region"] == "Regiao"
    # 原始列名也可用于查找
    assert names["receita"] == "Receita"
    assert names["regiao"] == "Regiao"


async def test_seeded_dictionary(store):
    """内置词典覆盖葡语列名"""
    layer = SemanticLayer(await store.load_semantic_entries())

    assert layer.resolve_column("Valor_Frete").canonical_name == "freight_cost"
    assert layer.resolve_column("data_pedido").canonical_name == "date"
    assert layer.resolve_column("Cliente").entity_type == "dimension"
    assert layer.resolve_column("Salário").canonical_name == "salary"
