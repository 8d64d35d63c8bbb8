"""业务指标测试"""

import json

import pytest

from analytics_engine.engines.duckdb_store import SEED_DIR
from analytics_engine.engines.metrics_calculator import MetricsCalculator, formula_placeholders, substitute_formula
from analytics_engine.models.exec_spec import ExecSpec, Measure
from analytics_engine.models.template import MetricDefinition

from conftest import make_datacard


@pytest.fixture
def calculator():
    definitions = json.loads((SEED_DIR / "metrics_registry.json").read_text(encoding="utf-8"))
    return MetricsCalculator([MetricDefinition(**d) for d in definitions])


def test_formula_helpers():
    assert formula_placeholders("SUM({revenue}) / COUNT({order_id}) + {revenue}") == ["revenue", "order_id"]
    assert substitute_formula("SUM({revenue})", {"revenue": "Receita Bruta"}) == 'SUM("Receita Bruta")'


def test_primary_formula(calculator, sales_datacard):
    """主公式所需列齐全"""
    result = calculator.calculate("desconto_medio", sales_datacard)

    assert result.status == "primary"
    assert result.confidence == 1.0
    assert result.formula_used == 'SUM("discount") / NULLIF(SUM("revenue"), 0)'
    assert result.columns_used == ["discount", "revenue"]


def test_fallback_formula(calculator, sales_datacard):
    """缺少 order_id 时退回备用公式，置信度 0.7"""
    result = calculator.calculate("ticket_medio", sales_datacard)

    assert result.status == "fallback"
    assert result.confidence == 0.7
    assert result.formula_used == 'AVG("revenue")'
    assert result.missing_columns == ["order_id"]


def test_unsatisfiable(calculator, sales_datacard):
    result = calculator.calculate("custo_frete_por_kg", sales_datacard)
    assert result.status == "unsatisfiable"
    assert result.formula_used is None
    assert result.missing_columns == ["freight_cost", "weight"]

    unknown = calculator.calculate("nao_existe", sales_datacard)
    assert unknown.status == "unsatisfiable"
    assert not calculator.can_calculate("nao_existe", sales_datacard)


def test_suggest_metrics(calculator, sales_datacard):
    """主公式可算的排在前面"""
    assert calculator.suggest_metrics(sales_datacard) == ["receita_total", "desconto_medio", "ticket_medio"]
    assert {m.metric_name for m in calculator.metrics_by_category("hr")} == {"salario_medio"}


def test_enrich_exec_spec(calculator, sales_datacard):
    """可计算的指标追加为自定义度量，其余给出告警"""
    spec = ExecSpec(dimensions=["region"], measures=[Measure(name="total", aggregation="sum", column="revenue")])

    enriched, results, warnings = calculator.enrich_exec_spec(
        spec, ["desconto_medio", "ticket_medio", "otif"], sales_datacard
    )

    assert [m.name for m in enriched.measures] == ["total", "desconto_medio", "ticket_medio"]
    assert enriched.measures[1].aggregation == "custom"
    assert enriched.measures[1].metric_id == "desconto_medio"
    assert [r.status for r in results] == ["primary", "fallback", "unsatisfiable"]
    assert [w.severity for w in warnings] == ["info", "warning"]
    assert len(spec.measures) == 1


def test_semantic_names_resolve_placeholders():
    """占位符按规范名匹配，代入原始列名"""
    datacard = make_datacard([{"Valor": float(i), "Frete": 1.0, "Peso": 2.0} for i in range(3)])
    datacard = datacard.model_copy(update={"columns": [
        c.model_copy(update={"canonical_name": {"Frete": "freight_cost", "Peso": "weight"}.get(c.name)})
        for c in datacard.columns
    ]})
    calculator = MetricsCalculator([MetricDefinition(
        metric_name="frete_kg",
        formula="SUM({freight_cost}) / NULLIF(SUM({weight}), 0)",
        required_columns=["freight_cost", "weight"]
    )])

    result = calculator.calculate("frete_kg", datacard)

    assert result.status == "primary"
    assert result.formula_used == 'SUM("Frete") / NULLIF(SUM("Peso"), 0)'
