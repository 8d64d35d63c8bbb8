"""分析模板与指标模型"""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from analytics_engine.models.exec_spec import ExecSpec


class AnalyticsTemplate(BaseModel):
    """分析模板（shape 以规范列名书写）"""
    id: str = Field(..., description="模板ID")
    name: str = Field(..., description="模板名称")
    description: str = Field("", description="说明")
    required_columns: List[str] = Field(default_factory=list, description="必需列（规范名）")
    optional_columns: List[str] = Field(default_factory=list, description="可选列（规范名）")
    shape: ExecSpec = Field(..., description="查询形状")
    domain: str = Field("generic", description="业务领域")
    semantic_tags: List[str] = Field(default_factory=list, description="语义标签")
    version: int = Field(1, ge=1, description="版本")
    is_active: bool = Field(True, description="是否启用")


class TemplateMatchResult(BaseModel):
    """模板匹配结果"""
    matched: bool = Field(..., description="是否达到阈值")
    template: Optional[AnalyticsTemplate] = Field(None, description="命中的模板")
    score: float = Field(0.0, description="最佳得分")
    best_template_id: Optional[str] = Field(None, description="得分最高的模板")
    missing_columns: List[str] = Field(default_factory=list, description="最佳模板缺失的列")
    reason: str = Field("", description="说明")


class MetricDefinition(BaseModel):
    """业务指标定义（公式以 {规范列名} 占位）"""
    metric_name: str = Field(..., description="指标名")
    formula: str = Field(..., description="主公式")
    required_columns: List[str] = Field(default_factory=list, description="主公式所需列")
    fallback_formula: Optional[str] = Field(None, description="备用公式")
    category: str = Field("general", description="分类")
    unit: Optional[str] = Field(None, description="单位")
    description: str = Field("", description="说明")
    is_active: bool = Field(True, description="是否启用")


class MetricCalculationResult(BaseModel):
    """指标解析结果"""
    metric_name: str
    status: Literal["primary", "fallback", "unsatisfiable"]
    formula_used: Optional[str] = Field(None, description="代入列名后的公式")
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    columns_used: List[str] = Field(default_factory=list, description="使用的原始列")
    missing_columns: List[str] = Field(default_factory=list, description="缺失的规范列")
    reason: str = Field("", description="说明")
