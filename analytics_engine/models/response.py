"""API 请求/响应模型"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from analytics_engine.models.exec_spec import ExecSpec
from analytics_engine.models.result import AnalysisWarning, PolicyApplication


class LLMConfig(BaseModel):
    """LLM 配置"""
    provider: str = "openai"  # openai 或 anthropic
    api_key: str
    model: str = "gpt-4-turbo-preview"
    base_url: Optional[str] = None


class AnalysisRequest(BaseModel):
    """自动分析请求（模板或兜底策略）"""
    dataset_id: str = Field(..., description="数据集ID")
    question: Optional[str] = Field(None, description="用户问题（仅记录）")


class ExecuteRequest(BaseModel):
    """直接执行 ExecSpec"""
    dataset_id: str = Field(..., description="数据集ID")
    exec_spec: ExecSpec = Field(..., description="查询规范")
    use_cache: bool = Field(True, description="是否使用缓存")


class PlanRequest(BaseModel):
    """自然语言 → ExecSpec → 执行"""
    dataset_id: str = Field(..., description="数据集ID")
    question: str = Field(..., min_length=1, description="用户问题")
    llm_config: Optional[LLMConfig] = Field(None, description="自定义 LLM 配置")


class PipelineMetadata(BaseModel):
    """流水线元数据"""
    pipeline_stage_completed: str = Field("none", description="最后完成的阶段")
    template_matched: bool = Field(False, description="是否命中模板")
    template_used: Optional[str] = Field(None, description="使用的模板ID")
    template_score: Optional[float] = Field(None, description="模板得分")
    fallback_strategy: Optional[str] = Field(None, description="兜底策略")
    semantic_mappings_applied: int = Field(0, description="语义映射成功的列数")
    semantic_confidence_avg: Optional[float] = Field(None, description="平均映射置信度")
    detected_domain: Optional[str] = Field(None, description="识别出的领域")
    quality_score: Optional[int] = Field(None, description="质量分")
    total_time_ms: float = Field(0.0, description="总耗时（毫秒）")
    stage_timings: Dict[str, float] = Field(default_factory=dict, description="各阶段耗时")
    flags_active: Dict[str, bool] = Field(default_factory=dict, description="生效的配置开关")


class AnalysisResponse(BaseModel):
    """分析响应（统一结构）"""
    success: bool = Field(True, description="是否成功")
    exec_id: Optional[str] = Field(None, description="执行ID")
    data: List[Dict[str, Any]] = Field(default_factory=list, description="结果行")
    warnings: List[AnalysisWarning] = Field(default_factory=list, description="告警")
    policies_applied: List[PolicyApplication] = Field(default_factory=list, description="已应用策略")
    metadata: PipelineMetadata = Field(default_factory=PipelineMetadata, description="流水线元数据")
    exec_spec: Optional[ExecSpec] = Field(None, description="实际执行的 ExecSpec")
    sql_generated: Optional[str] = Field(None, description="生成的 SQL")
    cache_hit: bool = Field(False, description="是否命中缓存")
    error_code: Optional[str] = Field(None, description="错误代码")
    reason: Optional[str] = Field(None, description="失败原因")


class UploadResponse(BaseModel):
    """文件上传并入库响应"""
    dataset_id: str = Field(..., description="数据集ID")
    filename: str = Field(..., description="文件名")
    size_bytes: int = Field(..., description="文件大小")
    total_rows: int = Field(..., description="总行数")
    columns: List[str] = Field(default_factory=list, description="列名")
    column_types: Dict[str, str] = Field(default_factory=dict, description="列类型")


class RecordsUploadRequest(BaseModel):
    """以 JSON 记录创建数据集"""
    name: str = Field(..., min_length=1, description="数据集名称")
    records: List[Dict[str, Any]] = Field(..., min_length=1, description="数据行")


class ArtifactRequest(BaseModel):
    """登记执行产物"""
    artifact_type: Literal["chart", "table", "metric", "narrative"] = Field(..., description="产物类型")
    payload: Dict[str, Any] = Field(default_factory=dict, description="内容")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="附加信息")
