"""血缘与性能日志模型"""

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


class LineageTrace(BaseModel):
    """执行血缘记录"""
    exec_id: str = Field(..., description="执行ID")
    dataset_id: str = Field(..., description="数据集ID")
    exec_spec: Dict[str, Any] = Field(default_factory=dict, description="执行的 ExecSpec")
    exec_spec_hash: Optional[str] = Field(None, description="ExecSpec 哈希")
    datacard_summary: Dict[str, Any] = Field(default_factory=dict, description="DataCard 摘要")
    sql_generated: Optional[str] = Field(None, description="生成的 SQL")
    result_summary: Dict[str, Any] = Field(default_factory=dict, description="结果摘要")
    status: str = Field(..., description="success, failed, cached")
    execution_time_ms: float = Field(0.0, description="耗时（毫秒）")
    created_at: datetime = Field(default_factory=datetime.now, description="创建时间")


class ArtifactRecord(BaseModel):
    """执行产物"""
    artifact_id: str = Field(..., description="产物ID")
    exec_id: str = Field(..., description="执行ID")
    artifact_type: Literal["chart", "table", "metric", "narrative"] = Field(..., description="产物类型")
    payload: Dict[str, Any] = Field(default_factory=dict, description="内容")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="附加信息")
    created_at: datetime = Field(default_factory=datetime.now, description="创建时间")


class PerformanceLogEntry(BaseModel):
    """流水线性能记录"""
    exec_id: Optional[str] = None
    dataset_id: str
    stage_completed: str
    template_used: Optional[str] = None
    fallback_strategy: Optional[str] = None
    success: bool = True
    error_code: Optional[str] = None
    total_time_ms: float = 0.0
    stage_timings: Dict[str, float] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)
