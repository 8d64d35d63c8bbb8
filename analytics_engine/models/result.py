"""执行结果与策略相关模型"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from analytics_engine.models.exec_spec import ExecSpec

WarningType = Literal["data_quality", "policy_applied", "performance", "calculation", "semantic"]
Severity = Literal["info", "warning", "error"]


class AnalysisWarning(BaseModel):
    """分级告警"""
    type: WarningType = Field(..., description="告警类型")
    severity: Severity = Field("warning", description="严重程度")
    message: str = Field(..., description="说明")
    affected_count: Optional[int] = Field(None, description="受影响数量")
    details: Optional[Dict[str, Any]] = Field(None, description="详情")


class PolicyApplication(BaseModel):
    """一次策略改写的记录"""
    policy_name: str = Field(..., description="策略名")
    applied: bool = Field(True, description="是否生效")
    reason: str = Field(..., description="原因")
    impact: str = Field("", description="对查询的影响")


class PolicyEnforcementResult(BaseModel):
    """策略引擎输出"""
    adjusted_spec: ExecSpec = Field(..., description="改写后的 ExecSpec（新对象）")
    policies_applied: List[PolicyApplication] = Field(default_factory=list)
    warnings: List[AnalysisWarning] = Field(default_factory=list)
    should_proceed: bool = Field(True, description="是否继续执行")
    blocked_reason: Optional[str] = Field(None, description="阻断原因")


class ExecResult(BaseModel):
    """ExecSpec 执行结果"""
    exec_id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="执行ID")
    success: bool = Field(..., description="是否成功")
    data: List[Dict[str, Any]] = Field(default_factory=list, description="结果行")
    warnings: List[AnalysisWarning] = Field(default_factory=list, description="告警")
    execution_time_ms: float = Field(0.0, description="耗时（毫秒）")
    rows_processed: int = Field(0, description="扫描行数")
    rows_returned: int = Field(0, description="返回行数")
    policies_applied: List[PolicyApplication] = Field(default_factory=list, description="已应用策略")
    created_at: datetime = Field(default_factory=datetime.now, description="创建时间")

    error_code: Optional[str] = Field(None, description="错误代码")
    error_message: Optional[str] = Field(None, description="可读的失败原因")
    sql_generated: Optional[str] = Field(None, description="生成的 SQL")
    exec_spec_hash: Optional[str] = Field(None, description="缓存键")
    executed_spec: Optional[ExecSpec] = Field(None, description="实际执行的 ExecSpec")
    cache_hit: bool = Field(False, description="是否命中缓存")
    cached_from_exec_id: Optional[str] = Field(None, description="缓存来源执行ID")
