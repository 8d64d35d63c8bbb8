"""错误分类"""

from typing import Any, Dict, List


class ErrorCode:
    """对外可见的错误代码"""
    SCHEMA_DETECTION_FAILURE = "schema_detection_failure"
    DATASET_UNANALYZABLE = "dataset_unanalyzable"
    QUALITY_GATE_BLOCKED = "quality_gate_blocked"
    NO_TEMPLATE_AND_FALLBACK_DISABLED = "no_template_and_fallback_disabled"
    FALLBACK_UNSUITABLE = "fallback_unsuitable"
    VALIDATION_FAILURE = "validation_failure"
    SQL_EXECUTION_ERROR = "sql_execution_error"
    LLM_DRAFT_INVALID = "llm_draft_invalid"


class AnalyticsError(Exception):
    """分析错误（结构化）"""

    code = "analytics_error"

    def __init__(self, message: str, detail: Dict[str, Any] | None = None, code: str | None = None):
        super().__init__(message)
        if code:
            self.code = code
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "detail": self.detail}


class SchemaDetectionError(AnalyticsError):
    """数据集结构识别失败"""
    code = ErrorCode.SCHEMA_DETECTION_FAILURE


class LLMDraftError(AnalyticsError):
    """LLM 返回的草稿无法解析为 ExecSpec"""
    code = ErrorCode.LLM_DRAFT_INVALID


class QueryExecutionError(Exception):
    """查询执行错误"""

    def __init__(self, message: str, sql: str | None = None, params: List[Any] | None = None, cause: Exception | None = None):
        super().__init__(message)
        self.sql = sql
        self.params = params or []
        self.cause = str(cause) if cause else None
