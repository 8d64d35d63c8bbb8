"""数据模型包"""

from analytics_engine.models.datacard import (
    ColumnStats,
    ColumnMetadata,
    DataStats,
    DataCard,
    DatasetSample,
    DatasetInfo
)
from analytics_engine.models.exec_spec import (
    Operation,
    Measure,
    Filter,
    OrderSpec,
    TopNSpec,
    WindowFunction,
    ExecSpec
)
from analytics_engine.models.result import (
    AnalysisWarning,
    PolicyApplication,
    PolicyEnforcementResult,
    ExecResult
)
from analytics_engine.models.semantic import (
    SemanticEntry,
    SemanticContext,
    SemanticMapping
)
from analytics_engine.models.template import (
    AnalyticsTemplate,
    TemplateMatchResult,
    MetricDefinition,
    MetricCalculationResult
)
from analytics_engine.models.lineage import (
    LineageTrace,
    ArtifactRecord,
    PerformanceLogEntry
)
from analytics_engine.models.response import (
    LLMConfig,
    AnalysisRequest,
    ExecuteRequest,
    PlanRequest,
    PipelineMetadata,
    AnalysisResponse,
    UploadResponse,
    RecordsUploadRequest,
    ArtifactRequest
)

__all__ = [
    # DataCard
    "ColumnStats",
    "ColumnMetadata",
    "DataStats",
    "DataCard",
    "DatasetSample",
    "DatasetInfo",
    # ExecSpec
    "Operation",
    "Measure",
    "Filter",
    "OrderSpec",
    "TopNSpec",
    "WindowFunction",
    "ExecSpec",
    # Result
    "AnalysisWarning",
    "PolicyApplication",
    "PolicyEnforcementResult",
    "ExecResult",
    # Semantic
    "SemanticEntry",
    "SemanticContext",
    "SemanticMapping",
    # Template / Metric
    "AnalyticsTemplate",
    "TemplateMatchResult",
    "MetricDefinition",
    "MetricCalculationResult",
    # Lineage
    "LineageTrace",
    "ArtifactRecord",
    "PerformanceLogEntry",
    # Response
    "LLMConfig",
    "AnalysisRequest",
    "ExecuteRequest",
    "PlanRequest",
    "PipelineMetadata",
    "AnalysisResponse",
    "UploadResponse",
    "RecordsUploadRequest",
    "ArtifactRequest",
]
