"""数据集画像（DataCard）相关模型"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

ColumnType = Literal["text", "numeric", "date", "boolean", "empty"]
DomainType = Literal["logistics", "sales", "hr", "financial", "generic"]


class ColumnStats(BaseModel):
    """数值列统计"""
    model_config = ConfigDict(frozen=True)

    min: float = Field(..., description="最小值")
    max: float = Field(..., description="最大值")
    mean: float = Field(..., description="均值")
    stddev: float = Field(0.0, description="标准差（总体）")


class ColumnMetadata(BaseModel):
    """列画像"""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="原始列名")
    normalized_name: str = Field(..., description="归一化列名")
    type: ColumnType = Field(..., description="列类型")
    nullable_pct: float = Field(0.0, ge=0.0, le=100.0, description="空值占比（%）")
    cardinality: int = Field(0, ge=0, description="不同取值数量")
    unique_values_sample: List[Any] = Field(default_factory=list, description="取值样例（最多5个）")
    stats: Optional[ColumnStats] = Field(None, description="数值统计")
    is_candidate_key: bool = Field(False, description="是否候选键")

    # 语义解析后填充
    canonical_name: Optional[str] = Field(None, description="规范名称")
    mapping_confidence: Optional[float] = Field(None, ge=0.0, le=1.0, description="映射置信度")
    entity_type: Optional[Literal["dimension", "measure"]] = Field(None, description="实体类型")
    matched_via: Optional[Literal["exact", "alias", "fuzzy", "fallback"]] = Field(None, description="匹配方式")


class DataStats(BaseModel):
    """数据集整体统计"""
    model_config = ConfigDict(frozen=True)

    completeness_pct: float = Field(0.0, description="完整度（%）")
    size_category: Literal["small", "medium", "large"] = Field("small", description="规模分档")
    consistency_issues: int = Field(0, description="类型不一致的取值数")
    outliers_detected: int = Field(0, description="异常值数量（3σ）")
    duplicates_detected: int = Field(0, description="重复行数量")


class DataCard(BaseModel):
    """数据集画像（不可变，语义增强返回新副本）"""
    model_config = ConfigDict(frozen=True)

    dataset_id: str = Field(..., description="数据集ID")
    columns: List[ColumnMetadata] = Field(default_factory=list, description="列画像（有序）")
    total_rows: int = Field(0, ge=0, description="总行数")
    quality_score: int = Field(0, ge=0, le=100, description="质量分")
    sample_rows: List[Dict[str, Any]] = Field(default_factory=list, description="样本行（最多10行）")
    stats: DataStats = Field(default_factory=DataStats, description="整体统计")
    detected_domain: Optional[DomainType] = Field(None, description="识别出的业务领域")
    semantic_mapping: Optional[Dict[str, str]] = Field(None, description="原始列名 → 规范名称")
    created_at: datetime = Field(default_factory=datetime.now, description="创建时间")

    def get_column(self, name: str) -> Optional[ColumnMetadata]:
        """按原始列名查找"""
        for col in self.columns:
            if col.name == name:
                return col
        return None

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def summary(self) -> Dict[str, Any]:
        """血缘记录用的精简摘要"""
        return {
            "dataset_id": self.dataset_id,
            "total_rows": self.total_rows,
            "quality_score": self.quality_score,
            "detected_domain": self.detected_domain,
            "columns": [
                {"name": c.name, "type": c.type, "canonical_name": c.canonical_name}
                for c in self.columns
            ],
        }


class DatasetSample(BaseModel):
    """数据集样本"""
    columns: List[str] = Field(..., description="列名列表")
    rows: List[List[Any]] = Field(..., description="数据行")
    total_rows: int = Field(..., description="数据集总行数")
    column_types: Dict[str, str] = Field(default_factory=dict, description="声明的列类型")


class DatasetInfo(BaseModel):
    """已入库的数据集"""
    dataset_id: str = Field(..., description="数据集ID")
    name: str = Field(..., description="数据集名称")
    source_type: str = Field("records", description="来源类型: excel, csv, records")
    columns: List[str] = Field(default_factory=list, description="列名列表")
    column_types: Dict[str, str] = Field(default_factory=dict, description="列类型")
    total_rows: int = Field(0, ge=0, description="总行数")
    created_at: datetime = Field(default_factory=datetime.now, description="创建时间")
