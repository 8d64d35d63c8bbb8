"""语义层模型"""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class SemanticEntry(BaseModel):
    """语义词典条目"""
    canonical_name: str = Field(..., description="规范名称")
    entity_type: Literal["dimension", "measure"] = Field("dimension", description="实体类型")
    aliases: List[str] = Field(default_factory=list, description="同义词")
    domain: Optional[str] = Field(None, description="业务领域")
    language: Optional[str] = Field(None, description="语言: pt, en, es")
    confidence: float = Field(1.0, ge=0.0, le=1.0, description="条目置信度")
    description: str = Field("", description="说明")
    is_active: bool = Field(True, description="是否启用")


class SemanticContext(BaseModel):
    """解析上下文"""
    domain: Optional[str] = None
    language: Optional[str] = None


class SemanticMapping(BaseModel):
    """原始列名 → 规范名称"""
    raw_name: str
    canonical_name: str
    entity_type: Literal["dimension", "measure"]
    confidence: float = Field(..., ge=0.0, le=1.0)
    matched_via: Literal["exact", "alias", "fuzzy", "fallback"]
