"""系统配置管理"""

from functools import lru_cache
from pathlib import Path
from typing import Dict, Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """系统配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )

    # LLM 配置
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    default_llm_provider: str = "openai"
    default_model: str = "gpt-4-turbo-preview"

    # 分析引擎
    analytics_env: str = "prod_strict"
    query_timeout_seconds: float = 30.0
    max_query_rows: int = 100000
    datacard_sample_size: int = 1000
    max_upload_size_mb: int = 50

    # 服务器配置
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = True

    # 存储路径
    upload_dir: Path = Path("./data/uploads")
    duckdb_path: Path = Path("./data/duckdb/analytics.db")

    # 日志配置
    log_level: str = "INFO"
    log_file: Path = Path("./logs/app.log")

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # 确保目录存在
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.duckdb_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_file.parent.mkdir(parents=True, exist_ok=True)


class PolicyConfig(BaseModel):
    """策略引擎配置"""
    quality_floor: int = Field(50, ge=0, le=100, description="最低质量分")
    max_rows_default: int = Field(10000, ge=1, le=100000, description="默认行数上限")
    outlier_threshold_std_dev: float = Field(3.0, gt=0, le=10, description="异常值 σ 倍数")
    min_sample_size: int = Field(10, ge=1, description="最小样本行数")
    allow_auto_fallbacks: bool = Field(True, description="允许缺失维度自动替换")


class AnalyticsConfig(BaseModel):
    """分析流水线配置（按 profile 选择，启动时校验一次）"""

    # 编译
    quote_identifiers: bool = True

    # 语义层
    enable_semantic_mapping: bool = True
    semantic_confidence_threshold: float = Field(0.85, ge=0.0, le=1.0)
    log_semantic_mappings: bool = False

    # 模板匹配
    load_templates_from_models: bool = True
    template_match_threshold: float = Field(0.8, ge=0.0, le=1.0)
    log_template_matches: bool = True

    # 兜底策略
    fallback_enabled: bool = True
    fallback_strategy: Literal["top_n", "time_series", "pivot", "smart"] = "smart"
    enable_generic_pivot_fallback: bool = True
    fallback_max_rows: int = Field(50, ge=1, le=1000)

    # 可观测性
    log_performance: bool = True
    log_lineage: bool = True

    # 执行
    enable_cache: bool = True
    max_retries: int = Field(2, ge=0, le=5)
    policies: PolicyConfig = Field(default_factory=PolicyConfig)

    @model_validator(mode="after")
    def check_execution_path(self) -> "AnalyticsConfig":
        if not self.fallback_enabled and not self.load_templates_from_models:
            raise ValueError("fallback_enabled 与 load_templates_from_models 至少开启一个")
        return self

    def active_flags(self) -> Dict[str, bool]:
        """响应元数据中展示的开关"""
        return {
            "quote_identifiers": self.quote_identifiers,
            "enable_semantic_mapping": self.enable_semantic_mapping,
            "load_templates_from_models": self.load_templates_from_models,
            "fallback_enabled": self.fallback_enabled,
            "enable_generic_pivot_fallback": self.enable_generic_pivot_fallback,
            "enable_cache": self.enable_cache,
        }


PROFILES: Dict[str, Dict] = {
    "dev_relaxed": {
        "semantic_confidence_threshold": 0.7,
        "template_match_threshold": 0.6,
        "fallback_max_rows": 100,
        "log_semantic_mappings": True,
        "policies": {"quality_floor": 30, "min_sample_size": 1},
    },
    "staging_strict": {
        "log_semantic_mappings": True,
    },
    "prod_strict": {},
}

DEFAULT_PROFILE = "prod_strict"


def load_profile(name: str) -> AnalyticsConfig:
    """按名称构建并校验配置，未知 profile 回退到 prod_strict"""
    from analytics_engine.utils.logger import log

    if name not in PROFILES:
        log.warning(f"未知配置 profile \"{name}\"，使用 {DEFAULT_PROFILE}")
        name = DEFAULT_PROFILE
    log.info(f"分析配置 profile: {name}")
    return AnalyticsConfig(**PROFILES[name])


@lru_cache(maxsize=1)
def get_analytics_config() -> AnalyticsConfig:
    """获取当前环境的分析配置（仅校验一次）"""
    return load_profile(settings.analytics_env)


# 全局配置实例
settings = Settings()
