"""启动脚本"""

import uvicorn
from analytics_engine.core.config import get_analytics_config, settings
from analytics_engine.utils.logger import log


if __name__ == "__main__":
    config = get_analytics_config()
    log.info("="*60)
    log.info("Analytics Engine - 启动中")
    log.info("="*60)
    log.info(f"服务地址: http://{settings.api_host}:{settings.api_port}")
    log.info(f"API 文档: http://{settings.api_host}:{settings.api_port}/docs")
    log.info(f"调试模式: {settings.debug}")
    log.info(f"配置 profile: {settings.analytics_env}")
    log.info(f"DuckDB: {settings.duckdb_path}")
    log.info(f"开关: {config.active_flags()}")
    log.info("="*60)

    uvicorn.run(
        "analytics_engine.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level="info"
    )
