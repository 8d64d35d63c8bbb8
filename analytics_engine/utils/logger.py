"""日志配置"""

import sys

from loguru import logger as log

from analytics_engine.core.config import settings

log.remove()
log.add(
    sys.stderr,
    level=settings.log_level,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
           "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
log.add(
    settings.log_file,
    level=settings.log_level,
    rotation="10 MB",
    retention="7 days",
    encoding="utf-8",
    enqueue=True
)

__all__ = ["log"]
