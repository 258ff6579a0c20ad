import logging
from logging import Logger

from .config import LOG_LEVEL


# 配置全局日志格式，返回包的 logger
def configure_logging(level: str = LOG_LEVEL) -> Logger:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    return logging.getLogger("onlineclass")
