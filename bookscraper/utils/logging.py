"""统一日志配置模块。

提供 setup_logging() 以在应用启动时一次性配置全局日志。
可通过环境变量 LOG_LEVEL 设置日志级别（默认 INFO）。
标准库 logging 的记录（SQLAlchemy、aiohttp、apscheduler 等）会被转发到 loguru。
"""

from __future__ import annotations

import logging
import os
import sys

from loguru import logger

_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "TRACE"}


def _resolve_level(level: int | str | None) -> str | int:
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = level.upper()
        return level if level in _LEVELS else "INFO"
    return level


class InterceptHandler(logging.Handler):
    """把标准库 logging 记录转交给 loguru。"""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: int | str | None = None) -> None:
    """配置全局日志输出。

    Args:
        level: 日志级别，int 或名称。若未提供，则读取环境变量 LOG_LEVEL，默认 INFO。
    """
    resolved_level = _resolve_level(level)

    logger.remove()
    logger.add(
        sys.stderr,
        level=resolved_level,
        format=(
            "<green>{time:MM-DD HH:mm:ss}</green> [<level>{level}</level>] "
            "<cyan>{extra[name]}</cyan>:{line} | {message}"
        ),
    )
    logger.configure(extra={"name": "app"})

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for noisy in ("sqlalchemy.engine", "aiohttp.access", "apscheduler.executors.default"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
