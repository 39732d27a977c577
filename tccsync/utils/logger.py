"""
日志系统配置
"""

import sys
import atexit
import logging
import structlog
from typing import IO, Optional

# 当前打开的日志文件
_log_stream: Optional[IO[str]] = None


def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
    log_file: Optional[str] = None
):
    """
    配置结构化日志系统

    Args:
        level: 日志级别 (DEBUG, INFO, WARNING, ERROR)
        log_format: 日志格式 (text, json)
        log_file: 日志文件路径（可选，写入 JSON 行）
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if log_format == "json" or log_file:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    # 重新配置时关闭上一次打开的日志文件
    close_log_file()

    # 文件日志直接写入文件，否则输出到 stderr，保持 stdout 给命令输出
    if log_file:
        logger_factory = structlog.WriteLoggerFactory(file=_open_log_file(log_file))
    else:
        logger_factory = structlog.PrintLoggerFactory(file=sys.stderr)

    structlog.configure(
        processors=processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=logger_factory,
        cache_logger_on_first_use=False,
    )

    logger = structlog.get_logger()
    logger.debug("Logging configured", level=level, format=log_format, file=log_file)

    return logger


def _open_log_file(path: str) -> IO[str]:
    global _log_stream
    _log_stream = open(path, 'a', encoding='utf-8')
    return _log_stream


def close_log_file():
    """关闭日志文件（进程退出时自动调用）"""
    global _log_stream
    if _log_stream is not None:
        _log_stream.close()
        _log_stream = None


atexit.register(close_log_file)
