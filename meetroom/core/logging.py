"""
meetroom.core.logging
~~~~~~~~~~~~~~~~~~~~~

日志初始化。各模块用 ``get_logger(__name__)`` 取 logger。

每条记录都带 ``request_id``：HTTP 请求取自 ``X-Request-ID`` 或随机生成，
信令连接为 ``ws-xxxxxxxx``，连接之外为 ``-``。
"""
from __future__ import annotations

import logging
import sys
from contextvars import ContextVar

from meetroom.core.settings import settings

request_id_ctx_var: ContextVar[str] = ContextVar("request_id", default="-")

_FORMAT = "%(asctime)s | %(levelname)-7s | %(request_id)s | %(name)s | %(message)s"

# ICE / DTLS 与驱动在 INFO 级别非常啰嗦
_QUIET_LOGGERS = ("aioice", "aiortc", "websockets", "pymongo")


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx_var.get()
        return True


def setup_logging(level: str | None = None) -> None:
    """配置根 logger，重复调用会替换已有 handler。"""
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%H:%M:%S"))

    logging.basicConfig(
        level=(level or settings.effective_log_level).upper(),
        handlers=[handler],
        force=True,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
