"""
meetroom.core.rate_limit
~~~~~~~~~~~~~~~~~~~~~~~~

限流：REST 接口用 slowapi 按客户端 IP 计数，信令聊天按连接限制最小发送间隔。
"""
from __future__ import annotations

import time

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


class ChatRateLimiter:
    """每个信令会话两条聊天之间至少间隔 ``interval_seconds``。

    ``interval_seconds`` 为 0 时不限流。
    """

    def __init__(self, interval_seconds: float) -> None:
        self.interval_seconds = interval_seconds
        self._last_sent: dict[str, float] = {}

    def allow(self, session_id: str) -> bool:
        """放行时记录本次发送时间。"""
        now = time.monotonic()
        last = self._last_sent.get(session_id)
        if last is not None and now - last < self.interval_seconds:
            return False
        self._last_sent[session_id] = now
        return True

    def forget(self, session_id: str) -> None:
        self._last_sent.pop(session_id, None)
