"""
meetroom.services.signaling_session
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

服务端信令会话 —— 一条 WebSocket 连接对应一个会话。

发往客户端的消息先进入有界发件箱，再由唯一的写协程按入队顺序发送，
因此同一房间内的事件以服务端处理顺序到达每个成员。
发件箱已满时直接丢弃（尽力而为，至多一次投递）。
"""
from __future__ import annotations

import asyncio
import uuid

from fastapi import WebSocket
from pydantic import BaseModel

from meetroom.core.logging import get_logger

logger = get_logger(__name__)


class SignalingSession:
    """单个客户端的信令会话状态。

    Attributes:
        session_id: 会话唯一标识。
        websocket: 底层 WebSocket 连接。
        room_id: 已加入的房间；加入前为 ``None``。加入后不可切换房间。
        peer_id: 客户端声明的媒体层 peer ID。
        name: 解析后的显示名。
    """

    def __init__(self, websocket: WebSocket, outbox_size: int = 256) -> None:
        self.session_id: str = uuid.uuid4().hex
        self.websocket = websocket
        self.room_id: str | None = None
        self.peer_id: str | None = None
        self.name: str | None = None
        self._outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=outbox_size)

    @property
    def joined(self) -> bool:
        return self.room_id is not None

    def send(self, message: BaseModel) -> bool:
        """把消息放入发件箱（不阻塞）。

        Returns:
            是否成功入队；发件箱满时丢弃并返回 ``False``。
        """
        try:
            self._outbox.put_nowait(message.model_dump_json())
        except asyncio.QueueFull:
            logger.warning(
                "发件箱已满，丢弃消息 | session=%s | room=%s", self.session_id, self.room_id,
            )
            return False
        return True

    async def writer_loop(self) -> None:
        """按顺序把发件箱中的消息写入 WebSocket，写失败即退出。"""
        while True:
            frame = await self._outbox.get()
            try:
                await self.websocket.send_text(frame)
            except Exception as e:
                logger.warning("信令发送失败，停止写入 | session=%s | %s", self.session_id, e)
                return
