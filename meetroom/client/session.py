"""
meetroom.client.session
~~~~~~~~~~~~~~~~~~~~~~~

客户端会话 —— 显式持有信令通道、网状连接管理器与本地媒体控制器，
并把服务端消息分派给它们。每个客户端一个会话、一个房间。
"""
from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Coroutine
from contextlib import suppress
from typing import Any

from meetroom.client.connection import Negotiator
from meetroom.client.media import LocalMediaController, MediaDevices
from meetroom.client.mesh import PeerMeshManager
from meetroom.client.rtc import AiortcNegotiator
from meetroom.client.signaling import SignalingChannel
from meetroom.core.errors import MediaDeviceError
from meetroom.core.logging import get_logger
from meetroom.core.settings import settings
from meetroom.schemas.signaling import (
    ChatBroadcast,
    ErrorMessage,
    Joined,
    ServerMessage,
    SignalRelay,
    UserConnected,
    UserDisconnected,
)

logger = get_logger(__name__)

ChatHandler = Callable[[str, str], None]


class ClientSession:
    """一个客户端在一个房间内的完整会话。

    Attributes:
        peer_id: 本端媒体层 peer ID（每个会话随机生成）。
        channel: 信令通道。
        mesh: 网状连接管理器。
        media: 本地媒体控制器。
        negotiator: 协商层，默认使用 aiortc 实现。
        room_id: 加入确认后的房间 ID。
        name: 服务端解析出的本端显示名。
    """

    def __init__(
        self,
        channel: SignalingChannel,
        devices: MediaDevices,
        negotiator: Negotiator | None = None,
        on_chat: ChatHandler | None = None,
    ) -> None:
        self.peer_id: str = uuid.uuid4().hex
        self.channel = channel
        self.mesh = PeerMeshManager()
        self.media = LocalMediaController(devices, self.mesh)
        self.negotiator = negotiator or AiortcNegotiator(
            channel=channel,
            post=self.mesh.post,
            ice_servers=settings.ICE_SERVERS,
            timeout=settings.NEGOTIATION_TIMEOUT,
        )
        self.mesh.negotiator = self.negotiator
        self.on_chat = on_chat
        self.room_id: str | None = None
        self.name: str | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._left = False

    async def run(self, room_id: str, identity_token: str | None = None) -> None:
        """连接 → 采集 → 加入 → 处理消息，直到信令通道关闭。

        Raises:
            SignalingError: 无法建立信令通道。
            MediaDeviceError: 本地采集失败，放弃加入房间。
        """
        await self.channel.connect()
        try:
            await self.media.start()
        except MediaDeviceError as e:
            logger.error("本地采集失败，放弃加入房间: %s", e)
            await self.channel.close()
            raise

        await self.channel.join(room_id, self.peer_id, identity_token)
        mesh_task = asyncio.create_task(self.mesh.run())
        try:
            async for message in self.channel.messages():
                await self.handle_message(message)
        finally:
            mesh_task.cancel()
            with suppress(asyncio.CancelledError):
                await mesh_task
            # 信令断开即视为离开
            await self.leave()

    async def handle_message(self, message: ServerMessage) -> None:
        if isinstance(message, Joined):
            self.room_id = message.room_id
            self.name = message.name
            logger.info(
                "已加入房间 | room=%s | name=%s | 已有成员: %d",
                message.room_id, message.name, len(message.members),
            )
        elif isinstance(message, UserConnected):
            # 已在房间内的一方负责发起呼叫；协商需等待信令回包，不能阻塞消息循环
            logger.info("%s connected | peer=%s", message.name, message.participant_id)
            self._spawn(self.mesh.connect_to_new_peer(message.participant_id))
        elif isinstance(message, UserDisconnected):
            await self.mesh.close_connection(message.participant_id)
        elif isinstance(message, ChatBroadcast):
            if self.on_chat is not None:
                self.on_chat(message.name, message.text)
            else:
                logger.info("💬 %s: %s", message.name, message.text)
        elif isinstance(message, SignalRelay):
            await self.negotiator.handle_signal(message.source, message.payload)
        elif isinstance(message, ErrorMessage):
            logger.warning("服务端错误 | code=%s | %s", message.code, message.detail)

    async def send_chat(self, text: str) -> None:
        await self.channel.send_chat(text)

    async def leave(self) -> None:
        """离开房间：关闭全部连接、释放采集、关闭信令。幂等。"""
        if self._left:
            return
        self._left = True
        for task in list(self._tasks):
            task.cancel()
        await self.mesh.leave()
        self.media.release()
        await self.channel.close()
        logger.info("已离开房间 | room=%s", self.room_id)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
