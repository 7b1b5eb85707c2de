"""
meetroom.client.signaling
~~~~~~~~~~~~~~~~~~~~~~~~~

客户端信令通道 —— 基于 ``websockets`` 的双向消息总线。

一个通道在生命周期内只属于一个房间：连接后发送一次 ``join-room``，
之后的聊天与协商消息都隐式限定在该房间。
连接失败对参会是致命的，直接抛出 ``SignalingError``，不自动重试。
"""
from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from pydantic import BaseModel, ValidationError
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, InvalidHandshake, InvalidURI

from meetroom.core.errors import SignalingError
from meetroom.core.logging import get_logger
from meetroom.schemas.signaling import (
    JoinRoom,
    SendChat,
    SendSignal,
    ServerMessage,
    server_message_adapter,
)

logger = get_logger(__name__)


class SignalingChannel:
    """客户端信令通道。

    Attributes:
        url: 信令 WebSocket 地址，例如 ``ws://localhost:8080/ws/signaling``。
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self._ws: ClientConnection | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        """建立连接。

        Raises:
            SignalingError: 地址无效、握手失败或网络不可达。
        """
        try:
            self._ws = await connect(self.url)
        except (InvalidURI, InvalidHandshake, OSError, TimeoutError) as e:
            raise SignalingError(f"cannot open signaling channel {self.url}: {e}") from e
        logger.info("信令通道已连接 | url=%s", self.url)

    async def join(self, room_id: str, peer_id: str, identity_token: str | None = None) -> None:
        await self._send(JoinRoom(room_id=room_id, peer_id=peer_id, identity_token=identity_token))

    async def send_chat(self, text: str) -> None:
        await self._send(SendChat(text=text))

    async def send_signal(self, target: str, payload: dict[str, Any]) -> None:
        await self._send(SendSignal(target=target, payload=payload))

    async def messages(self) -> AsyncIterator[ServerMessage]:
        """逐条产出服务端消息，连接关闭（含异常断开）时结束。无法解析的帧记录后跳过。"""
        if self._ws is None:
            raise SignalingError("signaling channel is not connected")
        try:
            async for raw in self._ws:
                try:
                    yield server_message_adapter.validate_json(raw)
                except ValidationError as e:
                    logger.warning("无法解析的信令帧，已跳过: %s", e.errors()[0]["msg"])
        except ConnectionClosedError as e:
            logger.warning("信令通道异常断开: %s", e)

    async def close(self) -> None:
        if self._ws is None:
            return
        ws, self._ws = self._ws, None
        await ws.close()
        logger.info("信令通道已关闭")

    async def _send(self, message: BaseModel) -> None:
        if self._ws is None:
            raise SignalingError("signaling channel is not connected")
        try:
            await self._ws.send(message.model_dump_json())
        except ConnectionClosed as e:
            raise SignalingError(f"signaling channel closed: {e}") from e
