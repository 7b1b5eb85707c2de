"""
meetroom.schemas.signaling
~~~~~~~~~~~~~~~~~~~~~~~~~~

信令协议消息模型。所有帧均为带 ``type`` 判别字段的 JSON 文本。

客户端 → 服务端:
  - ``join-room``     —— 加入房间（每个连接仅一次）
  - ``chat-message``  —— 房间内聊天
  - ``signal``        —— 转发给同房间某个 peer 的协商负载

服务端 → 客户端:
  - ``joined``              —— 加入确认，附带已有成员
  - ``user-connected``      —— 新成员加入
  - ``user-disconnected``   —— 成员离开
  - ``chat-message``        —— 聊天广播
  - ``signal``              —— 来自其他 peer 的协商负载
  - ``error``               —— 协议错误
"""
from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from meetroom.core.settings import settings

# ── 客户端 → 服务端 ──────────────────────────────────────────────────


class JoinRoom(BaseModel):
    type: Literal["join-room"] = "join-room"
    room_id: str = Field(..., min_length=1, max_length=128, description="房间 ID")
    peer_id: str = Field(..., min_length=1, max_length=128, description="本端媒体层 peer ID")
    identity_token: str | None = Field(default=None, description="可选的身份令牌")


class SendChat(BaseModel):
    type: Literal["chat-message"] = "chat-message"
    text: str = Field(..., min_length=1, max_length=settings.CHAT_MAX_LENGTH)


class SendSignal(BaseModel):
    type: Literal["signal"] = "signal"
    target: str = Field(..., min_length=1, description="目标 peer ID")
    payload: dict[str, Any] = Field(..., description="不透明的协商负载")


ClientMessage = Annotated[
    Union[JoinRoom, SendChat, SendSignal],
    Field(discriminator="type"),
]
client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


# ── 服务端 → 客户端 ──────────────────────────────────────────────────


class Joined(BaseModel):
    type: Literal["joined"] = "joined"
    room_id: str
    participant_id: str
    name: str
    members: list[str] = Field(default_factory=list, description="加入时已在房间内的 peer ID")


class UserConnected(BaseModel):
    type: Literal["user-connected"] = "user-connected"
    participant_id: str
    name: str


class UserDisconnected(BaseModel):
    type: Literal["user-disconnected"] = "user-disconnected"
    participant_id: str


class ChatBroadcast(BaseModel):
    type: Literal["chat-message"] = "chat-message"
    name: str
    text: str


class SignalRelay(BaseModel):
    type: Literal["signal"] = "signal"
    source: str
    payload: dict[str, Any]


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    code: str
    detail: str


ServerMessage = Annotated[
    Union[Joined, UserConnected, UserDisconnected, ChatBroadcast, SignalRelay, ErrorMessage],
    Field(discriminator="type"),
]
server_message_adapter: TypeAdapter[ServerMessage] = TypeAdapter(ServerMessage)
