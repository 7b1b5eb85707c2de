"""
meetroom.services.event_relay
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

事件中继 —— 把加入 / 离开 / 聊天 / 协商消息投递到正确的房间范围。

投递保证刻意保持很弱:
  - 同一房间内因果有序（成员看到的加入/离开顺序即服务端处理顺序）；
  - 不跨房间排序，不持久化，重启后不恢复；
  - 聊天尽力而为，每个在线接收者至多一次，无确认、无重试。
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from meetroom.core.errors import ProtocolError
from meetroom.core.logging import get_logger
from meetroom.schemas.signaling import (
    ChatBroadcast,
    JoinRoom,
    Joined,
    SignalRelay,
    UserConnected,
    UserDisconnected,
)
from meetroom.services.directory import DirectoryService
from meetroom.services.room_registry import Participant, RoomRegistry
from meetroom.services.signaling_session import SignalingSession

logger = get_logger(__name__)


class EventRelay:
    """房间事件中继（全局单例，在 lifespan 中创建并挂载于 ``app.state``）。

    Attributes:
        registry: 房间成员注册表。
        directory: 显示名解析服务。
    """

    def __init__(self, registry: RoomRegistry, directory: DirectoryService) -> None:
        self.registry = registry
        self.directory = directory
        self._sessions: dict[str, SignalingSession] = {}

    # ── 会话登记 ──────────────────────────────────────────────────────

    def register(self, session: SignalingSession) -> None:
        self._sessions[session.session_id] = session

    def unregister(self, session: SignalingSession) -> None:
        self._sessions.pop(session.session_id, None)

    # ── 事件处理 ──────────────────────────────────────────────────────

    async def on_join(self, session: SignalingSession, message: JoinRoom) -> Joined:
        """处理加入请求：解析显示名 → 写入注册表 → 通知房间内其他成员。

        每个会话只能属于一个房间。对同一房间、同一 peer 的重复加入
        仅重新确认，不会再次广播。

        peer 已被同名的新连接接管的会话可以重新加入，取回该 peer。

        Raises:
            ProtocolError: 会话已加入其他房间或以其他 peer 身份加入。
        """
        if session.joined and not self._is_member(session):
            logger.info(
                "会话的 peer 已被新连接接管，按新加入处理 | room=%s | peer=%s",
                session.room_id, session.peer_id,
            )
            session.room_id = None
        if session.joined:
            if session.room_id == message.room_id and session.peer_id == message.peer_id:
                return self._ack(session)
            raise ProtocolError(
                "already-joined",
                f"session already joined room {session.room_id!r} as {session.peer_id!r}",
            )

        # 名称解析在锁外进行，有超时上限，失败回退默认名
        name = await self.directory.resolve_name(message.identity_token)

        async with self.registry.lock(message.room_id):
            participant, created = self.registry.join(
                message.room_id,
                Participant(session_id=session.session_id, peer_id=message.peer_id, name=name),
            )
            session.room_id = message.room_id
            session.peer_id = participant.peer_id
            session.name = participant.name

            joined = self._ack(session)
            if created:
                self._broadcast(
                    message.room_id,
                    UserConnected(participant_id=participant.peer_id, name=participant.name),
                    exclude=session.session_id,
                )
        return joined

    async def on_leave(self, session: SignalingSession) -> Participant | None:
        """处理离开（主动或连接异常断开）。重复调用为空操作。"""
        if not session.joined:
            return None
        room_id = session.room_id
        async with self.registry.lock(room_id):
            removed = self.registry.leave(room_id, session.session_id)
            if removed is not None:
                self._broadcast(
                    room_id,
                    UserDisconnected(participant_id=removed.peer_id),
                    exclude=session.session_id,
                )
        return removed

    def on_chat(self, session: SignalingSession, text: str) -> int:
        """把聊天消息转发给同房间其他成员。

        Returns:
            成功入队的接收者数量。

        Raises:
            ProtocolError: 会话尚未加入房间，或其 peer 已被新连接接管。
        """
        self._require_member(session, "sending chat")
        return self._broadcast(
            session.room_id,
            ChatBroadcast(name=session.name, text=text),
            exclude=session.session_id,
        )

    def on_signal(self, session: SignalingSession, target: str, payload: dict[str, Any]) -> bool:
        """把协商负载转发给同房间内指定 peer。

        Returns:
            是否成功投递；目标不在房间内时丢弃并返回 ``False``。

        Raises:
            ProtocolError: 会话尚未加入房间，或其 peer 已被新连接接管。
        """
        self._require_member(session, "signaling")
        participant = self.registry.find_peer(session.room_id, target)
        recipient = self._sessions.get(participant.session_id) if participant else None
        if recipient is None:
            logger.debug("协商目标不在房间内，丢弃 | room=%s | target=%s", session.room_id, target)
            return False
        return recipient.send(SignalRelay(source=session.peer_id, payload=payload))

    # ── 内部工具 ──────────────────────────────────────────────────────

    def _is_member(self, session: SignalingSession) -> bool:
        participant = self.registry.find_peer(session.room_id, session.peer_id)
        return participant is not None and participant.session_id == session.session_id

    def _require_member(self, session: SignalingSession, action: str) -> None:
        if not (session.joined and self._is_member(session)):
            raise ProtocolError("not-joined", f"join a room before {action}")

    def _ack(self, session: SignalingSession) -> Joined:
        members = [
            p.peer_id for p in self.registry.members(session.room_id)
            if p.session_id != session.session_id
        ]
        joined = Joined(
            room_id=session.room_id,
            participant_id=session.peer_id,
            name=session.name,
            members=members,
        )
        session.send(joined)
        return joined

    def _broadcast(self, room_id: str, message: BaseModel, exclude: str | None = None) -> int:
        """向房间内除 ``exclude`` 外的所有成员投递消息，返回入队数量。"""
        delivered = 0
        for participant in self.registry.members(room_id):
            if participant.session_id == exclude:
                continue
            recipient = self._sessions.get(participant.session_id)
            if recipient is not None and recipient.send(message):
                delivered += 1
        logger.debug(
            "广播 %s | room=%s | 送达: %d",
            getattr(message, "type", type(message).__name__), room_id, delivered,
        )
        return delivered
