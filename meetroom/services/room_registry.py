"""
meetroom.services.room_registry
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间注册表 —— 每个房间当前活跃成员的唯一事实来源。

同一房间内成员以 ``peer_id`` 唯一；重复加入会合并而非重复插入。
成员变更必须在 ``lock(room_id)`` 持有期间进行，
由 ``EventRelay`` 负责加锁并在锁内完成广播入队，以保证房间内事件的因果顺序。
"""
from __future__ import annotations

import asyncio
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone

from meetroom.core.logging import get_logger
from meetroom.schemas.rooms import ParticipantData, RoomInfoData

logger = get_logger(__name__)


@dataclass
class Participant:
    """房间内的一个客户端实例。

    Attributes:
        session_id: 信令连接 ID（与连接一一对应）。
        peer_id: 媒体层 peer ID，用于寻址点对点连接。
        name: 解析后的显示名。
        joined_at: 加入时间（UTC）。
    """

    session_id: str
    peer_id: str
    name: str
    joined_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def info(self) -> ParticipantData:
        return ParticipantData(participant_id=self.peer_id, name=self.name, joined_at=self.joined_at)


class Room:
    """一个会议房间：ID + 按 peer_id 索引的成员表。"""

    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        self.participants: dict[str, Participant] = {}

    def info(self) -> RoomInfoData:
        """返回房间摘要信息。"""
        return RoomInfoData(
            room_id=self.room_id,
            participant_count=len(self.participants),
            participants=[p.info() for p in self.participants.values()],
        )


class RoomRegistry:
    """全部房间的成员注册表。

    - ``join(room_id, participant)``  → 幂等插入（同 peer_id 合并）
    - ``leave(room_id, session_id)``  → 移除，不存在时为空操作
    - ``lock(room_id)``               → 该房间的互斥锁
    """

    def __init__(self) -> None:
        self._rooms: dict[str, Room] = {}
        # 无人持有时锁自动回收，空房间不会残留锁对象
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def lock(self, room_id: str) -> asyncio.Lock:
        """获取房间互斥锁，成员变更与对应广播须在锁内完成。"""
        lock = self._locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[room_id] = lock
        return lock

    def join(self, room_id: str, participant: Participant) -> tuple[Participant, bool]:
        """把参与者加入房间。

        Args:
            room_id: 房间 ID，不存在则自动创建。
            participant: 待加入的参与者。

        Returns:
            ``(参与者, 是否新建)``。同一 ``peer_id`` 已存在时合并到已有记录
            （更新会话 ID 与显示名，保留加入时间），并返回 ``False``。
        """
        room = self._rooms.get(room_id)
        if room is None:
            room = self._rooms[room_id] = Room(room_id)
            logger.info("房间已创建 | room=%s", room_id)

        existing = room.participants.get(participant.peer_id)
        if existing is not None:
            if existing.session_id != participant.session_id:
                logger.info(
                    "peer 被新连接接管 | room=%s | peer=%s", room_id, participant.peer_id,
                )
            existing.session_id = participant.session_id
            existing.name = participant.name
            return existing, False

        room.participants[participant.peer_id] = participant
        logger.info(
            "成员加入 | room=%s | peer=%s | name=%s | 在线: %d",
            room_id, participant.peer_id, participant.name, len(room.participants),
        )
        return participant, True

    def leave(self, room_id: str, session_id: str) -> Participant | None:
        """移除某个会话对应的参与者。

        Returns:
            被移除的参与者；会话不在房间内时返回 ``None``。
        """
        room = self._rooms.get(room_id)
        if room is None:
            return None

        for peer_id, participant in room.participants.items():
            if participant.session_id == session_id:
                del room.participants[peer_id]
                break
        else:
            return None

        logger.info(
            "成员离开 | room=%s | peer=%s | 在线: %d",
            room_id, participant.peer_id, len(room.participants),
        )
        if not room.participants:
            del self._rooms[room_id]
            logger.info("房间已清空并移除 | room=%s", room_id)
        return participant

    def members(self, room_id: str) -> list[Participant]:
        """房间当前成员（按加入顺序）。"""
        room = self._rooms.get(room_id)
        return list(room.participants.values()) if room else []

    def find_peer(self, room_id: str, peer_id: str) -> Participant | None:
        room = self._rooms.get(room_id)
        return room.participants.get(peer_id) if room else None

    def get_room(self, room_id: str) -> Room | None:
        return self._rooms.get(room_id)

    def list_rooms(self) -> list[RoomInfoData]:
        """列出所有活跃房间的摘要信息。"""
        return [room.info() for room in self._rooms.values()]
