"""
meetroom.client.connection
~~~~~~~~~~~~~~~~~~~~~~~~~~

单条点对点媒体连接的状态机，以及协商层（外部协作方）的接口约定。

状态迁移::

    idle ──(发起呼叫 / 收到 offer)──▶ connecting ──(收到首个远端媒体)──▶ active
      connecting / active ──(主动关闭 / 对端离开)──▶ closed

进入 ``closed`` 后的任何事件都会被忽略，以屏蔽仍在途中的协商回调。
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, Union

from aiortc import MediaStreamTrack

from meetroom.core.logging import get_logger

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"


# ── 协商层接口 ────────────────────────────────────────────────────────


class Call(Protocol):
    """协商层返回的连接句柄。"""

    peer_id: str

    async def answer(self, tracks: Sequence[MediaStreamTrack]) -> None:
        """以本地轨道应答一个呼入呼叫。"""

    def replace_track(self, kind: str, track: MediaStreamTrack | None) -> bool:
        """原地替换指定类型的发送轨道，不重新协商。没有该类型的发送端时返回 ``False``。"""

    async def close(self) -> None:
        """关闭连接并释放传输资源。"""


class Negotiator(Protocol):
    """协商层：向某个 peer 发起呼叫。"""

    async def place_call(self, peer_id: str, tracks: Sequence[MediaStreamTrack]) -> Call:
        ...


# ── 网络侧事件（投递到 PeerMeshManager 的事件队列）────────────────────


@dataclass(frozen=True)
class IncomingCall:
    call: Call


@dataclass(frozen=True)
class RemoteMedia:
    peer_id: str
    call: Call
    track: MediaStreamTrack


@dataclass(frozen=True)
class CallClosed:
    peer_id: str
    call: Call


MeshEvent = Union[IncomingCall, RemoteMedia, CallClosed]


# ── 连接状态机 ────────────────────────────────────────────────────────


class InvalidTransition(RuntimeError):
    pass


class MediaConnection:
    """与一个远端 peer 的媒体连接。

    Attributes:
        peer_id: 远端 peer ID。
        outgoing: 是否由本端发起。
        state: 当前状态。
        call: 协商层句柄；发起方在协商完成前为 ``None``。
        sent_video: 该连接当前发送的逻辑视频轨道（摄像头或屏幕）。
        audio_feed: 本连接独占的本地音频订阅。
        video_feed: 本连接独占的本地视频订阅，发送端实际拉帧的轨道。
        remote_tracks: 已收到的远端轨道。
    """

    def __init__(self, peer_id: str, outgoing: bool) -> None:
        self.peer_id = peer_id
        self.outgoing = outgoing
        self.state = ConnectionState.IDLE
        self.call: Call | None = None
        self.sent_video: MediaStreamTrack | None = None
        self.audio_feed: MediaStreamTrack | None = None
        self.video_feed: MediaStreamTrack | None = None
        self.remote_tracks: list[MediaStreamTrack] = []

    @property
    def live(self) -> bool:
        return self.state in (ConnectionState.CONNECTING, ConnectionState.ACTIVE)

    def begin(self, sent_video: MediaStreamTrack | None) -> None:
        """idle → connecting。"""
        if self.state is not ConnectionState.IDLE:
            raise InvalidTransition(f"{self.peer_id}: cannot begin from {self.state.value}")
        self.state = ConnectionState.CONNECTING
        self.sent_video = sent_video

    def activate(self) -> bool:
        """connecting → active。已 active 或已关闭时返回 ``False``。"""
        if self.state is not ConnectionState.CONNECTING:
            return False
        self.state = ConnectionState.ACTIVE
        return True

    async def close(self) -> None:
        """任意状态 → closed，幂等。先改状态再关闭句柄，最后停止本连接的订阅。"""
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        if self.call is not None:
            try:
                await self.call.close()
            except Exception as e:
                logger.warning("关闭连接失败 | peer=%s | %s", self.peer_id, e)
        for feed in (self.audio_feed, self.video_feed):
            if feed is not None:
                feed.stop()

    def __repr__(self) -> str:
        return f"<MediaConnection peer={self.peer_id} state={self.state.value} outgoing={self.outgoing}>"
