"""
meetroom.client.mesh
~~~~~~~~~~~~~~~~~~~~

点对点网状连接管理器 —— 持有本端到房间内其他成员的全部媒体连接。

成网规则：只有在新成员加入广播到达时已在房间内的一方发起呼叫，
新加入者只负责应答，从而避免双方同时呼叫的竞争。

每条连接通过 ``MediaRelay`` 各自订阅本地轨道，多个发送端不会分抢同一采集源的帧。

网络侧事件（呼入、首个远端媒体、连接断开）统一投递到事件队列，
由 ``run()`` 单协程依次处理；用户侧的轨道替换 ``replace_outgoing_video``
中没有任何挂起点，执行期间连接表不会被其他协程修改。
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaRelay

from meetroom.client.connection import (
    Call,
    CallClosed,
    ConnectionState,
    IncomingCall,
    MediaConnection,
    MeshEvent,
    Negotiator,
    RemoteMedia,
)
from meetroom.core.logging import get_logger

logger = get_logger(__name__)

RemoteStreamHandler = Callable[[str, MediaStreamTrack], None]
PreviewHandler = Callable[[MediaStreamTrack | None], None]

# 发送端可能正阻塞在旧订阅的 recv 上，旧订阅要再给它一帧才能停
FEED_RELEASE_DELAY = 0.5


class PeerMeshManager:
    """网状连接管理器。

    Attributes:
        negotiator: 协商层；可在构造后再设置（协商层通常依赖本对象的 ``post``）。
        connections: peer ID → 媒体连接。
        audio: 本地音频轨道。
        outgoing_video: 当前对外发送的逻辑视频轨道（摄像头或屏幕）。
        preview_video: 本地预览正在显示的视频轨道。
        relay: 把本地轨道分发为每条连接独立订阅的中继。
        release_delay: 被替换下来的订阅 / 采集轨道延迟停止的时间（秒）。
    """

    def __init__(
        self,
        negotiator: Negotiator | None = None,
        on_remote_stream: RemoteStreamHandler | None = None,
        on_preview: PreviewHandler | None = None,
        release_delay: float = FEED_RELEASE_DELAY,
    ) -> None:
        self.negotiator = negotiator
        self.on_remote_stream = on_remote_stream
        self.on_preview = on_preview
        self.connections: dict[str, MediaConnection] = {}
        self.audio: MediaStreamTrack | None = None
        self.outgoing_video: MediaStreamTrack | None = None
        self.preview_video: MediaStreamTrack | None = None
        self.relay = MediaRelay()
        self.release_delay = release_delay
        self._events: asyncio.Queue[MeshEvent] = asyncio.Queue()
        self._left = False

    # ── 本地轨道 ──────────────────────────────────────────────────────

    def set_local_tracks(
        self, audio: MediaStreamTrack | None, video: MediaStreamTrack | None,
    ) -> None:
        """设置新连接使用的本地轨道（由 LocalMediaController 在采集成功后调用）。"""
        self.audio = audio
        self.outgoing_video = video
        self._update_preview(video)

    def outgoing_tracks(self) -> list[MediaStreamTrack]:
        return [t for t in (self.audio, self.outgoing_video) if t is not None]

    def replace_outgoing_video(self, track: MediaStreamTrack | None) -> int:
        """把对外发送的视频替换为 ``track``，作用于所有 connecting / active 连接。

        每条连接换上对 ``track`` 的新订阅，原地替换视频发送端，不重新协商、不断开连接；
        本地预览与所有发送端在同一次调用内更新。对没有视频发送端的连接为空操作。
        已在发送 ``track`` 的连接保持不变，所以重复替换为同一轨道与替换一次效果相同。

        仍在协商中的连接可能已用旧轨道完成 offer，它们会在进入 active 时补做一次替换。

        Returns:
            替换后正在发送 ``track`` 的连接数。
        """
        self.outgoing_video = track
        self._update_preview(track)

        sending = 0
        for conn in self.connections.values():
            if not conn.live or conn.call is None:
                continue
            if conn.sent_video is track or self._swap_video(conn, track):
                sending += 1
        logger.info("对外视频已替换 | 连接: %d/%d", sending, len(self.connections))
        return sending

    def release_later(self, track: MediaStreamTrack) -> None:
        """``release_delay`` 秒后停止 ``track``。"""
        asyncio.get_running_loop().call_later(self.release_delay, track.stop)

    # ── 连接建立 ──────────────────────────────────────────────────────

    async def connect_to_new_peer(self, peer_id: str) -> MediaConnection | None:
        """向新加入的成员发起呼叫（仅在收到对方的加入广播时调用）。

        Returns:
            建立中的连接；已离开房间、协商失败或协商期间连接被关闭时返回 ``None``。
        """
        if self._left or self.negotiator is None:
            return None
        existing = self.connections.get(peer_id)
        if existing is not None and existing.live:
            return existing

        conn = MediaConnection(peer_id, outgoing=True)
        self.connections[peer_id] = conn
        conn.begin(sent_video=self.outgoing_video)
        logger.info("发起呼叫 | peer=%s", peer_id)

        try:
            call = await self.negotiator.place_call(peer_id, self._subscribe(conn))
        except Exception as e:
            logger.error("呼叫失败 | peer=%s | %s", peer_id, e)
            await self._discard(conn)
            return None

        if conn.state is ConnectionState.CLOSED:
            # 协商期间已被关闭（对端离开或本端离开），丢弃迟到的结果
            logger.info("协商完成时连接已关闭，丢弃 | peer=%s", peer_id)
            await call.close()
            return None

        conn.call = call
        return conn

    async def on_incoming_call(self, call: Call) -> MediaConnection | None:
        """应答一个呼入呼叫。"""
        if self._left:
            await call.close()
            return None

        existing = self.connections.get(call.peer_id)
        if existing is not None and existing.live:
            logger.warning("收到重复呼叫，替换旧连接 | peer=%s", call.peer_id)
            await existing.close()

        conn = MediaConnection(call.peer_id, outgoing=False)
        self.connections[call.peer_id] = conn
        conn.begin(sent_video=self.outgoing_video)
        conn.call = call
        logger.info("应答呼叫 | peer=%s", call.peer_id)

        try:
            await call.answer(self._subscribe(conn))
        except Exception as e:
            logger.error("应答失败 | peer=%s | %s", call.peer_id, e)
            await self._discard(conn)
            return None
        return conn

    # ── 连接关闭 ──────────────────────────────────────────────────────

    async def close_connection(self, peer_id: str) -> None:
        """关闭并移除与某个 peer 的连接（对端离开广播或主动挂断）。"""
        conn = self.connections.pop(peer_id, None)
        if conn is None:
            return
        await conn.close()
        logger.info("连接已关闭 | peer=%s | 剩余: %d", peer_id, len(self.connections))

    async def leave(self) -> None:
        """关闭全部连接并清空连接表。幂等，可在协商进行中调用。"""
        self._left = True
        conns = list(self.connections.values())
        self.connections.clear()
        for conn in conns:
            await conn.close()
        if conns:
            logger.info("已离开网状连接 | 关闭 %d 条连接", len(conns))

    # ── 事件队列 ──────────────────────────────────────────────────────

    def post(self, event: MeshEvent) -> None:
        """投递网络侧事件（协商层回调中调用，不阻塞）。"""
        self._events.put_nowait(event)

    async def run(self) -> None:
        """依次处理事件队列，直到被取消。"""
        while True:
            event = await self._events.get()
            try:
                await self.dispatch(event)
            except Exception as e:
                logger.error("处理连接事件失败: %s | %r", e, event, exc_info=True)

    async def dispatch(self, event: MeshEvent) -> None:
        if isinstance(event, IncomingCall):
            await self.on_incoming_call(event.call)
        elif isinstance(event, RemoteMedia):
            self._on_remote_media(event)
        elif isinstance(event, CallClosed):
            conn = self.connections.get(event.peer_id)
            if conn is not None and conn.call is event.call:
                await self.close_connection(event.peer_id)

    def state_of(self, peer_id: str) -> ConnectionState | None:
        conn = self.connections.get(peer_id)
        return conn.state if conn else None

    # ── 内部工具 ──────────────────────────────────────────────────────

    def _subscribe(self, conn: MediaConnection) -> list[MediaStreamTrack]:
        """为连接订阅当前的本地音视频，返回交给协商层的轨道。"""
        if self.audio is not None:
            conn.audio_feed = self.relay.subscribe(self.audio)
        if self.outgoing_video is not None:
            conn.video_feed = self.relay.subscribe(self.outgoing_video)
        return [t for t in (conn.audio_feed, conn.video_feed) if t is not None]

    def _swap_video(self, conn: MediaConnection, track: MediaStreamTrack | None) -> bool:
        feed = self.relay.subscribe(track) if track is not None else None
        if not conn.call.replace_track("video", feed):
            if feed is not None:
                feed.stop()
            return False
        old, conn.video_feed = conn.video_feed, feed
        conn.sent_video = track
        if old is not None:
            self.release_later(old)
        return True

    def _on_remote_media(self, event: RemoteMedia) -> None:
        conn = self.connections.get(event.peer_id)
        if conn is None or not conn.live:
            logger.debug("连接不存在或已关闭，忽略远端媒体 | peer=%s", event.peer_id)
            return
        if conn.call is None:
            # 发起方的媒体可能早于 place_call 返回到达
            conn.call = event.call
        elif conn.call is not event.call:
            logger.debug("过期呼叫的远端媒体，忽略 | peer=%s", event.peer_id)
            return

        conn.remote_tracks.append(event.track)
        if conn.activate():
            logger.info("连接已激活 | peer=%s", event.peer_id)
            self._resync_video(conn)
        if self.on_remote_stream is not None:
            self.on_remote_stream(event.peer_id, event.track)

    def _resync_video(self, conn: MediaConnection) -> None:
        """协商期间发生过替换的连接在激活时补做一次替换。"""
        if conn.sent_video is self.outgoing_video:
            return
        logger.info("连接以旧视频轨道完成协商，补做替换 | peer=%s", conn.peer_id)
        self._swap_video(conn, self.outgoing_video)

    def _update_preview(self, track: MediaStreamTrack | None) -> None:
        self.preview_video = track
        if self.on_preview is not None:
            self.on_preview(track)

    async def _discard(self, conn: MediaConnection) -> None:
        if self.connections.get(conn.peer_id) is conn:
            del self.connections[conn.peer_id]
        await conn.close()
