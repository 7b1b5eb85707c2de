"""
meetroom.client.rtc
~~~~~~~~~~~~~~~~~~~

基于 ``aiortc`` 的协商层实现。

SDP offer / answer 通过信令通道的 ``signal`` 消息在同房间 peer 之间转发；
aiortc 在 ``setLocalDescription`` 时完成 ICE 收集，因此无需逐条转发候选。
"""
from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Sequence
from typing import Any, Literal

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from pydantic import BaseModel, ValidationError

from meetroom.client.connection import CallClosed, IncomingCall, MeshEvent, RemoteMedia
from meetroom.client.signaling import SignalingChannel
from meetroom.core.errors import NegotiationError
from meetroom.core.logging import get_logger

logger = get_logger(__name__)


class DescriptionPayload(BaseModel):
    """``signal`` 消息中携带的会话描述。"""

    kind: Literal["offer", "answer"]
    call_id: str
    sdp: str
    type: Literal["offer", "answer"]


class AiortcCall:
    """一条 ``RTCPeerConnection`` 的呼叫句柄。"""

    def __init__(
        self,
        peer_id: str,
        call_id: str,
        pc: RTCPeerConnection,
        negotiator: AiortcNegotiator,
        offer: RTCSessionDescription | None = None,
    ) -> None:
        self.peer_id = peer_id
        self.call_id = call_id
        self.pc = pc
        self._negotiator = negotiator
        self._offer = offer

    async def answer(self, tracks: Sequence[MediaStreamTrack]) -> None:
        if self._offer is None:
            raise NegotiationError("outgoing call cannot be answered")
        await self.pc.setRemoteDescription(self._offer)
        for track in tracks:
            self.pc.addTrack(track)
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        await self._negotiator.send_description(self.peer_id, self.call_id, self.pc.localDescription)

    def replace_track(self, kind: str, track: MediaStreamTrack | None) -> bool:
        for sender in self.pc.getSenders():
            if sender.track is not None and sender.track.kind == kind:
                sender.replaceTrack(track)
                return True
        return False

    async def close(self) -> None:
        await self.pc.close()


class AiortcNegotiator:
    """aiortc 协商层。

    Attributes:
        channel: 用于转发 SDP 的信令通道。
        post: 网络侧事件的投递函数（通常是 ``PeerMeshManager.post``）。
        ice_servers: ICE 服务器 URL 列表。
        timeout: 等待对端 answer 的超时（秒）。
    """

    def __init__(
        self,
        channel: SignalingChannel,
        post: Callable[[MeshEvent], None],
        ice_servers: list[str],
        timeout: float,
    ) -> None:
        self.channel = channel
        self.post = post
        self.ice_servers = ice_servers
        self.timeout = timeout
        self._pending: dict[str, asyncio.Future[RTCSessionDescription]] = {}

    async def place_call(self, peer_id: str, tracks: Sequence[MediaStreamTrack]) -> AiortcCall:
        """向 ``peer_id`` 发送 offer 并等待 answer。

        Raises:
            NegotiationError: 超时未收到 answer。
        """
        call = self._new_call(peer_id, uuid.uuid4().hex)
        pc = call.pc
        answer_future: asyncio.Future[RTCSessionDescription] = asyncio.get_running_loop().create_future()
        self._pending[call.call_id] = answer_future
        try:
            for track in tracks:
                pc.addTrack(track)
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            await self.send_description(peer_id, call.call_id, pc.localDescription)
            answer = await asyncio.wait_for(answer_future, timeout=self.timeout)
            await pc.setRemoteDescription(answer)
        except asyncio.TimeoutError as e:
            await pc.close()
            raise NegotiationError(f"no answer from {peer_id} within {self.timeout}s") from e
        except BaseException:
            await pc.close()
            raise
        finally:
            self._pending.pop(call.call_id, None)
        return call

    async def handle_signal(self, source: str, payload: dict[str, Any]) -> None:
        """处理来自 ``source`` 的协商消息：offer 生成呼入事件，answer 唤醒等待中的呼叫。"""
        try:
            desc = DescriptionPayload.model_validate(payload)
        except ValidationError:
            logger.warning("无法识别的协商消息 | source=%s", source)
            return

        if desc.kind == "offer":
            call = self._new_call(
                source, desc.call_id, offer=RTCSessionDescription(sdp=desc.sdp, type=desc.type),
            )
            self.post(IncomingCall(call))
            return

        future = self._pending.get(desc.call_id)
        if future is None or future.done():
            logger.debug("迟到的 answer，忽略 | source=%s | call=%s", source, desc.call_id)
            return
        future.set_result(RTCSessionDescription(sdp=desc.sdp, type=desc.type))

    async def send_description(
        self, peer_id: str, call_id: str, description: RTCSessionDescription,
    ) -> None:
        await self.channel.send_signal(
            peer_id,
            DescriptionPayload(
                kind=description.type,
                call_id=call_id,
                sdp=description.sdp,
                type=description.type,
            ).model_dump(),
        )

    def _new_call(
        self, peer_id: str, call_id: str, offer: RTCSessionDescription | None = None,
    ) -> AiortcCall:
        pc = RTCPeerConnection(
            configuration=RTCConfiguration(
                iceServers=[RTCIceServer(urls=url) for url in self.ice_servers],
            ),
        )
        call = AiortcCall(peer_id, call_id, pc, self, offer=offer)

        @pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            self.post(RemoteMedia(peer_id=peer_id, call=call, track=track))

        @pc.on("connectionstatechange")
        async def on_connection_state_change() -> None:
            logger.debug("连接状态 | peer=%s | state=%s", peer_id, pc.connectionState)
            if pc.connectionState in ("failed", "closed"):
                self.post(CallClosed(peer_id=peer_id, call=call))

        return call
