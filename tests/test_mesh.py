"""
tests.test_mesh
~~~~~~~~~~~~~~~

PeerMeshManager 单元测试 —— 成网规则、状态机、轨道替换与离开。
"""
from __future__ import annotations

import asyncio
from contextlib import suppress

import pytest
from aiortc import AudioStreamTrack, VideoStreamTrack

from fakes import CountingVideoTrack, FakeCall, FakeNegotiator
from meetroom.client.connection import (
    CallClosed,
    ConnectionState,
    IncomingCall,
    InvalidTransition,
    MediaConnection,
    RemoteMedia,
)
from meetroom.client.mesh import PeerMeshManager


def make_mesh(negotiator: FakeNegotiator) -> PeerMeshManager:
    mesh = PeerMeshManager(negotiator=negotiator, release_delay=0)
    mesh.set_local_tracks(AudioStreamTrack(), VideoStreamTrack())
    return mesh


async def activate(mesh: PeerMeshManager, peer_id: str) -> None:
    conn = mesh.connections[peer_id]
    await mesh.dispatch(RemoteMedia(peer_id=peer_id, call=conn.call, track=VideoStreamTrack()))


class TestMediaConnection:

    def test_state_machine(self) -> None:
        conn = MediaConnection("p2", outgoing=True)
        assert conn.state is ConnectionState.IDLE
        assert conn.activate() is False

        conn.begin(sent_video=None)
        assert conn.state is ConnectionState.CONNECTING
        with pytest.raises(InvalidTransition):
            conn.begin(sent_video=None)

        assert conn.activate() is True
        assert conn.activate() is False
        assert conn.state is ConnectionState.ACTIVE

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        conn = MediaConnection("p2", outgoing=False)
        conn.begin(sent_video=None)
        conn.call = FakeCall("p2")

        await conn.close()
        await conn.close()

        assert conn.state is ConnectionState.CLOSED
        assert conn.call.closed is True
        assert conn.activate() is False


class TestFormation:

    @pytest.mark.asyncio
    async def test_existing_member_originates_with_local_tracks(self, fake_negotiator: FakeNegotiator) -> None:
        mesh = make_mesh(fake_negotiator)

        conn = await mesh.connect_to_new_peer("P2")

        assert conn is not None and conn.outgoing is True
        assert conn.state is ConnectionState.CONNECTING
        assert conn.sent_video is mesh.outgoing_video
        assert fake_negotiator.calls["P2"].video_sender is conn.video_feed
        assert conn.video_feed is not mesh.outgoing_video

        await activate(mesh, "P2")
        assert mesh.state_of("P2") is ConnectionState.ACTIVE

    @pytest.mark.asyncio
    async def test_duplicate_join_broadcast_does_not_call_twice(self, fake_negotiator: FakeNegotiator) -> None:
        mesh = make_mesh(fake_negotiator)

        first = await mesh.connect_to_new_peer("P2")
        second = await mesh.connect_to_new_peer("P2")

        assert first is second
        assert len(fake_negotiator.calls) == 1

    @pytest.mark.asyncio
    async def test_joiner_answers_incoming_call(self, fake_negotiator: FakeNegotiator) -> None:
        mesh = make_mesh(fake_negotiator)
        call = FakeCall("P1")

        await mesh.dispatch(IncomingCall(call))

        conn = mesh.connections["P1"]
        assert conn.outgoing is False
        assert conn.state is ConnectionState.CONNECTING
        assert call.answered_with == [conn.audio_feed, conn.video_feed]
        assert conn.audio_feed is not mesh.audio
        assert conn.video_feed is not mesh.outgoing_video

    @pytest.mark.asyncio
    async def test_failed_negotiation_discards_connection(self) -> None:
        mesh = make_mesh(FakeNegotiator(fail=True))

        assert await mesh.connect_to_new_peer("P2") is None
        assert "P2" not in mesh.connections

    @pytest.mark.asyncio
    async def test_run_applies_posted_events_in_order(self, fake_negotiator: FakeNegotiator) -> None:
        mesh = make_mesh(fake_negotiator)
        call = FakeCall("P1")
        task = asyncio.create_task(mesh.run())
        try:
            mesh.post(IncomingCall(call))
            mesh.post(RemoteMedia(peer_id="P1", call=call, track=VideoStreamTrack()))
            for _ in range(10):
                await asyncio.sleep(0)
            assert mesh.state_of("P1") is ConnectionState.ACTIVE
        finally:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task


class TestReplaceOutgoingVideo:

    @pytest.mark.asyncio
    async def test_replaces_on_every_live_connection_without_reconnecting(
        self, fake_negotiator: FakeNegotiator,
    ) -> None:
        mesh = make_mesh(fake_negotiator)
        await mesh.connect_to_new_peer("P2")
        await mesh.connect_to_new_peer("P3")
        await activate(mesh, "P2")
        conn_p2 = mesh.connections["P2"]
        screen = VideoStreamTrack()

        replaced = mesh.replace_outgoing_video(screen)

        assert replaced == 2
        assert mesh.preview_video is screen
        for peer_id in ("P2", "P3"):
            conn = mesh.connections[peer_id]
            assert conn.sent_video is screen
            assert fake_negotiator.calls[peer_id].video_sender is conn.video_feed
        assert mesh.connections["P2"] is conn_p2
        assert conn_p2.state is ConnectionState.ACTIVE
        assert fake_negotiator.calls["P2"].closed is False

    @pytest.mark.asyncio
    async def test_idempotent(self, fake_negotiator: FakeNegotiator) -> None:
        mesh = make_mesh(fake_negotiator)
        await mesh.connect_to_new_peer("P2")
        screen = VideoStreamTrack()

        mesh.replace_outgoing_video(screen)
        once = (fake_negotiator.calls["P2"].video_sender, mesh.outgoing_video, mesh.preview_video)
        mesh.replace_outgoing_video(screen)
        twice = (fake_negotiator.calls["P2"].video_sender, mesh.outgoing_video, mesh.preview_video)

        assert once == twice

    @pytest.mark.asyncio
    async def test_replaced_feed_is_released(self, fake_negotiator: FakeNegotiator) -> None:
        mesh = make_mesh(fake_negotiator)
        camera = mesh.outgoing_video
        conn = await mesh.connect_to_new_peer("P2")
        camera_feed = conn.video_feed

        mesh.replace_outgoing_video(VideoStreamTrack())
        await asyncio.sleep(0.01)

        assert camera_feed.readyState == "ended"
        assert conn.video_feed.readyState == "live"
        assert camera.readyState == "live"

    @pytest.mark.asyncio
    async def test_connection_without_video_sender_is_noop(self) -> None:
        negotiator = FakeNegotiator(has_video_sender=False)
        mesh = make_mesh(negotiator)
        await mesh.connect_to_new_peer("P2")

        assert mesh.replace_outgoing_video(VideoStreamTrack()) == 0
        assert mesh.state_of("P2") is ConnectionState.CONNECTING

    @pytest.mark.asyncio
    async def test_closed_connections_are_skipped(self, fake_negotiator: FakeNegotiator) -> None:
        mesh = make_mesh(fake_negotiator)
        await mesh.connect_to_new_peer("P2")
        old_feed = mesh.connections["P2"].video_feed
        await mesh.close_connection("P2")

        assert mesh.replace_outgoing_video(VideoStreamTrack()) == 0
        assert fake_negotiator.calls["P2"].video_sender is old_feed
        assert old_feed.readyState == "ended"

    @pytest.mark.asyncio
    async def test_in_flight_connection_gets_follow_up_substitution(
        self, fake_negotiator: FakeNegotiator,
    ) -> None:
        """协商中的连接用旧轨道完成协商，激活时补做一次替换。"""
        mesh = make_mesh(fake_negotiator)
        camera = mesh.outgoing_video
        fake_negotiator.gate = asyncio.Event()

        pending = asyncio.create_task(mesh.connect_to_new_peer("P2"))
        await asyncio.sleep(0)
        screen = VideoStreamTrack()
        assert mesh.replace_outgoing_video(screen) == 0

        fake_negotiator.gate.set()
        conn = await pending
        assert conn.sent_video is camera
        assert fake_negotiator.calls["P2"].video_sender is conn.video_feed

        await activate(mesh, "P2")

        assert conn.sent_video is screen
        assert fake_negotiator.calls["P2"].video_sender is conn.video_feed


class TestFanout:

    @pytest.mark.asyncio
    async def test_every_connection_receives_every_frame(self, fake_negotiator: FakeNegotiator) -> None:
        """两条连接共用一个采集源，各自收到完整的帧序列，而不是互相分走一半。"""
        source = CountingVideoTrack()
        mesh = PeerMeshManager(negotiator=fake_negotiator, release_delay=0)
        mesh.set_local_tracks(None, source)
        await mesh.connect_to_new_peer("P2")
        await mesh.connect_to_new_peer("P3")

        async def collect(peer_id: str) -> list[int]:
            sender = fake_negotiator.calls[peer_id].video_sender
            return [(await sender.recv()).pts for _ in range(5)]

        try:
            p2_frames, p3_frames = await asyncio.gather(collect("P2"), collect("P3"))
        finally:
            await mesh.leave()
            source.stop()
            await asyncio.sleep(0.01)

        assert p2_frames == [0, 1, 2, 3, 4]
        assert p3_frames == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_leave_stops_feeds_but_not_capture(self, fake_negotiator: FakeNegotiator) -> None:
        mesh = make_mesh(fake_negotiator)
        conn = await mesh.connect_to_new_peer("P2")

        await mesh.leave()

        assert conn.audio_feed.readyState == "ended"
        assert conn.video_feed.readyState == "ended"
        assert mesh.outgoing_video.readyState == "live"


class TestClose:

    @pytest.mark.asyncio
    async def test_peer_left_tears_down_connection(self, fake_negotiator: FakeNegotiator) -> None:
        mesh = make_mesh(fake_negotiator)
        await mesh.connect_to_new_peer("P2")
        await activate(mesh, "P2")
        conn = mesh.connections["P2"]

        await mesh.close_connection("P2")

        assert "P2" not in mesh.connections
        assert conn.state is ConnectionState.CLOSED
        assert fake_negotiator.calls["P2"].closed is True

    @pytest.mark.asyncio
    async def test_leave_mid_negotiation_suppresses_completion(self, fake_negotiator: FakeNegotiator) -> None:
        mesh = make_mesh(fake_negotiator)
        fake_negotiator.gate = asyncio.Event()

        pending = asyncio.create_task(mesh.connect_to_new_peer("P2"))
        await asyncio.sleep(0)
        await mesh.leave()
        fake_negotiator.gate.set()

        assert await pending is None
        assert mesh.connections == {}
        assert fake_negotiator.calls["P2"].closed is True

    @pytest.mark.asyncio
    async def test_leave_is_idempotent_and_blocks_new_calls(self, fake_negotiator: FakeNegotiator) -> None:
        mesh = make_mesh(fake_negotiator)
        await mesh.connect_to_new_peer("P2")

        await mesh.leave()
        await mesh.leave()
        late = FakeCall("P3")
        await mesh.dispatch(IncomingCall(late))

        assert mesh.connections == {}
        assert late.closed is True
        assert await mesh.connect_to_new_peer("P4") is None

    @pytest.mark.asyncio
    async def test_events_for_closed_connection_are_ignored(self, fake_negotiator: FakeNegotiator) -> None:
        mesh = make_mesh(fake_negotiator)
        await mesh.connect_to_new_peer("P2")
        call = fake_negotiator.calls["P2"]
        await mesh.close_connection("P2")

        await mesh.dispatch(RemoteMedia(peer_id="P2", call=call, track=VideoStreamTrack()))

        assert mesh.state_of("P2") is None

    @pytest.mark.asyncio
    async def test_stale_call_closed_event_is_ignored(self, fake_negotiator: FakeNegotiator) -> None:
        mesh = make_mesh(fake_negotiator)
        await mesh.connect_to_new_peer("P2")

        await mesh.dispatch(CallClosed(peer_id="P2", call=FakeCall("P2")))
        assert mesh.state_of("P2") is ConnectionState.CONNECTING

        await mesh.dispatch(CallClosed(peer_id="P2", call=fake_negotiator.calls["P2"]))
        assert mesh.state_of("P2") is None
