"""
tests.test_media
~~~~~~~~~~~~~~~~

LocalMediaController 测试 —— 设备枚举、开关、屏幕共享。
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import numpy as np
import pytest
from aiortc import VideoStreamTrack

from fakes import FakeDevices, FakeNegotiator
from meetroom.client.connection import ConnectionState, RemoteMedia
from meetroom.client.media import AiortcMediaDevices, GatedTrack, LocalMediaController
from meetroom.client.mesh import PeerMeshManager
from meetroom.core.errors import MediaDeviceError


def make_controller(devices: FakeDevices, negotiator: FakeNegotiator | None = None) -> LocalMediaController:
    mesh = PeerMeshManager(negotiator=negotiator or FakeNegotiator(), release_delay=0)
    return LocalMediaController(devices, mesh)


class TestStart:

    @pytest.mark.asyncio
    async def test_requests_only_available_kinds(self) -> None:
        devices = FakeDevices(audio=True, video=False)
        media = make_controller(devices)

        tracks = await media.start()

        assert devices.requested == (True, False)
        assert tracks.audio is not None and tracks.camera is None
        assert media.mesh.audio is tracks.audio
        assert media.mesh.outgoing_video is None

    @pytest.mark.asyncio
    async def test_camera_released_when_microphone_fails(self) -> None:
        devices = AiortcMediaDevices(camera_source="/dev/video0", mic_source="default")
        camera = VideoStreamTrack()
        opened = AsyncMock(side_effect=[MagicMock(video=camera), MediaDeviceError("no mic")])

        with patch.object(AiortcMediaDevices, "_open", opened):
            with pytest.raises(MediaDeviceError, match="no mic"):
                await devices.get_user_media(audio=True, video=True)

        assert camera.readyState == "ended"

    @pytest.mark.asyncio
    async def test_no_devices_is_fatal(self) -> None:
        media = make_controller(FakeDevices(audio=False, video=False))

        with pytest.raises(MediaDeviceError, match="No camera or microphone"):
            await media.start()
        assert media.tracks is None

    @pytest.mark.asyncio
    async def test_permission_denied_is_fatal(self) -> None:
        media = make_controller(FakeDevices(fail=PermissionError("denied")))

        with pytest.raises(MediaDeviceError, match="Could not access"):
            await media.start()
        assert media.mesh.outgoing_tracks() == []


class TestToggles:

    @pytest.mark.asyncio
    async def test_toggle_flips_enabled_without_stopping(self) -> None:
        media = make_controller(FakeDevices())
        tracks = await media.start()

        assert media.toggle_mute() is False
        assert media.toggle_camera() is False
        assert tracks.audio.readyState == "live"
        assert tracks.camera.readyState == "live"

        assert media.toggle_mute() is True
        assert media.toggle_camera() is True

    @pytest.mark.asyncio
    async def test_toggle_without_device_returns_none(self) -> None:
        media = make_controller(FakeDevices(video=False))
        await media.start()

        assert media.toggle_camera() is None

    @pytest.mark.asyncio
    async def test_disabled_video_yields_black_frames(self) -> None:
        track = GatedTrack(VideoStreamTrack())
        track.enabled = False

        frame = await track.recv()

        assert not np.any(frame.to_ndarray(format="rgb24"))
        track.stop()


class TestScreenShare:

    @pytest.mark.asyncio
    async def test_share_and_stop_keep_connection(self, fake_negotiator: FakeNegotiator) -> None:
        devices = FakeDevices()
        media = make_controller(devices, fake_negotiator)
        tracks = await media.start()
        conn = await media.mesh.connect_to_new_peer("P2")
        await media.mesh.dispatch(RemoteMedia(peer_id="P2", call=conn.call, track=VideoStreamTrack()))
        call = fake_negotiator.calls["P2"]

        await media.start_screen_share()
        screen = devices.screens[0]

        assert media.sharing_screen is True
        assert conn.sent_video is screen
        assert call.video_sender is conn.video_feed
        assert media.mesh.preview_video is screen
        assert media.mesh.connections["P2"] is conn
        assert conn.state is ConnectionState.ACTIVE

        media.stop_screen_share()

        assert media.sharing_screen is False
        assert conn.sent_video is tracks.camera
        assert call.video_sender is conn.video_feed
        assert media.mesh.preview_video is tracks.camera
        await asyncio.sleep(0.01)
        assert screen.readyState == "ended"
        assert media.mesh.connections["P2"] is conn
        assert conn.state is ConnectionState.ACTIVE

    @pytest.mark.asyncio
    async def test_external_end_takes_stop_path(self, fake_negotiator: FakeNegotiator) -> None:
        devices = FakeDevices()
        media = make_controller(devices, fake_negotiator)
        tracks = await media.start()
        conn = await media.mesh.connect_to_new_peer("P2")

        await media.start_screen_share()
        devices.screens[0].stop()

        assert media.sharing_screen is False
        assert conn.sent_video is tracks.camera
        assert fake_negotiator.calls["P2"].video_sender is conn.video_feed

    @pytest.mark.asyncio
    async def test_overlapping_share_requests_capture_once(self) -> None:
        devices = FakeDevices()
        media = make_controller(devices)
        await media.start()
        devices.display_gate = asyncio.Event()

        async def open_gate() -> None:
            await asyncio.sleep(0)
            devices.display_gate.set()

        await asyncio.gather(media.start_screen_share(), media.start_screen_share(), open_gate())

        assert len(devices.screens) == 1
        assert media.tracks.screen is devices.screens[0]

    @pytest.mark.asyncio
    async def test_released_old_screen_does_not_end_new_share(self) -> None:
        devices = FakeDevices()
        media = make_controller(devices)
        media.mesh.release_delay = 0.01
        await media.start()

        await media.start_screen_share()
        media.stop_screen_share()
        await media.start_screen_share()
        await asyncio.sleep(0.05)

        first, second = devices.screens
        assert first.readyState == "ended"
        assert second.readyState == "live"
        assert media.sharing_screen is True
        assert media.mesh.outgoing_video is second

    @pytest.mark.asyncio
    async def test_leaving_during_capture_discards_screen(self) -> None:
        devices = FakeDevices()
        media = make_controller(devices)
        await media.start()
        devices.display_gate = asyncio.Event()

        pending = asyncio.create_task(media.start_screen_share())
        await asyncio.sleep(0)
        media.release()
        devices.display_gate.set()
        await pending

        assert devices.screens[0].readyState == "ended"
        assert media.tracks is None

    @pytest.mark.asyncio
    async def test_share_requires_started_media(self) -> None:
        media = make_controller(FakeDevices())

        with pytest.raises(MediaDeviceError):
            await media.start_screen_share()

    @pytest.mark.asyncio
    async def test_release_stops_everything(self) -> None:
        devices = FakeDevices()
        media = make_controller(devices)
        tracks = await media.start()
        await media.start_screen_share()

        media.release()

        assert tracks.audio.readyState == "ended"
        assert tracks.camera.readyState == "ended"
        assert devices.screens[0].readyState == "ended"
        assert media.tracks is None
