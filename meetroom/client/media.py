"""
meetroom.client.media
~~~~~~~~~~~~~~~~~~~~~

本地媒体控制 —— 采集轨道的所有者，提供静音 / 摄像头 / 屏幕共享开关，
轨道的实际分发交给 ``PeerMeshManager``。

- 采集前先枚举设备，只请求至少有一个物理设备的媒体类型；
- 静音与关闭摄像头只翻转 ``enabled`` 标志，采集不中断（输出静音帧 / 黑帧）；
- 屏幕共享是对外视频源的替换，而不是新增一条逻辑轨道。
"""
from __future__ import annotations

import asyncio
import glob
from dataclasses import dataclass
from typing import Literal, Protocol

import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av import AudioFrame, VideoFrame

from meetroom.client.mesh import PeerMeshManager
from meetroom.core.errors import MediaDeviceError
from meetroom.core.logging import get_logger
from meetroom.core.settings import settings

logger = get_logger(__name__)

DeviceKind = Literal["audioinput", "videoinput"]


# ── 可开关轨道 ────────────────────────────────────────────────────────


def blank_frame(frame: AudioFrame | VideoFrame) -> AudioFrame | VideoFrame:
    """生成与 ``frame`` 时间戳一致的静音帧或黑帧。"""
    if isinstance(frame, VideoFrame):
        blank = VideoFrame.from_ndarray(
            np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="rgb24",
        )
    else:
        blank = AudioFrame.from_ndarray(
            np.zeros_like(frame.to_ndarray()),
            format=frame.format.name,
            layout=frame.layout.name,
        )
        blank.sample_rate = frame.sample_rate
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class GatedTrack(MediaStreamTrack):
    """包装一条采集轨道。``enabled`` 为 False 时输出静音 / 黑帧，但不停止采集。"""

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self) -> AudioFrame | VideoFrame:
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return blank_frame(frame)

    def stop(self) -> None:
        super().stop()
        self.source.stop()


@dataclass
class LocalTrackSet:
    """本端唯一的一组本地轨道。

    Attributes:
        audio: 麦克风轨道。
        camera: 摄像头轨道。
        screen: 屏幕共享轨道；非 ``None`` 时它就是对外发送的视频源。
    """

    audio: GatedTrack | None = None
    camera: GatedTrack | None = None
    screen: MediaStreamTrack | None = None

    @property
    def outgoing_video(self) -> MediaStreamTrack | None:
        return self.screen if self.screen is not None else self.camera

    @property
    def sharing_screen(self) -> bool:
        return self.screen is not None


# ── 设备层 ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MediaDeviceInfo:
    kind: DeviceKind
    device_id: str
    label: str


class MediaDevices(Protocol):
    """设备访问接口（枚举 + 采集）。"""

    async def enumerate_devices(self) -> list[MediaDeviceInfo]:
        ...

    async def get_user_media(
        self, audio: bool, video: bool,
    ) -> tuple[MediaStreamTrack | None, MediaStreamTrack | None]:
        ...

    async def get_display_media(self) -> MediaStreamTrack:
        ...


class AiortcMediaDevices:
    """基于 ``aiortc.contrib.media.MediaPlayer``（ffmpeg）的本机设备访问。

    摄像头未显式配置时自动探测 ``/dev/video*``；麦克风需显式配置。
    """

    def __init__(
        self,
        camera_source: str | None = settings.CLIENT_CAMERA_SOURCE,
        camera_format: str | None = settings.CLIENT_CAMERA_FORMAT,
        mic_source: str | None = settings.CLIENT_MIC_SOURCE,
        mic_format: str | None = settings.CLIENT_MIC_FORMAT,
        screen_source: str = settings.CLIENT_SCREEN_SOURCE,
        screen_format: str = settings.CLIENT_SCREEN_FORMAT,
    ) -> None:
        self.camera_source = camera_source
        self.camera_format = camera_format
        self.mic_source = mic_source
        self.mic_format = mic_format
        self.screen_source = screen_source
        self.screen_format = screen_format

    async def enumerate_devices(self) -> list[MediaDeviceInfo]:
        cameras = [self.camera_source] if self.camera_source else sorted(glob.glob("/dev/video*"))
        devices = [MediaDeviceInfo("videoinput", path, path) for path in cameras]
        if self.mic_source:
            devices.append(MediaDeviceInfo("audioinput", self.mic_source, self.mic_source))
        return devices

    async def get_user_media(
        self, audio: bool, video: bool,
    ) -> tuple[MediaStreamTrack | None, MediaStreamTrack | None]:
        audio_track: MediaStreamTrack | None = None
        video_track: MediaStreamTrack | None = None
        if video:
            devices = await self.enumerate_devices()
            source = next(d.device_id for d in devices if d.kind == "videoinput")
            player = await self._open(
                source, self.camera_format, {"framerate": "30", "video_size": "640x480"},
            )
            video_track = player.video
        if audio:
            try:
                player = await self._open(self.mic_source, self.mic_format, None)
            except MediaDeviceError:
                # 放弃本次采集时摄像头也要释放，否则仍被 ffmpeg 线程占用
                if video_track is not None:
                    video_track.stop()
                raise
            audio_track = player.audio
        return audio_track, video_track

    async def get_display_media(self) -> MediaStreamTrack:
        player = await self._open(self.screen_source, self.screen_format, {"framerate": "15"})
        if player.video is None:
            raise MediaDeviceError(f"screen source {self.screen_source!r} has no video")
        return player.video

    @staticmethod
    async def _open(source: str, fmt: str | None, options: dict[str, str] | None) -> MediaPlayer:
        # 打开 ffmpeg 设备是阻塞调用
        try:
            return await asyncio.to_thread(MediaPlayer, source, format=fmt, options=options)
        except Exception as e:
            raise MediaDeviceError(f"cannot open {source!r}: {e}") from e


# ── 本地媒体控制器 ────────────────────────────────────────────────────


class LocalMediaController:
    """本地采集轨道的所有者。

    Attributes:
        devices: 设备访问接口。
        mesh: 负责把轨道分发到所有连接的网状管理器。
        tracks: 采集成功后的本地轨道集合。
    """

    def __init__(self, devices: MediaDevices, mesh: PeerMeshManager) -> None:
        self.devices = devices
        self.mesh = mesh
        self.tracks: LocalTrackSet | None = None
        self._capturing_screen = False

    async def start(self) -> LocalTrackSet:
        """枚举设备并采集。只请求有物理设备的媒体类型。

        Raises:
            MediaDeviceError: 没有任何摄像头 / 麦克风，或采集失败。
                调用方应放弃加入房间，而不是退化为只收不发。
        """
        try:
            devices = await self.devices.enumerate_devices()
        except Exception as e:
            raise MediaDeviceError(f"device enumeration failed: {e}") from e

        has_video = any(d.kind == "videoinput" for d in devices)
        has_audio = any(d.kind == "audioinput" for d in devices)
        if not (has_video or has_audio):
            raise MediaDeviceError("No camera or microphone found")

        try:
            audio, video = await self.devices.get_user_media(audio=has_audio, video=has_video)
        except MediaDeviceError:
            raise
        except Exception as e:
            raise MediaDeviceError(f"Could not access camera or microphone: {e}") from e

        self.tracks = LocalTrackSet(
            audio=GatedTrack(audio) if audio is not None else None,
            camera=GatedTrack(video) if video is not None else None,
        )
        self.mesh.set_local_tracks(self.tracks.audio, self.tracks.camera)
        logger.info("本地采集已开始 | audio=%s | video=%s", has_audio, has_video)
        return self.tracks

    def toggle_mute(self) -> bool | None:
        """切换麦克风。返回切换后的 ``enabled``；没有麦克风时返回 ``None``。"""
        track = self.tracks.audio if self.tracks else None
        if track is None:
            return None
        track.enabled = not track.enabled
        return track.enabled

    def toggle_camera(self) -> bool | None:
        """切换摄像头。返回切换后的 ``enabled``；没有摄像头时返回 ``None``。"""
        track = self.tracks.camera if self.tracks else None
        if track is None:
            return None
        track.enabled = not track.enabled
        return track.enabled

    @property
    def sharing_screen(self) -> bool:
        return self.tracks is not None and self.tracks.sharing_screen

    async def start_screen_share(self) -> None:
        """开始屏幕共享：采集屏幕并替换所有连接的对外视频。

        屏幕轨道被外部结束（如系统共享栏的“停止共享”）时，
        走与手动关闭完全相同的 ``stop_screen_share`` 路径。
        采集进行中再次调用为空操作。

        Raises:
            MediaDeviceError: 尚未开始本地采集，或屏幕采集失败。
        """
        if self.tracks is None:
            raise MediaDeviceError("local media not started")
        if self.tracks.sharing_screen or self._capturing_screen:
            return

        self._capturing_screen = True
        try:
            screen = await self.devices.get_display_media()
        finally:
            self._capturing_screen = False

        if self.tracks is None:
            # 采集期间已离开房间
            screen.stop()
            return
        self.tracks.screen = screen
        self.mesh.replace_outgoing_video(screen)
        screen.on("ended", lambda: self._on_screen_ended(screen))
        logger.info("屏幕共享已开始")

    def stop_screen_share(self) -> None:
        """停止屏幕共享：切回摄像头并释放屏幕采集。未共享时为空操作。

        屏幕轨道在 ``mesh.release_delay`` 后停止，发送端先切回摄像头。
        """
        screen = self._detach_screen()
        if screen is not None:
            self.mesh.release_later(screen)

    def _detach_screen(self) -> MediaStreamTrack | None:
        if self.tracks is None or self.tracks.screen is None:
            return None
        screen = self.tracks.screen
        self.tracks.screen = None
        self.mesh.replace_outgoing_video(self.tracks.camera)
        logger.info("屏幕共享已停止")
        return screen

    def _on_screen_ended(self, screen: MediaStreamTrack) -> None:
        # 只处理当前共享的那条屏幕轨道，旧轨道延迟停止时不影响新的共享
        if self.tracks is None or self.tracks.screen is not screen:
            return
        logger.info("屏幕共享被外部结束")
        self.stop_screen_share()

    def release(self) -> None:
        """立即停止全部采集轨道。"""
        if self.tracks is None:
            return
        screen = self._detach_screen()
        for track in (screen, self.tracks.audio, self.tracks.camera):
            if track is not None:
                track.stop()
        self.tracks = None
