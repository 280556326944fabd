"""
Local capture source with per-track enable/disable.

Disabling a track keeps it flowing with silent audio or black video, like a
browser's ``track.enabled = false``, so no renegotiation is needed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av import AudioFrame
from av.error import FFmpegError

from utils.error_codes import MediaAcquisitionFailed

logger = logging.getLogger(__name__)

# Limited-range YUV black
_BLACK_LUMA = 16
_BLACK_CHROMA = 128


def _blank_frame(frame):
    if isinstance(frame, AudioFrame):
        for plane in frame.planes:
            plane.update(bytes(plane.buffer_size))
        return frame

    blank = frame.reformat(format="yuv420p")
    for index, plane in enumerate(blank.planes):
        fill = _BLACK_LUMA if index == 0 else _BLACK_CHROMA
        plane.update(bytes([fill]) * plane.buffer_size)
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class ToggleableTrack(MediaStreamTrack):
    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return _blank_frame(frame)

    def stop(self) -> None:
        super().stop()
        self.source.stop()


@dataclass
class LocalMedia:
    """Revocable handle over the local audio and video tracks."""

    audio: Optional[ToggleableTrack] = None
    video: Optional[ToggleableTrack] = None
    players: List[MediaPlayer] = field(default_factory=list)
    stopped: bool = False

    @property
    def tracks(self) -> List[ToggleableTrack]:
        return [track for track in (self.audio, self.video) if track is not None]

    @property
    def audio_enabled(self) -> bool:
        return bool(self.audio and self.audio.enabled)

    @property
    def video_enabled(self) -> bool:
        return bool(self.video and self.video.enabled)

    def toggle_audio(self) -> bool:
        if self.audio is not None:
            self.audio.enabled = not self.audio.enabled
        return self.audio_enabled

    def toggle_video(self) -> bool:
        if self.video is not None:
            self.video.enabled = not self.video.enabled
        return self.video_enabled

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        for track in self.tracks:
            track.stop()


def _open_player(device: str, media_format: str, options=None) -> MediaPlayer:
    try:
        return MediaPlayer(device, format=media_format, options=options or {})
    except (OSError, FFmpegError, ValueError) as exc:
        raise MediaAcquisitionFailed(f"Could not open {device} ({media_format}): {exc}") from exc


def acquire_local_media(config, open_player: Callable = _open_player) -> LocalMedia:
    """Acquire camera and microphone; both are required to start a call."""
    video_player = open_player(config.video_device, config.video_format, {"framerate": "30", "video_size": "640x480"})
    try:
        audio_player = open_player(config.audio_device, config.audio_format)
    except MediaAcquisitionFailed:
        if video_player.video is not None:
            video_player.video.stop()
        raise

    missing = None
    if video_player.video is None:
        missing = f"{config.video_device} has no video stream"
    elif audio_player.audio is None:
        missing = f"{config.audio_device} has no audio stream"
    if missing:
        for track in (video_player.video, audio_player.audio):
            if track is not None:
                track.stop()
        raise MediaAcquisitionFailed(missing)

    logger.info("Acquired local media: video=%s audio=%s", config.video_device, config.audio_device)
    return LocalMedia(
        audio=ToggleableTrack(audio_player.audio),
        video=ToggleableTrack(video_player.video),
        players=[video_player, audio_player],
    )
