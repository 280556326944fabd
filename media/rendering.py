"""
Consumes remote tracks so media keeps flowing when there is no display surface.
"""

from __future__ import annotations

import logging

from aiortc.contrib.media import MediaBlackhole

logger = logging.getLogger(__name__)


class RemoteStreamSink:
    def __init__(self) -> None:
        self._blackhole = MediaBlackhole()
        self.tracks = []

    async def render(self, track) -> None:
        self.tracks.append(track)
        self._blackhole.addTrack(track)
        await self._blackhole.start()
        logger.info("Rendering remote %s track", track.kind)

    async def stop(self) -> None:
        await self._blackhole.stop()
        self.tracks.clear()
