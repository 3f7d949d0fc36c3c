"""aiortc/PyAV media backend.

Captures the microphone through an FFmpeg input device (PulseAudio, ALSA,
AVFoundation, DirectShow or a plain file) and renders received audio
through an FFmpeg output or discards it.
"""

import asyncio
import logging

from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from aiortc.mediastreams import MediaStreamTrack

from peercall.config import MediaConfig
from peercall.media.base import LocalAudio, MediaAccessError, MediaCapture

logger = logging.getLogger(__name__)


class AiortcMediaCapture(MediaCapture):
    """Microphone capture via aiortc's MediaPlayer."""

    def __init__(self, config: MediaConfig) -> None:
        self._config = config

    async def acquire_local_audio(self) -> LocalAudio:
        try:
            # Opening the device blocks in PyAV
            player = await asyncio.to_thread(
                MediaPlayer, self._config.input_device, format=self._config.input_format
            )
        except Exception as e:
            raise MediaAccessError(
                f"Cannot open audio input '{self._config.input_device}': {e}"
            ) from e

        if player.audio is None:
            raise MediaAccessError(
                f"Audio input '{self._config.input_device}' has no audio stream"
            )

        logger.info(
            "Local audio acquired",
            extra={"device": self._config.input_device, "format": self._config.input_format},
        )
        return LocalAudio(tracks=[player.audio], source=player)


class RemoteAudioSink:
    """Plays (or records) the remote party's audio track.

    Without an output device the track is still consumed so the peer
    connection does not stall.
    """

    def __init__(self, config: MediaConfig) -> None:
        self._config = config
        self._sink: MediaRecorder | MediaBlackhole | None = None
        self._track: MediaStreamTrack | None = None

    @property
    def track(self) -> MediaStreamTrack | None:
        return self._track

    async def render(self, track: MediaStreamTrack) -> None:
        """Start rendering ``track``, replacing any previous one."""
        if track is self._track:
            return

        await self.stop()

        if self._config.output_device:
            self._sink = MediaRecorder(self._config.output_device, format=self._config.output_format)
        else:
            self._sink = MediaBlackhole()

        self._sink.addTrack(track)
        await self._sink.start()
        self._track = track

        logger.info(
            "Rendering remote audio",
            extra={"output": self._config.output_device or "blackhole"},
        )

    async def stop(self) -> None:
        if self._sink is None:
            return

        sink, self._sink = self._sink, None
        self._track = None
        try:
            await sink.stop()
        except Exception as e:
            logger.warning("Error stopping audio sink", extra={"error": str(e)})
