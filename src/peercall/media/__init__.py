"""Local audio capture and remote audio rendering."""

from peercall.media.aiortc_media import AiortcMediaCapture, RemoteAudioSink
from peercall.media.base import LocalAudio, MediaAccessError, MediaCapture

__all__ = [
    "AiortcMediaCapture",
    "LocalAudio",
    "MediaAccessError",
    "MediaCapture",
    "RemoteAudioSink",
]
