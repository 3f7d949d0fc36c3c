"""Base media capture abstraction.

Defines how the call layer acquires the local microphone and releases it.
Rendering of remote audio is left to the caller.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


class MediaAccessError(Exception):
    """Raised when the local audio device cannot be opened (denied or missing)."""


@dataclass
class LocalAudio:
    """Handle on an acquired local audio stream.

    Owned by exactly one call session until released.
    """

    tracks: list[Any]
    source: Any = None  # backend object producing the tracks
    stream_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    released: bool = False


class MediaCapture(ABC):
    """Base class for local audio capture backends."""

    @abstractmethod
    async def acquire_local_audio(self) -> LocalAudio:
        """Open the local microphone.

        Returns:
            LocalAudio: Stream handle carrying at least one audio track

        Raises:
            MediaAccessError: If access is denied or no device is available
        """
        pass

    def release_stream(self, stream: LocalAudio) -> None:
        """Stop every track of the stream. Releasing twice is a no-op."""
        if stream.released:
            return

        for track in stream.tracks:
            track.stop()
        stream.released = True
