"""Base peer connection abstraction.

Defines the negotiation primitive (offer/answer/ICE exchange and connection
state reporting) the call layer drives. Implementations report everything
that happens on the connection as events delivered to a single handler.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from peercall.config import IceServerConfig
from peercall.signaling.protocol import IceCandidate, SessionDescription


@dataclass(frozen=True)
class PeerEvent:
    """Event raised by a peer connection."""

    source: "PeerConnection"


@dataclass(frozen=True)
class TrackReceived(PeerEvent):
    """Remote media track became available."""

    track: Any


@dataclass(frozen=True)
class IceCandidateGathered(PeerEvent):
    """Local ICE candidate ready to be trickled to the remote peer."""

    candidate: IceCandidate


@dataclass(frozen=True)
class ConnectionStateChanged(PeerEvent):
    """Aggregate connection state changed.

    States: new, connecting, connected, disconnected, failed, closed.
    """

    state: str


PeerEventHandler = Callable[[PeerEvent], Awaitable[None]]


class PeerConnection(ABC):
    """Base class for peer-to-peer media connections."""

    def __init__(self) -> None:
        self._event_handler: PeerEventHandler | None = None

    def set_event_handler(self, handler: PeerEventHandler | None) -> None:
        """Route all events of this connection to ``handler``."""
        self._event_handler = handler

    async def _emit(self, event: PeerEvent) -> None:
        if self._event_handler is not None:
            await self._event_handler(event)

    @abstractmethod
    def add_track(self, track: Any) -> None:
        """Attach a local media track to be sent to the peer."""
        pass

    @abstractmethod
    async def create_offer(self) -> SessionDescription:
        pass

    @abstractmethod
    async def create_answer(self) -> SessionDescription:
        pass

    @abstractmethod
    async def set_local_description(self, description: SessionDescription) -> None:
        pass

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None:
        pass

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        """Add a remote ICE candidate.

        Raises:
            ValueError: If the candidate cannot be parsed or applied
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and stop all transceivers."""
        pass

    @property
    @abstractmethod
    def signaling_state(self) -> str:
        """stable, have-local-offer, have-remote-offer or closed."""
        pass

    @property
    @abstractmethod
    def connection_state(self) -> str:
        pass

    @property
    @abstractmethod
    def local_description(self) -> SessionDescription | None:
        pass

    @property
    @abstractmethod
    def remote_description(self) -> SessionDescription | None:
        pass


PeerConnectionFactory = Callable[[list[IceServerConfig]], PeerConnection]
