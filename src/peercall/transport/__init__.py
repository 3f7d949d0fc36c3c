"""Peer connection layer.

Provides the offer/answer/ICE negotiation primitive the call negotiator
drives, with an aiortc implementation.
"""

from peercall.transport.aiortc_transport import (
    AiortcPeerConnection,
    create_aiortc_peer_connection,
)
from peercall.transport.base import (
    ConnectionStateChanged,
    IceCandidateGathered,
    PeerConnection,
    PeerConnectionFactory,
    PeerEvent,
    PeerEventHandler,
    TrackReceived,
)

__all__ = [
    "AiortcPeerConnection",
    "ConnectionStateChanged",
    "IceCandidateGathered",
    "PeerConnection",
    "PeerConnectionFactory",
    "PeerEvent",
    "PeerEventHandler",
    "TrackReceived",
    "create_aiortc_peer_connection",
]
