"""Peer-to-peer voice calls negotiated over a shared chat room."""

from peercall.negotiator import CallEvent, CallEventKind, CallNegotiator, CallState, IncomingCall

__version__ = "0.1.0"

__all__ = [
    "CallEvent",
    "CallEventKind",
    "CallNegotiator",
    "CallState",
    "IncomingCall",
]
