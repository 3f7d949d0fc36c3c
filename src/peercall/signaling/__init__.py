"""Call signaling protocol carried over the chat record stream."""

from peercall.signaling.protocol import (
    SIGNAL_TYPES,
    IceCandidate,
    SessionDescription,
    SignalMessage,
    SignalType,
    is_signal_body,
    parse_signal_body,
)

__all__ = [
    "SIGNAL_TYPES",
    "IceCandidate",
    "SessionDescription",
    "SignalMessage",
    "SignalType",
    "is_signal_body",
    "parse_signal_body",
]
