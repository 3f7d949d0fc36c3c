"""Base signal bus abstraction.

A signal bus is the room's append-only record stream: every participant
appends chat records to it and receives every newly appended record. Call
signaling rides on the same stream, so implementations know nothing about
calls.
"""

import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class SignalSendError(Exception):
    """Raised when a record cannot be appended to the bus."""


@dataclass(frozen=True)
class BusRecord:
    """Record appended to the room stream."""

    body: str
    sender_id: str
    sender_name: str
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.record_id,
            "body": self.body,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "createdAt": self.created_at,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BusRecord":
        """Build a record from its wire form.

        Raises:
            KeyError: If a required field is missing
        """
        return cls(
            body=str(data["body"]),
            sender_id=str(data["senderId"]),
            sender_name=str(data.get("senderName", "")),
            record_id=str(data.get("id") or uuid.uuid4().hex),
            created_at=float(data.get("createdAt") or time.time()),
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "BusRecord":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return cls.from_dict(json.loads(raw))


RecordCallback = Callable[[BusRecord], Awaitable[None]]
DisconnectCallback = Callable[[Exception], None]


class SignalBus(ABC):
    """Base class for room record streams.

    Subscribers are awaited one after another in subscription order, and
    records are delivered in the order they were published.
    """

    def __init__(self) -> None:
        self._subscribers: list[RecordCallback] = []
        self._disconnect_callbacks: list[DisconnectCallback] = []

    def subscribe(self, callback: RecordCallback) -> Callable[[], None]:
        """Register a coroutine called with every newly appended record.

        Returns:
            Function removing the subscription (safe to call twice)
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def on_disconnect(self, callback: DisconnectCallback) -> Callable[[], None]:
        """Register a callback for when record delivery stops unexpectedly.

        Returns:
            Function removing the callback
        """
        self._disconnect_callbacks.append(callback)

        def remove() -> None:
            if callback in self._disconnect_callbacks:
                self._disconnect_callbacks.remove(callback)

        return remove

    def _notify_disconnected(self, error: Exception) -> None:
        for callback in list(self._disconnect_callbacks):
            try:
                callback(error)
            except Exception as e:
                logger.error("Disconnect callback failed", extra={"error": str(e)})

    async def _dispatch(self, record: BusRecord) -> None:
        for callback in list(self._subscribers):
            try:
                await callback(record)
            except Exception as e:
                logger.error(
                    "Subscriber failed to handle record",
                    extra={"record_id": record.record_id, "error": str(e)},
                )

    @abstractmethod
    async def start(self) -> None:
        """Connect to the backend and begin delivering records."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Stop delivery and release backend resources."""
        pass

    @abstractmethod
    async def append(self, body: str, sender_id: str, sender_name: str) -> BusRecord:
        """Append a record to the room stream.

        Args:
            body: Opaque record body (chat text or encoded signal)
            sender_id: Identity of the appending user
            sender_name: Display name of the appending user

        Returns:
            The appended record

        Raises:
            SignalSendError: If the backend rejects the append
        """
        pass

    @abstractmethod
    async def recent(self, limit: int = 100) -> list[BusRecord]:
        """Return up to ``limit`` most recent records, oldest first."""
        pass
