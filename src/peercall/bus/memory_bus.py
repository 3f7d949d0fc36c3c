"""In-process signal bus.

Delivers records directly to subscribers of the same process. Used for
tests, demos and for wiring two negotiators together without a backend.
"""

import logging
from collections import deque

from peercall.bus.base import BusRecord, SignalBus, SignalSendError

logger = logging.getLogger(__name__)


class InMemorySignalBus(SignalBus):
    """Signal bus keeping a bounded history in memory."""

    def __init__(self, history_size: int = 100) -> None:
        super().__init__()
        self._history: deque[BusRecord] = deque(maxlen=history_size)
        self._closed = False

    @property
    def history(self) -> list[BusRecord]:
        return list(self._history)

    async def start(self) -> None:
        self._closed = False

    async def close(self) -> None:
        self._closed = True
        self._subscribers.clear()

    async def append(self, body: str, sender_id: str, sender_name: str) -> BusRecord:
        if self._closed:
            raise SignalSendError("Signal bus is closed")

        record = BusRecord(body=body, sender_id=sender_id, sender_name=sender_name)
        self._history.append(record)

        logger.debug(
            "Record appended",
            extra={"record_id": record.record_id, "sender_id": sender_id},
        )

        await self._dispatch(record)
        return record

    async def recent(self, limit: int = 100) -> list[BusRecord]:
        if limit <= 0:
            return []
        return list(self._history)[-limit:]
