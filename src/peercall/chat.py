"""Room chat session.

Joins a room's record stream, keeps the visible chat transcript and routes
call signals to the negotiator. Signal records never show up as chat text.
"""

import logging
from collections import deque
from collections.abc import Callable

from peercall.bus.base import BusRecord, SignalBus
from peercall.negotiator import CallNegotiator
from peercall.signaling.protocol import is_signal_body

logger = logging.getLogger(__name__)

MessageListener = Callable[[BusRecord], None]


def is_visible_chat_record(record: BusRecord) -> bool:
    """True if the record is chat text rather than a call signal."""
    return not is_signal_body(record.body)


class ChatRoom:
    """Chat transcript and signal routing for one user in one room."""

    def __init__(
        self,
        bus: SignalBus,
        negotiator: CallNegotiator,
        user_id: str,
        user_name: str,
        history_limit: int = 100,
    ) -> None:
        self._bus = bus
        self._negotiator = negotiator
        self._user_id = user_id
        self._user_name = user_name
        self._history_limit = history_limit

        self._messages: deque[BusRecord] = deque(maxlen=history_limit)
        self._listeners: list[MessageListener] = []
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def messages(self) -> list[BusRecord]:
        """Visible chat messages, oldest first."""
        return list(self._messages)

    def add_listener(self, listener: MessageListener) -> Callable[[], None]:
        """Register a callback for each new visible chat message."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def start(self) -> None:
        """Load recent history and begin receiving records."""
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self._bus.subscribe(self.on_record)
        await self.load_history()

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def load_history(self) -> None:
        """Replace the transcript with the room's recent chat messages.

        Old signals in the history are skipped, never replayed.
        """
        records = await self._bus.recent(self._history_limit)
        self._messages.clear()
        self._messages.extend(r for r in records if is_visible_chat_record(r))
        logger.debug(
            "Chat history loaded",
            extra={"records": len(records), "visible": len(self._messages)},
        )

    async def on_record(self, record: BusRecord) -> None:
        if not is_visible_chat_record(record):
            await self._negotiator.handle_signal_message(record)
            return

        self._messages.append(record)
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception as e:
                logger.error("Chat listener failed", extra={"error": str(e)})

    async def send_text(self, text: str) -> BusRecord | None:
        """Post a chat message. Blank text is not sent.

        Raises:
            SignalSendError: If the bus rejects the record
        """
        text = text.strip()
        if not text:
            return None
        return await self._bus.append(text, self._user_id, self._user_name)
