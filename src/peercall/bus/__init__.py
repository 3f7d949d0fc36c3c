"""Signal bus backends.

Provides the room record stream used both for chat and as the out-of-band
call signaling channel.
"""

from peercall.bus.base import (
    BusRecord,
    DisconnectCallback,
    RecordCallback,
    SignalBus,
    SignalSendError,
)
from peercall.bus.memory_bus import InMemorySignalBus
from peercall.bus.redis_bus import RedisSignalBus
from peercall.config import SignalBusConfig


def create_signal_bus(config: SignalBusConfig) -> SignalBus:
    """Build the bus backend selected in configuration."""
    if config.backend == "memory":
        return InMemorySignalBus(history_size=config.history_size)
    return RedisSignalBus(config)


__all__ = [
    "BusRecord",
    "DisconnectCallback",
    "RecordCallback",
    "SignalBus",
    "SignalSendError",
    "InMemorySignalBus",
    "RedisSignalBus",
    "create_signal_bus",
]
