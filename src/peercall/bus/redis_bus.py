"""Redis-backed signal bus.

Each room maps to a pub/sub channel carrying new records and a capped list
holding recent history:

    call:{room}            channel, one JSON record per message
    call:{room}:messages   list, last ``history_size`` records
"""

import asyncio
import logging

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from peercall.bus.base import BusRecord, SignalBus, SignalSendError
from peercall.config import SignalBusConfig

logger = logging.getLogger(__name__)


class RedisSignalBus(SignalBus):
    """Signal bus over Redis pub/sub."""

    def __init__(self, config: SignalBusConfig, client: aioredis.Redis | None = None) -> None:
        """Initialize the bus.

        Args:
            config: Bus configuration (URL, room, history size)
            client: Optional pre-built Redis client (owned by the caller)
        """
        super().__init__()
        self._config = config
        self._redis: aioredis.Redis | None = client
        self._owns_client = client is None
        self._pubsub: aioredis.client.PubSub | None = None
        self._listener_task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._listener_task is not None and not self._listener_task.done()

    async def start(self) -> None:
        """Connect and subscribe to the room channel.

        Raises:
            RuntimeError: If the bus is already running
            ConnectionError: If Redis cannot be reached
        """
        if self.is_running:
            raise RuntimeError("Signal bus is already running")

        if self._redis is None:
            self._redis = aioredis.from_url(
                self._config.redis_url,
                db=self._config.db,
                decode_responses=True,
            )

        try:
            self._pubsub = self._redis.pubsub()
            await self._pubsub.subscribe(self._config.channel)
        except RedisError as e:
            await self._release_connection()
            raise ConnectionError(f"Failed to subscribe to {self._config.channel}: {e}") from e

        self._listener_task = asyncio.create_task(self._listen())

        logger.info(
            "Redis signal bus started",
            extra={"channel": self._config.channel, "url": self._config.redis_url},
        )

    async def close(self) -> None:
        if self._listener_task is not None:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None

        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self._config.channel)
            except RedisError as e:
                logger.warning("Error unsubscribing", extra={"error": str(e)})

        await self._release_connection()
        self._subscribers.clear()
        logger.info("Redis signal bus closed", extra={"channel": self._config.channel})

    async def _release_connection(self) -> None:
        """Close the pubsub and, if this bus created it, the client."""
        if self._pubsub is not None:
            pubsub, self._pubsub = self._pubsub, None
            try:
                await pubsub.aclose()
            except RedisError as e:
                logger.warning("Error closing pubsub", extra={"error": str(e)})

        if self._redis is not None and self._owns_client:
            client, self._redis = self._redis, None
            await client.aclose()

    async def append(self, body: str, sender_id: str, sender_name: str) -> BusRecord:
        if self._redis is None:
            raise SignalSendError("Signal bus is not started")

        record = BusRecord(body=body, sender_id=sender_id, sender_name=sender_name)
        data = record.to_json()

        try:
            await self._redis.rpush(self._config.history_key, data)
            await self._redis.ltrim(self._config.history_key, -self._config.history_size, -1)
            await self._redis.publish(self._config.channel, data)
        except RedisError as e:
            raise SignalSendError(f"Failed to append record: {e}") from e

        return record

    async def recent(self, limit: int = 100) -> list[BusRecord]:
        if self._redis is None:
            raise RuntimeError("Signal bus is not started")
        if limit <= 0:
            return []

        raw_records = await self._redis.lrange(self._config.history_key, -limit, -1)

        records = []
        for raw in raw_records:
            try:
                records.append(BusRecord.from_json(raw))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping malformed history record", extra={"error": str(e)})
        return records

    async def _listen(self) -> None:
        pubsub = self._pubsub
        if pubsub is None:
            return

        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue

                try:
                    record = BusRecord.from_json(message["data"])
                except (ValueError, KeyError, TypeError) as e:
                    # json.JSONDecodeError is a ValueError
                    logger.debug("Ignoring malformed record", extra={"error": str(e)})
                    continue

                await self._dispatch(record)

        except asyncio.CancelledError:
            raise
        except RedisError as e:
            logger.error(
                "Redis subscription lost",
                extra={"channel": self._config.channel, "error": str(e)},
            )
            self._notify_disconnected(e)
