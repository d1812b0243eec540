"""
Mutation event source — six insert streams, one Kafka topic per source kind.

A channel is one AIOKafkaConsumer subscribed to all six topics at once
(the multiplexed live channel). Each channel consumes independently
(no consumer group) from the latest offset, so every open channel sees
every insert that happens while it is open.

Per message:
  1. Map topic → ActivityType.
  2. Decode the JSON row.
  3. Await the channel's on_event(kind, row). Messages are handled one at a
     time, so per-topic arrival order is preserved.

A broken message or a tombstone is logged and skipped. Anything that ends
the consume loop while the channel is open is reported once through
on_error; reconnecting is the subscription manager's job.
"""
import asyncio
import json
import logging
from contextlib import suppress
from typing import Awaitable, Callable, Optional, Protocol

from aiokafka import AIOKafkaConsumer
from aiokafka.errors import KafkaError

from activity_feed.config import settings
from activity_feed.errors import ChannelError
from activity_feed.schemas import ActivityType

logger = logging.getLogger(__name__)

EventHandler = Callable[[ActivityType, dict], Awaitable[None]]
ErrorHandler = Callable[[Exception], Awaitable[None]]


def source_topics() -> dict[str, ActivityType]:
    return {
        settings.kafka_topic_posts: ActivityType.POST,
        settings.kafka_topic_saves: ActivityType.SAVE,
        settings.kafka_topic_follows: ActivityType.FOLLOW,
        settings.kafka_topic_community_joins: ActivityType.COMMUNITY_JOIN,
        settings.kafka_topic_likes: ActivityType.LIKE,
        settings.kafka_topic_comments: ActivityType.COMMENT,
    }


class Channel(Protocol):
    name: str

    async def close(self) -> None: ...


class EventSource(Protocol):
    async def open_channel(
        self,
        name: str,
        on_event: EventHandler,
        on_error: ErrorHandler,
    ) -> Channel: ...


class KafkaChannel:
    def __init__(
        self,
        name: str,
        consumer: AIOKafkaConsumer,
        topics: dict[str, ActivityType],
        on_event: EventHandler,
        on_error: ErrorHandler,
    ) -> None:
        self.name = name
        self._consumer = consumer
        self._topics = topics
        self._on_event = on_event
        self._on_error = on_error
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    async def start(self) -> None:
        try:
            await self._consumer.start()
        except KafkaError as exc:
            await self._consumer.stop()
            raise ChannelError(f"could not open channel {self.name}: {exc}") from exc
        self._task = asyncio.create_task(self._consume(), name=f"channel:{self.name}")
        logger.info("Live channel '%s' listening on %d topics", self.name, len(self._topics))

    async def _consume(self) -> None:
        try:
            async for msg in self._consumer:
                await self._handle(msg)
        except Exception as exc:
            if self._closed:
                return
            logger.warning("Live channel '%s' dropped: %s", self.name, exc)
            await self._on_error(ChannelError(str(exc) or type(exc).__name__))
            return

        if not self._closed:
            logger.warning("Live channel '%s' stopped consuming", self.name)
            await self._on_error(ChannelError(f"channel {self.name} stopped consuming"))

    async def _handle(self, msg) -> None:
        kind = self._topics.get(msg.topic)
        if kind is None:
            return
        if msg.value is None:
            # Tombstone, nothing was inserted
            return
        try:
            row = json.loads(msg.value.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Undecodable %s event on '%s': %s", kind.value, self.name, exc)
            return
        if not isinstance(row, dict):
            logger.warning("Malformed %s event on '%s': %r", kind.value, self.name, row)
            return
        try:
            await self._on_event(kind, row)
        except Exception as exc:
            logger.error("Live dispatch error on '%s' for %s: %s", self.name, row, exc)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        task = self._task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await self._consumer.stop()
        logger.info("Live channel '%s' closed", self.name)


class KafkaEventSource:
    def __init__(self, bootstrap_servers: Optional[str] = None) -> None:
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers

    async def open_channel(
        self,
        name: str,
        on_event: EventHandler,
        on_error: ErrorHandler,
    ) -> KafkaChannel:
        topics = source_topics()
        consumer = AIOKafkaConsumer(
            *topics,
            bootstrap_servers=self.bootstrap_servers,
            group_id=None,
            client_id=name,
            auto_offset_reset="latest",
            enable_auto_commit=False,
        )
        channel = KafkaChannel(name, consumer, topics, on_event, on_error)
        await channel.start()
        return channel
