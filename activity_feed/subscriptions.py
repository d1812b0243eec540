"""
Real-time subscription manager.

One live channel per viewer context key, multiplexed over all six
mutation sources. Each raw insert on the channel is run through the
transform pipeline; an emitted item reaches the subscriber's callback
exactly once.

Lifecycle per key:

    unsubscribed → subscribing → active → unsubscribed
                                   │  ▲
                      channel drop ▼  │ reopened
                                reconnecting ──(attempts exhausted)──► unsubscribed

Re-subscribing a key tears the previous subscription down first, so at
most one handle per key is ever live. Teardown is idempotent. Live pushes
are delivered in channel arrival order and never re-sorted.
"""
import asyncio
import inspect
import logging
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Iterable, Optional

from activity_feed.clients.event_source import Channel, EventSource
from activity_feed.config import settings
from activity_feed.pipeline import TransformPipeline
from activity_feed.schemas import ActivityItem, ActivityType, FeedFilter
from activity_feed.telemetry import ACTIVE_SUBSCRIPTIONS, REALTIME_RECONNECTS_TOTAL

logger = logging.getLogger(__name__)

OnNewItem = Callable[[ActivityItem], Any]
Teardown = Callable[[], Awaitable[None]]


def context_key(viewer_id: Optional[str], filter: FeedFilter = FeedFilter.ALL) -> str:
    return f"activity-feed-{viewer_id or 'global'}-{FeedFilter(filter).value}"


class SubscriptionState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class ReconnectPolicy:
    """Exponential backoff for reopening a dropped channel.
    max_attempts=0 means a dropped channel ends the subscription."""
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0

    def delay(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    @classmethod
    def from_settings(cls) -> "ReconnectPolicy":
        return cls(
            max_attempts=settings.realtime_reconnect_attempts,
            base_delay=settings.realtime_reconnect_base_delay,
            max_delay=settings.realtime_reconnect_max_delay,
        )


class Subscription:
    def __init__(
        self,
        key: str,
        on_new_item: OnNewItem,
        blocked_users: frozenset[str],
        manager: "SubscriptionManager",
    ) -> None:
        self.key = key
        self.on_new_item = on_new_item
        self.blocked_users = blocked_users
        self.state = SubscriptionState.UNSUBSCRIBED
        self.channel: Optional[Channel] = None
        self._manager = manager

    @property
    def live(self) -> bool:
        return self.state is not SubscriptionState.UNSUBSCRIBED

    async def teardown(self) -> None:
        await self._manager._teardown(self)

    def __repr__(self) -> str:
        return f"<Subscription {self.key} {self.state.value}>"


class SubscriptionManager:
    def __init__(
        self,
        source: EventSource,
        pipeline: TransformPipeline,
        policy: Optional[ReconnectPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._source = source
        self._pipeline = pipeline
        self._policy = policy or ReconnectPolicy.from_settings()
        self._sleep = sleep
        self._subscriptions: dict[str, Subscription] = {}
        self._reconnects: set[asyncio.Task] = set()

    def get(self, key: str) -> Optional[Subscription]:
        return self._subscriptions.get(key)

    def __len__(self) -> int:
        return len(self._subscriptions)

    async def subscribe(
        self,
        key: str,
        on_new_item: OnNewItem,
        blocked_users: Iterable[str] = (),
    ) -> Teardown:
        """
        Open a live channel for `key` and return its teardown coroutine
        function. A previous subscription under the same key is torn down
        first. Channel open errors propagate to the caller.
        """
        previous = self._subscriptions.get(key)
        if previous is not None:
            logger.info("Replacing live subscription '%s'", key)
            await self._teardown(previous)

        sub = Subscription(key, on_new_item, frozenset(blocked_users), self)
        sub.state = SubscriptionState.SUBSCRIBING
        self._subscriptions[key] = sub
        self._update_gauge()

        try:
            channel = await self._open(sub)
        except Exception:
            await self._teardown(sub)
            raise

        if not sub.live:
            # Replaced or torn down while the channel was opening
            await self._close_quietly(channel)
        else:
            sub.channel = channel
            sub.state = SubscriptionState.ACTIVE
            logger.info("Live subscription '%s' active", key)
        return sub.teardown

    async def unsubscribe(self, key: str) -> None:
        sub = self._subscriptions.get(key)
        if sub is not None:
            await self._teardown(sub)

    async def cleanup(self) -> None:
        """Tear down every subscription and abandon pending reconnects."""
        for sub in list(self._subscriptions.values()):
            await self._teardown(sub)
        for task in list(self._reconnects):
            task.cancel()
        for task in list(self._reconnects):
            with suppress(asyncio.CancelledError):
                await task

    # ── Internals ──────────────────────────────────────────────────────────

    async def _open(self, sub: Subscription) -> Channel:
        return await self._source.open_channel(
            sub.key,
            on_event=partial(self._dispatch, sub),
            on_error=partial(self._on_channel_error, sub),
        )

    async def _teardown(self, sub: Subscription) -> None:
        if not sub.live:
            return
        sub.state = SubscriptionState.UNSUBSCRIBED
        if self._subscriptions.get(sub.key) is sub:
            del self._subscriptions[sub.key]
        self._update_gauge()

        channel, sub.channel = sub.channel, None
        if channel is not None:
            await self._close_quietly(channel)
        logger.info("Live subscription '%s' torn down", sub.key)

    async def _dispatch(self, sub: Subscription, kind: ActivityType, raw: dict) -> None:
        if not sub.live:
            return
        # Pending / left memberships are not activity
        if kind is ActivityType.COMMUNITY_JOIN and raw.get("status") != "active":
            return

        result = await self._pipeline.transform(kind, raw)
        if not result.emitted or not sub.live:
            return
        if result.item.actor_id in sub.blocked_users:
            return

        delivered = sub.on_new_item(result.item)
        if inspect.isawaitable(delivered):
            await delivered

    async def _on_channel_error(self, sub: Subscription, exc: Exception) -> None:
        if not sub.live:
            return
        logger.warning("Live subscription '%s' lost its channel: %s", sub.key, exc)
        task = asyncio.create_task(self._reconnect(sub))
        self._reconnects.add(task)
        task.add_done_callback(self._reconnects.discard)

    async def _reconnect(self, sub: Subscription) -> None:
        sub.state = SubscriptionState.RECONNECTING
        channel, sub.channel = sub.channel, None
        if channel is not None:
            await self._close_quietly(channel)

        for attempt in range(1, self._policy.max_attempts + 1):
            await self._sleep(self._policy.delay(attempt))
            if not sub.live:
                return
            try:
                channel = await self._open(sub)
            except Exception as exc:
                REALTIME_RECONNECTS_TOTAL.labels(result="failed").inc()
                logger.warning(
                    "Reconnect %d/%d for '%s' failed: %s",
                    attempt, self._policy.max_attempts, sub.key, exc,
                )
                continue

            REALTIME_RECONNECTS_TOTAL.labels(result="ok").inc()
            if not sub.live:
                await self._close_quietly(channel)
                return
            sub.channel = channel
            sub.state = SubscriptionState.ACTIVE
            logger.info("Live subscription '%s' reconnected (attempt %d)", sub.key, attempt)
            return

        logger.error("Giving up on live subscription '%s'; caller must re-subscribe", sub.key)
        await self._teardown(sub)

    async def _close_quietly(self, channel: Channel) -> None:
        try:
            await channel.close()
        except Exception as exc:
            logger.warning("Error closing live channel '%s': %s", channel.name, exc)

    def _update_gauge(self) -> None:
        ACTIVE_SUBSCRIPTIONS.set(len(self._subscriptions))
