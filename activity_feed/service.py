"""
Activity feed service — the public surface consumed by the API layer.

  get_activity_feed          cache → aggregation RPC → cache
  get_new_activities         uncached gap fill since a timestamp
  subscribe_to_activity_feed live channel for one viewer context
  clear_cache / cleanup      logout and shutdown

One instance is built at startup and owns its cache and subscription
manager; routes receive it through a FastAPI dependency.
"""
import logging
import time
from datetime import datetime
from typing import Iterable, Optional

from opentelemetry import trace

from activity_feed.cache import FeedQueryKey, QueryCache
from activity_feed.clients.aggregation_client import FeedBackend, sort_feed
from activity_feed.config import settings
from activity_feed.errors import AggregationError
from activity_feed.schemas import ActivityItem, FeedFilter, FeedPage, as_utc
from activity_feed.subscriptions import (
    OnNewItem,
    SubscriptionManager,
    Teardown,
    context_key,
)
from activity_feed.telemetry import (
    FEED_BACKEND_ERRORS_TOTAL,
    FEED_CACHE_LOOKUPS,
    FEED_LATENCY,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def filter_blocked(items: Iterable[ActivityItem], blocked: Iterable[str]) -> list[ActivityItem]:
    """Drop items whose actor the viewer has blocked."""
    blocked = set(blocked)
    return [item for item in items if item.actor_id not in blocked]


class ActivityFeedService:
    def __init__(
        self,
        backend: FeedBackend,
        cache: QueryCache,
        subscriptions: SubscriptionManager,
    ) -> None:
        self.backend = backend
        self.cache = cache
        self.subscriptions = subscriptions

    async def get_activity_feed(
        self,
        viewer_id: Optional[str],
        filter: FeedFilter = FeedFilter.ALL,
        limit: Optional[int] = None,
        offset: int = 0,
        after: Optional[datetime] = None,
        blocked_users: Iterable[str] = (),
    ) -> FeedPage:
        """
        One page of the feed, newest first. Never raises: a backend failure
        comes back as an empty page with `error` set, which callers must not
        read as "no more data".

        Blocked actors are removed after the cache, so cached pages stay the
        same for every viewer sharing a key.
        """
        filter = FeedFilter(filter)
        limit = limit or settings.feed_page_size
        start_time = time.perf_counter()

        with tracer.start_as_current_span("get_activity_feed") as span:
            span.set_attribute("feed.viewer", viewer_id or "anon")
            span.set_attribute("feed.filter", filter.value)
            span.set_attribute("feed.offset", offset)

            if after is not None:
                # Gap fills are keyed by time, not offset; never cache them
                page = await self._fetch(viewer_id, filter, limit, offset, as_utc(after))
            else:
                page = await self._cached_page(viewer_id, filter, limit, offset, span)

            if blocked_users:
                page = FeedPage(data=filter_blocked(page.data, blocked_users), error=page.error)
            span.set_attribute("feed.items_returned", len(page.data))

        FEED_LATENCY.observe(time.perf_counter() - start_time)
        return page

    async def get_new_activities(
        self,
        viewer_id: Optional[str],
        after: datetime,
        filter: FeedFilter = FeedFilter.ALL,
        blocked_users: Iterable[str] = (),
    ) -> list[ActivityItem]:
        """Activities strictly newer than `after`; empty on failure."""
        page = await self.get_activity_feed(
            viewer_id,
            filter,
            limit=settings.feed_new_activities_limit,
            after=after,
            blocked_users=blocked_users,
        )
        if page.error:
            logger.error("Error fetching new activities for %s: %s", viewer_id or "anon", page.error)
        return page.data

    async def subscribe_to_activity_feed(
        self,
        viewer_id: Optional[str],
        on_new_item: OnNewItem,
        filter: FeedFilter = FeedFilter.ALL,
        blocked_users: Iterable[str] = (),
    ) -> Teardown:
        return await self.subscriptions.subscribe(
            context_key(viewer_id, filter), on_new_item, blocked_users=blocked_users
        )

    async def clear_cache(self) -> None:
        await self.cache.clear()

    async def cleanup(self) -> None:
        await self.subscriptions.cleanup()
        await self.cache.clear()

    # ── Internals ──────────────────────────────────────────────────────────

    async def _cached_page(self, viewer_id, filter, limit, offset, span) -> FeedPage:
        key = FeedQueryKey(viewer_id, filter, offset)
        cached = await self.cache.get(key)
        if cached is not None:
            FEED_CACHE_LOOKUPS.labels(result="hit").inc()
            span.set_attribute("feed.cache", "hit")
            return FeedPage(data=sort_feed(cached)[:limit])

        FEED_CACHE_LOOKUPS.labels(result="miss").inc()
        span.set_attribute("feed.cache", "miss")
        page = await self._fetch(viewer_id, filter, limit, offset, None)
        if page.error is None:
            await self.cache.put(key, page.data)
        return page

    async def _fetch(self, viewer_id, filter, limit, offset, after) -> FeedPage:
        try:
            items = await self.backend.fetch_page(viewer_id, filter, limit, offset, after)
        except AggregationError as exc:
            FEED_BACKEND_ERRORS_TOTAL.inc()
            return FeedPage(data=[], error=str(exc) or "Failed to fetch activity feed")
        except Exception as exc:
            FEED_BACKEND_ERRORS_TOTAL.inc()
            logger.exception("Error in get_activity_feed for %s", viewer_id or "anon")
            return FeedPage(data=[], error=str(exc) or "Failed to fetch activity feed")
        return FeedPage(data=items)
