from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from activity_feed.cache import MemoryQueryCache
from activity_feed.clients.aggregation_client import sort_feed
from activity_feed.clients.entity_gateway import (
    CommunityRecord,
    PostRecord,
    RestaurantRecord,
    UserRecord,
)
from activity_feed.errors import AggregationError, EntityNotFound, GatewayError
from activity_feed.pipeline import TransformPipeline
from activity_feed.schemas import ActivityItem, ActivityType, Privacy
from activity_feed.service import ActivityFeedService
from activity_feed.subscriptions import ReconnectPolicy, SubscriptionManager

BASE_TIME = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeGateway:
    """In-memory stand-in for the relational data service."""

    def __init__(self) -> None:
        self.users: dict[str, UserRecord] = {}
        self.restaurants: dict[str, RestaurantRecord] = {}
        self.communities: dict[str, CommunityRecord] = {}
        self.posts: dict[str, PostRecord] = {}
        self.broken: set[str] = set()
        self.calls: list[tuple[str, str]] = []

    def _get(self, table: str, rows: dict, row_id: str):
        self.calls.append((table, row_id))
        if row_id in self.broken:
            raise GatewayError(f"{table} lookup timed out")
        if row_id not in rows:
            raise EntityNotFound(table, row_id)
        return rows[row_id]

    async def get_user(self, user_id):
        return self._get("users", self.users, user_id)

    async def get_restaurant(self, restaurant_id):
        return self._get("restaurants", self.restaurants, restaurant_id)

    async def get_community(self, community_id):
        return self._get("communities", self.communities, community_id)

    async def get_post(self, post_id):
        return self._get("posts", self.posts, post_id)


class FakeBackend:
    """Aggregation RPC stand-in: orders, offsets and after-filters like the real one."""

    def __init__(self, items: Optional[list[ActivityItem]] = None) -> None:
        self.items = list(items or [])
        self.fail: Optional[str] = None
        self.calls: list[dict] = []

    async def fetch_page(self, viewer_id, filter, limit, offset=0, after=None):
        self.calls.append(
            {"viewer_id": viewer_id, "filter": filter, "limit": limit,
             "offset": offset, "after": after}
        )
        if self.fail:
            raise AggregationError(self.fail)
        items = sort_feed(self.items)
        if after is not None:
            return [i for i in items if i.created_at > after][:limit]
        return items[offset:offset + limit]


class FakeChannel:
    def __init__(self, name, on_event, on_error) -> None:
        self.name = name
        self.on_event = on_event
        self.on_error = on_error
        self.closed = False
        self.close_calls = 0

    async def emit(self, kind: ActivityType, raw: dict) -> None:
        if not self.closed:
            await self.on_event(kind, raw)

    async def drop(self, exc: Exception) -> None:
        await self.on_error(exc)

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True


class FakeEventSource:
    def __init__(self) -> None:
        self.channels: list[FakeChannel] = []
        self.failures_before_open = 0

    async def open_channel(self, name, on_event, on_error):
        if self.failures_before_open:
            self.failures_before_open -= 1
            raise ConnectionError("broker unavailable")
        channel = FakeChannel(name, on_event, on_error)
        self.channels.append(channel)
        return channel

    def open(self) -> list[FakeChannel]:
        return [c for c in self.channels if not c.closed]

    async def emit(self, kind: ActivityType, raw: dict) -> None:
        for channel in self.open():
            await channel.emit(kind, raw)


async def no_sleep(delay: float) -> None:
    return None


def make_item(
    activity_id: str,
    minutes_ago: int = 0,
    activity_type: ActivityType = ActivityType.SAVE,
    actor_id: str = "user-a",
) -> ActivityItem:
    return ActivityItem(
        activity_type=activity_type,
        activity_id=activity_id,
        actor_id=actor_id,
        actor_name="Ada",
        actor_username="ada",
        action="saved",
        target_name="Trattoria Roma",
        target_id="rest-1",
        target_type="restaurant",
        privacy=Privacy.PUBLIC,
        created_at=BASE_TIME - timedelta(minutes=minutes_ago),
        restaurant_id="rest-1",
    )


@pytest.fixture
def gateway() -> FakeGateway:
    gw = FakeGateway()
    gw.users["user-a"] = UserRecord(
        id="user-a", name="Ada", username="ada", avatar_url=None, is_verified=False
    )
    gw.users["user-b"] = UserRecord(
        id="user-b", name="Bo", username="bo", avatar_url="https://cdn/bo.png", is_verified=True
    )
    gw.restaurants["rest-1"] = RestaurantRecord(
        id="rest-1", name="Trattoria Roma", cuisine_types=["Italian"], location="Austin, TX"
    )
    gw.communities["comm-1"] = CommunityRecord(
        id="comm-1", name="Taco Lovers", description="All things tacos",
        cover_image_url="https://cdn/tacos.png", location="Austin, TX", type="public",
    )
    gw.communities["comm-secret"] = CommunityRecord(
        id="comm-secret", name="Inner Circle", type="private",
    )
    gw.posts["post-1"] = PostRecord(
        id="post-1", user_id="user-b", restaurant_id="rest-1",
        caption="Best carbonara in town", photos=["p1.jpg", "p2.jpg"],
        rating=4.5, privacy=Privacy.PUBLIC,
    )
    gw.posts["post-friends"] = PostRecord(
        id="post-friends", user_id="user-b", restaurant_id="rest-1",
        caption="Only for friends", rating=3.0, privacy=Privacy.FRIENDS,
    )
    return gw


@pytest.fixture
def pipeline(gateway) -> TransformPipeline:
    return TransformPipeline(gateway)


@pytest.fixture
def source() -> FakeEventSource:
    return FakeEventSource()


@pytest.fixture
def manager(source, pipeline) -> SubscriptionManager:
    return SubscriptionManager(
        source,
        pipeline,
        policy=ReconnectPolicy(max_attempts=2, base_delay=0.01),
        sleep=no_sleep,
    )


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def clock():
    now = [1000.0]

    def tick() -> float:
        return now[0]

    tick.now = now
    return tick


@pytest.fixture
def cache(clock) -> MemoryQueryCache:
    return MemoryQueryCache(ttl=120, clock=clock)


@pytest.fixture
def service(backend, cache, manager) -> ActivityFeedService:
    return ActivityFeedService(backend=backend, cache=cache, subscriptions=manager)
