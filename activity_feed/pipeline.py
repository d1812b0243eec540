"""
Event transform pipeline — raw insert row → ActivityItem (or a tagged drop).

Each source kind has one EventTransform subclass declaring:
  • the raw row model it accepts
  • its privacy / visibility gate
  • which entity lookups it needs, and which of them depend on each other

The base class owns everything shared: row validation, classification of
lookup failures, logging, metrics and tracing. Nothing raised by a lookup
escapes transform(); a single bad foreign key must never break the live
stream for the events around it.

Outcomes:
  emitted       — item produced
  filtered      — dropped by privacy / visibility policy
  not_found     — a required row does not exist
  lookup_error  — a required lookup failed in transport
  malformed     — the raw row is missing required columns
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, ValidationError

from activity_feed.clients.entity_gateway import (
    EntityGateway,
    PostRecord,
    RestaurantRecord,
    UserRecord,
)
from activity_feed.errors import EntityNotFound, GatewayError
from activity_feed.schemas import (
    ActivityItem,
    ActivityType,
    CommentRow,
    CommunityMemberRow,
    FollowRow,
    LikeRow,
    PostRow,
    Privacy,
    SaveRow,
    TargetType,
)
from activity_feed.telemetry import ACTIVITY_TRANSFORM_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class Outcome(str, Enum):
    EMITTED = "emitted"
    FILTERED = "filtered"
    NOT_FOUND = "not_found"
    LOOKUP_ERROR = "lookup_error"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class TransformResult:
    kind: ActivityType
    outcome: Outcome
    item: Optional[ActivityItem] = None
    reason: Optional[str] = None

    @property
    def emitted(self) -> bool:
        return self.outcome is Outcome.EMITTED


class Filtered(Exception):
    """Raised inside build() when policy says the event must not be shown."""


# ─────────────────────────── Field helpers ────────────────────────────────

async def _lookup_all(*lookups):
    """Await independent lookups together; re-raise the first failure."""
    results = await asyncio.gather(*lookups, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results


def _tuple(values: Optional[list[str]]) -> Optional[tuple[str, ...]]:
    return tuple(values) if values is not None else None


def _actor(user: UserRecord) -> dict[str, Any]:
    return {
        "actor_id": user.id,
        "actor_name": user.name,
        "actor_username": user.username,
        "actor_avatar": user.avatar_url,
        "actor_is_verified": user.is_verified,
    }


def _related_user(user: UserRecord) -> dict[str, Any]:
    return {
        "related_user_id": user.id,
        "related_user_name": user.name,
        "related_user_username": user.username,
        "related_user_avatar": user.avatar_url,
    }


def _restaurant_context(restaurant: RestaurantRecord) -> dict[str, Any]:
    return {
        "restaurant_id": restaurant.id,
        "cuisine_types": _tuple(restaurant.cuisine_types),
        "restaurant_location": restaurant.location,
    }


def _require_public(privacy: Privacy, what: str) -> None:
    if privacy is not Privacy.PUBLIC:
        raise Filtered(f"{what} privacy is {privacy.value}")


# ─────────────────────────── Transforms ───────────────────────────────────

class EventTransform:
    kind: ActivityType
    row_model: type[BaseModel]
    action: str

    async def build(self, row, gateway: EntityGateway) -> ActivityItem:
        raise NotImplementedError

    async def run(self, raw: dict, gateway: EntityGateway) -> TransformResult:
        try:
            row = self.row_model.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Malformed %s row dropped: %s", self.kind.value, exc)
            return self._result(Outcome.MALFORMED, reason=str(exc))

        try:
            item = await self.build(row, gateway)
        except Filtered as exc:
            logger.debug("%s %s filtered: %s", self.kind.value, row.id, exc)
            return self._result(Outcome.FILTERED, reason=str(exc))
        except EntityNotFound as exc:
            logger.info("%s %s dropped: %s", self.kind.value, row.id, exc)
            return self._result(Outcome.NOT_FOUND, reason=str(exc))
        except GatewayError as exc:
            logger.warning("%s %s dropped, lookup failed: %s", self.kind.value, row.id, exc)
            return self._result(Outcome.LOOKUP_ERROR, reason=str(exc))
        except Exception as exc:
            logger.exception("Error transforming %s %s", self.kind.value, row.id)
            return self._result(Outcome.LOOKUP_ERROR, reason=str(exc))

        return self._result(Outcome.EMITTED, item=item)

    def _result(self, outcome: Outcome, **kwargs) -> TransformResult:
        return TransformResult(kind=self.kind, outcome=outcome, **kwargs)


class PostTransform(EventTransform):
    kind = ActivityType.POST
    row_model = PostRow
    action = "created a review"

    async def build(self, row: PostRow, gateway: EntityGateway) -> ActivityItem:
        _require_public(row.privacy, "post")
        actor, restaurant = await _lookup_all(
            gateway.get_user(row.user_id),
            gateway.get_restaurant(row.restaurant_id),
        )
        return ActivityItem(
            activity_type=self.kind,
            activity_id=row.id,
            **_actor(actor),
            action=self.action,
            target_name=restaurant.name,
            target_id=row.restaurant_id,
            target_type=TargetType.RESTAURANT,
            rating=row.rating,
            content=row.caption,
            photos=_tuple(row.photos),
            privacy=row.privacy,
            created_at=row.created_at,
            **_restaurant_context(restaurant),
        )


class SaveTransform(EventTransform):
    kind = ActivityType.SAVE
    row_model = SaveRow
    action = "saved"

    async def build(self, row: SaveRow, gateway: EntityGateway) -> ActivityItem:
        _require_public(row.privacy, "save")
        actor, restaurant = await _lookup_all(
            gateway.get_user(row.user_id),
            gateway.get_restaurant(row.restaurant_id),
        )
        return ActivityItem(
            activity_type=self.kind,
            activity_id=row.id,
            **_actor(actor),
            action=self.action,
            target_name=restaurant.name,
            target_id=row.restaurant_id,
            target_type=TargetType.RESTAURANT,
            rating=row.personal_rating,
            content=row.notes,
            photos=_tuple(row.photos),
            privacy=row.privacy,
            created_at=row.created_at,
            **_restaurant_context(restaurant),
        )


class FollowTransform(EventTransform):
    kind = ActivityType.FOLLOW
    row_model = FollowRow
    action = "started following"

    async def build(self, row: FollowRow, gateway: EntityGateway) -> ActivityItem:
        follower, followed = await _lookup_all(
            gateway.get_user(row.follower_id),
            gateway.get_user(row.following_id),
        )
        # Follows carry no privacy of their own
        return ActivityItem(
            activity_type=self.kind,
            activity_id=row.id,
            **_actor(follower),
            action=self.action,
            target_name=followed.name,
            target_id=row.following_id,
            target_type=TargetType.USER,
            **_related_user(followed),
            privacy=Privacy.PUBLIC,
            created_at=row.created_at,
        )


class CommunityJoinTransform(EventTransform):
    kind = ActivityType.COMMUNITY_JOIN
    row_model = CommunityMemberRow
    action = "joined community"

    async def build(self, row: CommunityMemberRow, gateway: EntityGateway) -> ActivityItem:
        actor, community = await _lookup_all(
            gateway.get_user(row.user_id),
            gateway.get_community(row.community_id),
        )
        if community.type != "public":
            raise Filtered(f"community visibility is {community.type}")
        return ActivityItem(
            activity_type=self.kind,
            activity_id=row.id,
            **_actor(actor),
            action=self.action,
            target_name=community.name,
            target_id=row.community_id,
            target_type=TargetType.COMMUNITY,
            content=community.description,
            photos=(community.cover_image_url,) if community.cover_image_url else None,
            privacy=Privacy.PUBLIC,
            created_at=row.joined_at,
            restaurant_location=community.location,
            community_id=row.community_id,
            community_name=community.name,
        )


class PostEngagementTransform(EventTransform):
    """Likes and comments: enrich through the parent post (two hops)."""

    async def build(self, row, gateway: EntityGateway) -> ActivityItem:
        post: PostRecord = await gateway.get_post(row.post_id)
        _require_public(post.privacy, "parent post")

        actor, author, restaurant = await _lookup_all(
            gateway.get_user(row.user_id),
            gateway.get_user(post.user_id),
            gateway.get_restaurant(post.restaurant_id),
        )
        return ActivityItem(
            activity_type=self.kind,
            activity_id=row.id,
            **_actor(actor),
            action=self.action,
            target_name=restaurant.name,
            target_id=row.post_id,
            target_type=TargetType.POST,
            rating=post.rating,
            content=self.content(row, post),
            photos=_tuple(post.photos),
            **_related_user(author),
            privacy=post.privacy,
            created_at=row.created_at,
            **_restaurant_context(restaurant),
        )

    def content(self, row, post: PostRecord) -> Optional[str]:
        return post.caption


class LikeTransform(PostEngagementTransform):
    kind = ActivityType.LIKE
    row_model = LikeRow
    action = "liked a review"


class CommentTransform(PostEngagementTransform):
    kind = ActivityType.COMMENT
    row_model = CommentRow
    action = "commented on"

    def content(self, row: CommentRow, post: PostRecord) -> Optional[str]:
        return row.content


TRANSFORMS: dict[ActivityType, EventTransform] = {
    t.kind: t
    for t in (
        PostTransform(),
        SaveTransform(),
        FollowTransform(),
        CommunityJoinTransform(),
        LikeTransform(),
        CommentTransform(),
    )
}


class TransformPipeline:
    def __init__(self, gateway: EntityGateway) -> None:
        self.gateway = gateway

    async def transform(self, kind: ActivityType | str, raw: dict) -> TransformResult:
        """Run one raw insert row through its kind's transform. Never raises
        for lookup or row problems; an unknown kind is a ValueError."""
        kind = ActivityType(kind)
        with tracer.start_as_current_span("transform") as span:
            span.set_attribute("activity.kind", kind.value)
            result = await TRANSFORMS[kind].run(raw, self.gateway)
            span.set_attribute("activity.outcome", result.outcome.value)

        ACTIVITY_TRANSFORM_TOTAL.labels(kind=kind.value, outcome=result.outcome.value).inc()
        return result
