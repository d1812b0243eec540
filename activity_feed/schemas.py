"""
Pydantic schemas for the activity feed.

  ActivityItem   — the canonical, immutable feed record shared by the paged
                   query and the live stream (same shape as the backend RPC)
  *Row           — raw insert rows as delivered by the mutation sources
  Feed*          — request / response schemas for the API layer
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, Field


def as_utc(value: datetime) -> datetime:
    # Rows written without an offset are stored as UTC by the data service.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


# ──────────────────────────── Enums ───────────────────────────────────────

class ActivityType(str, Enum):
    POST = "post"
    SAVE = "save"
    FOLLOW = "follow"
    COMMUNITY_JOIN = "community_join"
    LIKE = "like"
    COMMENT = "comment"


class Privacy(str, Enum):
    PUBLIC = "public"
    FRIENDS = "friends"
    PRIVATE = "private"


class TargetType(str, Enum):
    RESTAURANT = "restaurant"
    USER = "user"
    COMMUNITY = "community"
    POST = "post"


class FeedFilter(str, Enum):
    ALL = "all"
    FRIENDS = "friends"


# ──────────────────────────── Activity item ───────────────────────────────

class UserRef(BaseModel):
    id: str
    display_name: Optional[str]
    handle: Optional[str]
    avatar: Optional[str] = None
    verified: bool = False

    class Config:
        frozen = True


class TargetRef(BaseModel):
    id: str
    name: Optional[str]
    type: TargetType

    class Config:
        frozen = True


class ActivityItem(BaseModel):
    """One user-visible feed event. Never mutated after construction."""
    activity_type: ActivityType
    activity_id: str

    actor_id: str
    actor_name: Optional[str] = None
    actor_username: Optional[str] = None
    actor_avatar: Optional[str] = None
    actor_is_verified: bool = False

    action: str
    target_name: Optional[str] = None
    target_id: Optional[str] = None
    target_type: Optional[TargetType] = None

    rating: Optional[float] = None
    content: Optional[str] = None
    photos: Optional[tuple[str, ...]] = None

    related_user_id: Optional[str] = None
    related_user_name: Optional[str] = None
    related_user_username: Optional[str] = None
    related_user_avatar: Optional[str] = None

    privacy: Privacy
    created_at: UtcDatetime

    # Denormalized display context
    restaurant_id: Optional[str] = None
    cuisine_types: Optional[tuple[str, ...]] = None
    restaurant_location: Optional[str] = None
    community_id: Optional[str] = None
    community_name: Optional[str] = None
    board_id: Optional[str] = None
    board_name: Optional[str] = None

    class Config:
        frozen = True

    @property
    def actor(self) -> UserRef:
        return UserRef(
            id=self.actor_id,
            display_name=self.actor_name,
            handle=self.actor_username,
            avatar=self.actor_avatar,
            verified=self.actor_is_verified,
        )

    @property
    def target(self) -> Optional[TargetRef]:
        if self.target_id is None or self.target_type is None:
            return None
        return TargetRef(id=self.target_id, name=self.target_name, type=self.target_type)

    @property
    def related_user(self) -> Optional[UserRef]:
        if self.related_user_id is None:
            return None
        return UserRef(
            id=self.related_user_id,
            display_name=self.related_user_name,
            handle=self.related_user_username,
            avatar=self.related_user_avatar,
        )

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.activity_type.value, self.activity_id)

    def populated_fields(self) -> set[str]:
        """Names of the optional fields that carry a value."""
        return {
            name for name in OPTIONAL_FIELDS
            if getattr(self, name) is not None
        }


_TARGET = {"target_name", "target_id", "target_type"}
_RELATED = {
    "related_user_id", "related_user_name",
    "related_user_username", "related_user_avatar",
}
_RESTAURANT = {"restaurant_id", "cuisine_types", "restaurant_location"}

OPTIONAL_FIELDS = frozenset(
    _TARGET | _RELATED | _RESTAURANT | {
        "actor_avatar", "rating", "content", "photos",
        "community_id", "community_name", "board_id", "board_name",
    }
)

# Optional fields each activity type may populate; everything else is None.
ACTIVITY_FIELDS: dict[ActivityType, frozenset[str]] = {
    ActivityType.POST: frozenset(
        _TARGET | _RESTAURANT | {"actor_avatar", "rating", "content", "photos"}
    ),
    ActivityType.SAVE: frozenset(
        _TARGET | _RESTAURANT
        | {"actor_avatar", "rating", "content", "photos", "board_id", "board_name"}
    ),
    ActivityType.FOLLOW: frozenset(_TARGET | _RELATED | {"actor_avatar"}),
    ActivityType.COMMUNITY_JOIN: frozenset(
        _TARGET | {
            "actor_avatar", "content", "photos", "restaurant_location",
            "community_id", "community_name",
        }
    ),
    ActivityType.LIKE: frozenset(
        _TARGET | _RELATED | _RESTAURANT
        | {"actor_avatar", "rating", "content", "photos"}
    ),
    ActivityType.COMMENT: frozenset(
        _TARGET | _RELATED | _RESTAURANT
        | {"actor_avatar", "rating", "content", "photos"}
    ),
}


# ──────────────────────────── Raw source rows ─────────────────────────────
# Extra columns on the inserted row are ignored.

class PostRow(BaseModel):
    id: str
    user_id: str
    restaurant_id: str
    rating: Optional[float] = None
    caption: Optional[str] = None
    photos: Optional[list[str]] = None
    privacy: Privacy = Privacy.PUBLIC
    created_at: UtcDatetime


class SaveRow(BaseModel):
    id: str
    user_id: str
    restaurant_id: str
    personal_rating: Optional[float] = None
    notes: Optional[str] = None
    photos: Optional[list[str]] = None
    privacy: Privacy = Privacy.PUBLIC
    created_at: UtcDatetime


class FollowRow(BaseModel):
    id: str
    follower_id: str
    following_id: str
    created_at: UtcDatetime


class CommunityMemberRow(BaseModel):
    id: str
    user_id: str
    community_id: str
    status: str = "active"
    joined_at: UtcDatetime


class LikeRow(BaseModel):
    id: str
    user_id: str
    post_id: str
    created_at: UtcDatetime


class CommentRow(BaseModel):
    id: str
    user_id: str
    post_id: str
    content: Optional[str] = None
    created_at: UtcDatetime


# ──────────────────────────── Feed API ────────────────────────────────────

class FeedPage(BaseModel):
    """Result of a paged read. An empty page with `error` set means retry."""
    data: list[ActivityItem] = Field(default_factory=list)
    error: Optional[str] = None


class FeedResponse(BaseModel):
    viewer_id: Optional[str]
    filter: FeedFilter
    activities: list[ActivityItem]
    error: Optional[str] = None
