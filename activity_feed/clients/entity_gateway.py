"""
Entity lookup gateway — single-row reads against the relational data service.

The data service speaks PostgREST:
  GET /{table}?id=eq.{id}&select=col1,col2
  Accept: application/vnd.pgrst.object+json   → one object, or 406 if no row

Only the columns the transform pipeline needs are selected. A missing row
raises EntityNotFound; anything else (timeouts, 5xx, malformed JSON) raises
GatewayError so the caller can tell "dropped by design" from "transport".
"""
import logging
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel, ValidationError

from activity_feed.config import settings
from activity_feed.errors import EntityNotFound, GatewayError
from activity_feed.schemas import Privacy

logger = logging.getLogger(__name__)


# ──────────────────────────── Records ─────────────────────────────────────

class UserRecord(BaseModel):
    id: str
    name: Optional[str] = None
    username: Optional[str] = None
    avatar_url: Optional[str] = None
    is_verified: bool = False


class RestaurantRecord(BaseModel):
    id: str
    name: str
    cuisine_types: Optional[list[str]] = None
    location: Optional[str] = None


class CommunityRecord(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    location: Optional[str] = None
    type: str = "public"


class PostRecord(BaseModel):
    id: str
    user_id: str
    restaurant_id: str
    caption: Optional[str] = None
    photos: Optional[list[str]] = None
    rating: Optional[float] = None
    privacy: Privacy = Privacy.PUBLIC


class EntityGateway(Protocol):
    async def get_user(self, user_id: str) -> UserRecord: ...

    async def get_restaurant(self, restaurant_id: str) -> RestaurantRecord: ...

    async def get_community(self, community_id: str) -> CommunityRecord: ...

    async def get_post(self, post_id: str) -> PostRecord: ...


# ──────────────────────────── HTTP adapter ────────────────────────────────

_SINGLE_OBJECT = "application/vnd.pgrst.object+json"

_USER_COLUMNS = "id,name,username,avatar_url,is_verified"
_RESTAURANT_COLUMNS = "id,name,cuisine_types,location"
_COMMUNITY_COLUMNS = "id,name,description,cover_image_url,location,type"
_POST_COLUMNS = "id,user_id,restaurant_id,caption,photos,rating,privacy"


class HttpEntityGateway:
    def __init__(
        self,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url or settings.data_service_url
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        headers = {"Accept": _SINGLE_OBJECT}
        if settings.data_service_api_key:
            headers["apikey"] = settings.data_service_api_key
            headers["Authorization"] = f"Bearer {settings.data_service_api_key}"
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=settings.data_service_timeout,
            transport=self._transport,
        )

    async def stop(self) -> None:
        if self._http:
            await self._http.aclose()

    async def get_user(self, user_id: str) -> UserRecord:
        return await self._fetch_one("users", user_id, _USER_COLUMNS, UserRecord)

    async def get_restaurant(self, restaurant_id: str) -> RestaurantRecord:
        return await self._fetch_one(
            "restaurants", restaurant_id, _RESTAURANT_COLUMNS, RestaurantRecord
        )

    async def get_community(self, community_id: str) -> CommunityRecord:
        return await self._fetch_one(
            "communities", community_id, _COMMUNITY_COLUMNS, CommunityRecord
        )

    async def get_post(self, post_id: str) -> PostRecord:
        return await self._fetch_one("posts", post_id, _POST_COLUMNS, PostRecord)

    async def _fetch_one(self, table: str, row_id: str, columns: str, model):
        if self._http is None:
            raise RuntimeError("Entity gateway not started — call start() at startup")
        try:
            resp = await self._http.get(
                f"/{table}", params={"id": f"eq.{row_id}", "select": columns}
            )
        except httpx.HTTPError as exc:
            raise GatewayError(f"{table} lookup failed: {exc}") from exc

        # PostgREST answers 406 when a single object was requested but no row matched
        if resp.status_code in (404, 406):
            raise EntityNotFound(table, row_id)
        try:
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPStatusError, ValueError) as exc:
            raise GatewayError(f"{table} lookup failed: {exc}") from exc
        if not payload:
            raise EntityNotFound(table, row_id)

        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Unexpected %s row shape for id=%s: %s", table, row_id, exc)
            raise GatewayError(f"malformed {table} row") from exc
