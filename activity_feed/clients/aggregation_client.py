"""
Feed aggregation client — the single server-side RPC that merges all six
activity sources for a viewer.

  POST {data_service_url}/rpc/get_activity_feed
  Body: { p_user_id, p_filter, p_limit, p_offset, p_after_timestamp }

The backend applies the 'friends' policy and the privacy rules; this client
only forwards the parameters, validates the rows and normalises ordering
(created_at desc, activity_id desc as tie-breaker) so pagination stays
deterministic. Any failure raises AggregationError.
"""
import logging
from datetime import datetime
from typing import Iterable, Optional, Protocol

import httpx
from pydantic import TypeAdapter, ValidationError

from activity_feed.config import settings
from activity_feed.errors import AggregationError
from activity_feed.schemas import ActivityItem, FeedFilter

logger = logging.getLogger(__name__)

_ROWS = TypeAdapter(list[ActivityItem])


def sort_feed(items: Iterable[ActivityItem]) -> list[ActivityItem]:
    """Newest first; equal timestamps ordered by activity_id, descending."""
    return sorted(items, key=lambda i: (i.created_at, i.activity_id), reverse=True)


class FeedBackend(Protocol):
    async def fetch_page(
        self,
        viewer_id: Optional[str],
        filter: FeedFilter,
        limit: int,
        offset: int = 0,
        after: Optional[datetime] = None,
    ) -> list[ActivityItem]: ...


class AggregationClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url or settings.data_service_url
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        headers = {}
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

    async def fetch_page(
        self,
        viewer_id: Optional[str],
        filter: FeedFilter,
        limit: int,
        offset: int = 0,
        after: Optional[datetime] = None,
    ) -> list[ActivityItem]:
        """
        Fetch one ordered page. With `after`, only items strictly newer than
        it are returned and `offset` is ignored (gap filling must not skip
        rows that arrived while the viewer was paging).
        """
        if self._http is None:
            raise RuntimeError("Aggregation client not started — call start() at startup")

        payload = {
            "p_user_id": viewer_id,
            "p_filter": FeedFilter(filter).value,
            "p_limit": limit,
            "p_offset": 0 if after is not None else offset,
            "p_after_timestamp": after.isoformat() if after is not None else None,
        }
        try:
            resp = await self._http.post("/rpc/get_activity_feed", json=payload)
            resp.raise_for_status()
            items = _ROWS.validate_python(resp.json() or [])
        except (httpx.HTTPError, ValueError, ValidationError) as exc:
            logger.warning(
                "Activity feed RPC failed (viewer=%s, filter=%s): %s",
                viewer_id, payload["p_filter"], exc,
            )
            raise AggregationError(str(exc) or "Failed to fetch activity feed") from exc

        if after is not None:
            items = [i for i in items if i.created_at > after]
        return sort_feed(items)
