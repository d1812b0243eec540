"""
Activity feed endpoints.

  GET  /feed/             one cached page (viewer, filter, limit, offset, after, blocked)
  GET  /feed/new          uncached gap fill since `after`
  POST /feed/cache/clear  drop every cached page (logout / context switch)
  WS   /feed/live         live pushes for one viewer context

A backend failure on GET /feed/ is not an HTTP error: the response carries
an empty `activities` list and a non-null `error`, which clients treat as
"retry available". An empty list with no error means no activity yet.
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from fastapi.requests import HTTPConnection

from activity_feed.config import settings
from activity_feed.errors import ChannelError
from activity_feed.schemas import ActivityItem, FeedFilter, FeedResponse
from activity_feed.service import ActivityFeedService

logger = logging.getLogger(__name__)
router = APIRouter()


def get_feed_service(conn: HTTPConnection) -> ActivityFeedService:
    """FastAPI dependency — the service instance built at startup."""
    return conn.app.state.feed_service


@router.get("/", response_model=FeedResponse)
async def get_feed(
    viewer_id: Optional[str] = Query(None, description="Requesting user; omit for anonymous"),
    filter: FeedFilter = Query(FeedFilter.ALL),
    limit: int = Query(settings.feed_page_size, ge=1, le=100),
    offset: int = Query(0, ge=0),
    after: Optional[datetime] = Query(None, description="Only items strictly newer than this"),
    blocked: list[str] = Query([], description="Actors hidden from this viewer"),
    service: ActivityFeedService = Depends(get_feed_service),
):
    page = await service.get_activity_feed(
        viewer_id, filter, limit=limit, offset=offset, after=after, blocked_users=blocked
    )
    return FeedResponse(
        viewer_id=viewer_id,
        filter=filter,
        activities=page.data,
        error=page.error,
    )


@router.get("/new", response_model=list[ActivityItem])
async def get_new_activities(
    after: datetime = Query(...),
    viewer_id: Optional[str] = Query(None),
    filter: FeedFilter = Query(FeedFilter.ALL),
    blocked: list[str] = Query([]),
    service: ActivityFeedService = Depends(get_feed_service),
):
    return await service.get_new_activities(viewer_id, after, filter, blocked_users=blocked)


@router.post("/cache/clear", status_code=204)
async def clear_cache(service: ActivityFeedService = Depends(get_feed_service)):
    await service.clear_cache()


@router.websocket("/live")
async def live_feed(
    websocket: WebSocket,
    viewer_id: Optional[str] = Query(None),
    filter: FeedFilter = Query(FeedFilter.ALL),
    blocked: list[str] = Query([]),
    service: ActivityFeedService = Depends(get_feed_service),
):
    await websocket.accept()

    async def push(item: ActivityItem) -> None:
        await websocket.send_json(item.model_dump(mode="json"))

    try:
        teardown = await service.subscribe_to_activity_feed(
            viewer_id, push, filter=filter, blocked_users=blocked
        )
    except ChannelError as exc:
        logger.warning("Live feed unavailable for %s: %s", viewer_id or "anon", exc)
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    try:
        # Client frames are ignored; the loop only waits for the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await teardown()
