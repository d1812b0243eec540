import httpx
import pytest

from activity_feed.clients.entity_gateway import HttpEntityGateway
from activity_feed.errors import EntityNotFound, GatewayError
from activity_feed.schemas import Privacy


def gateway_for(handler) -> HttpEntityGateway:
    return HttpEntityGateway("http://data", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_single_row_lookup():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={
            "id": "post-1", "user_id": "user-b", "restaurant_id": "rest-1",
            "caption": "Nice", "photos": ["p.jpg"], "rating": 4, "privacy": "friends",
        })

    gw = gateway_for(handler)
    await gw.start()
    try:
        post = await gw.get_post("post-1")
    finally:
        await gw.stop()

    assert post.privacy is Privacy.FRIENDS
    assert post.rating == 4.0
    request = seen[0]
    assert request.url.path == "/posts"
    assert request.url.params["id"] == "eq.post-1"
    assert "privacy" in request.url.params["select"]
    assert request.headers["accept"] == "application/vnd.pgrst.object+json"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [404, 406])
async def test_missing_row_is_not_found(status):
    gw = gateway_for(lambda request: httpx.Response(status, json={"message": "no rows"}))
    await gw.start()
    try:
        with pytest.raises(EntityNotFound) as info:
            await gw.get_user("user-x")
    finally:
        await gw.stop()

    assert info.value.entity == "users"
    assert info.value.entity_id == "user-x"


@pytest.mark.asyncio
async def test_server_error_is_a_gateway_error_not_a_miss():
    gw = gateway_for(lambda request: httpx.Response(500, text="boom"))
    await gw.start()
    try:
        with pytest.raises(GatewayError) as info:
            await gw.get_restaurant("rest-1")
    finally:
        await gw.stop()

    assert not isinstance(info.value, EntityNotFound)


@pytest.mark.asyncio
async def test_timeout_is_a_gateway_error():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    gw = gateway_for(handler)
    await gw.start()
    try:
        with pytest.raises(GatewayError):
            await gw.get_community("comm-1")
    finally:
        await gw.stop()


@pytest.mark.asyncio
async def test_unexpected_row_shape_is_a_gateway_error():
    gw = gateway_for(lambda request: httpx.Response(200, json={"id": "rest-1"}))
    await gw.start()
    try:
        with pytest.raises(GatewayError):
            await gw.get_restaurant("rest-1")
    finally:
        await gw.stop()
