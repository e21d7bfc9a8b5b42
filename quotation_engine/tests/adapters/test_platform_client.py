import json
import pytest
import httpx

from quotation_engine.adapters.platform_client import PlatformClient

BASE_URL = "http://platform.example.com/api"


@pytest.fixture
def client() -> PlatformClient:
    return PlatformClient(base_url=BASE_URL + "/", token="svc-token", timeout=1.0, frontend_link="https://app.example.com/")


@pytest.mark.asyncio
async def test_has_capability_granted(httpx_mock, client: PlatformClient):
    httpx_mock.add_response(
        url=f"{BASE_URL}/users/u1/capabilities/approve_rfq", method="GET", json={"granted": True},
    )

    assert await client.has_capability("u1", "approve_rfq") is True

    request = httpx_mock.get_request()
    assert request.headers.get("Authorization") == "Bearer svc-token"


@pytest.mark.asyncio
async def test_has_capability_unknown_user_is_false(httpx_mock, client: PlatformClient):
    httpx_mock.add_response(url=f"{BASE_URL}/users/ghost/capabilities/admin", method="GET", status_code=404)

    assert await client.has_capability("ghost", "admin") is False


@pytest.mark.asyncio
async def test_has_capability_server_error_raises(httpx_mock, client: PlatformClient):
    httpx_mock.add_response(url=f"{BASE_URL}/users/u1/capabilities/admin", method="GET", status_code=500)

    with pytest.raises(httpx.HTTPStatusError):
        await client.has_capability("u1", "admin")


@pytest.mark.asyncio
async def test_get_user(httpx_mock, client: PlatformClient):
    httpx_mock.add_response(
        url=f"{BASE_URL}/users/u1", method="GET",
        json={"id": 17, "fullName": "Budi Santoso", "email": "budi@example.com"},
    )

    user = await client.get_user("u1")

    assert (user.id, user.fullName, user.email) == ("17", "Budi Santoso", "budi@example.com")


@pytest.mark.asyncio
async def test_get_user_not_found(httpx_mock, client: PlatformClient):
    httpx_mock.add_response(url=f"{BASE_URL}/users/ghost", method="GET", status_code=404)

    assert await client.get_user("ghost") is None


@pytest.mark.asyncio
async def test_notify_posts_absolute_link(httpx_mock, client: PlatformClient):
    def response_callback(request: httpx.Request):
        body = json.loads(request.content.decode())
        assert body == {
            "userId": "u2",
            "title": "New RFQ Request",
            "description": "RFQ 1/RFQ/STM/I/2025 awaits approval",
            "link": "https://app.example.com/quotations",
        }
        return httpx.Response(201, json={"id": 1})

    httpx_mock.add_callback(response_callback, url=f"{BASE_URL}/notifications", method="POST")

    await client.notify("u2", "New RFQ Request", "RFQ 1/RFQ/STM/I/2025 awaits approval", "/quotations")


@pytest.mark.asyncio
async def test_notify_failure_raises(httpx_mock, client: PlatformClient):
    httpx_mock.add_response(url=f"{BASE_URL}/notifications", method="POST", status_code=503, text="unavailable")

    with pytest.raises(httpx.HTTPStatusError):
        await client.notify("u2", "t", "d", "/quotations")


@pytest.mark.asyncio
async def test_delete_images(httpx_mock, client: PlatformClient):
    httpx_mock.add_response(url=f"{BASE_URL}/notes-images/bulk-delete", method="POST", json={"deletedCount": 2})

    assert await client.delete_images(["img-1", "img-2"]) == 2
    assert json.loads(httpx_mock.get_request().content) == {"ids": ["img-1", "img-2"]}


@pytest.mark.asyncio
async def test_delete_no_images_skips_the_call(client: PlatformClient):
    assert await client.delete_images([]) == 0


@pytest.mark.asyncio
async def test_network_error_propagates(httpx_mock, client: PlatformClient):
    httpx_mock.add_exception(httpx.ConnectError("connection refused"))

    with pytest.raises(httpx.ConnectError):
        await client.get_user("u1")


@pytest.mark.asyncio
async def test_no_token_sends_no_auth_header(httpx_mock):
    httpx_mock.add_response(url=f"{BASE_URL}/users/u1", method="GET", json={"fullName": "Ani"})
    client = PlatformClient(base_url=BASE_URL, token="", frontend_link="")

    user = await client.get_user("u1")

    assert user.id == "u1"
    assert "Authorization" not in httpx_mock.get_request().headers
