import httpx
import pytest

from services.platforms.api_client import ApiExecutor, parse_error_message
from services.platforms.errors import SocialApiError, TokenExpiredError, TransientApiError
from services.platforms.rate_limiter import RateLimiter
from services.platforms.store import MemoryStore


async def _no_sleep(seconds: float) -> None:
    return None


def _executor(handler, max_retries: int = 3) -> ApiExecutor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    limiter = RateLimiter(store=MemoryStore(), limits={}, sleep=_no_sleep)
    return ApiExecutor(client=client, rate_limiter=limiter, max_retries=max_retries)


@pytest.mark.asyncio
async def test_successful_json_body_is_returned():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["fields"] == "id,name"
        return httpx.Response(200, json={"id": "123", "name": "Acme"})

    async with _executor(handler) as executor:
        body = await executor.request(
            "facebook", "https://graph.facebook.com/v21.0/me", params={"fields": "id,name"}, endpoint="me"
        )

    assert body == {"id": "123", "name": "Acme"}


@pytest.mark.asyncio
async def test_throttled_responses_are_retried_until_attempts_run_out():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(429, json={"errors": [{"code": 88, "message": "Rate limit exceeded"}]})

    async with _executor(handler) as executor:
        with pytest.raises(TransientApiError) as exc_info:
            await executor.request("twitter", "https://api.twitter.com/2/users/me", endpoint="users_me")

    assert len(calls) == 3
    assert exc_info.value.status_code == 429
    assert "Rate limit exceeded" in exc_info.value.message


@pytest.mark.asyncio
async def test_not_found_is_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(404, json={"message": "Resource not found"})

    async with _executor(handler) as executor:
        with pytest.raises(SocialApiError) as exc_info:
            await executor.request("linkedin", "https://api.linkedin.com/rest/posts", endpoint="posts")

    assert len(calls) == 1
    assert exc_info.value.status_code == 404
    assert exc_info.value.message == "LinkedIn API Error: Resource not found"
    assert not isinstance(exc_info.value, TransientApiError)


@pytest.mark.asyncio
async def test_unauthorized_raises_token_expired():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"code": 401, "message": "Invalid Credentials"}})

    async with _executor(handler) as executor:
        with pytest.raises(TokenExpiredError):
            await executor.request("youtube", "https://www.googleapis.com/youtube/v3/channels", endpoint="channels")


@pytest.mark.asyncio
async def test_meta_invalid_token_code_raises_token_expired():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400,
            json={"error": {"code": 190, "error_subcode": 463, "message": "Session has expired"}},
        )

    async with _executor(handler) as executor:
        with pytest.raises(TokenExpiredError) as exc_info:
            await executor.request("instagram", "https://graph.facebook.com/v21.0/123/insights", endpoint="insights")

    assert exc_info.value.message == "Meta API Error 190.463: Session has expired"


@pytest.mark.asyncio
async def test_tiktok_error_envelope_in_ok_response_is_an_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"data": {}, "error": {"code": "scope_not_authorized", "message": "Scope not authorized"}},
        )

    async with _executor(handler) as executor:
        with pytest.raises(SocialApiError) as exc_info:
            await executor.request("tiktok", "https://open.tiktokapis.com/v2/user/info/", endpoint="user_info")

    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "TikTok API Error: Scope not authorized"


@pytest.mark.asyncio
async def test_tiktok_ok_envelope_is_success():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"user": {"open_id": "abc"}}, "error": {"code": "ok"}})

    async with _executor(handler) as executor:
        body = await executor.request("tiktok", "https://open.tiktokapis.com/v2/user/info/", endpoint="user_info")

    assert body["data"]["user"]["open_id"] == "abc"


@pytest.mark.asyncio
async def test_timeout_becomes_transient_408_and_is_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ReadTimeout("timed out", request=request)

    async with _executor(handler, max_retries=2) as executor:
        with pytest.raises(TransientApiError) as exc_info:
            await executor.request("tiktok", "https://open.tiktokapis.com/v2/video/list/", endpoint="video_list")

    assert exc_info.value.status_code == 408
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_network_error_becomes_transient_status_zero():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _executor(handler, max_retries=1) as executor:
        with pytest.raises(TransientApiError) as exc_info:
            await executor.request("linkedin", "https://api.linkedin.com/rest/posts", endpoint="posts")

    assert exc_info.value.status_code == 0
    assert exc_info.value.message.startswith("Network error:")


def test_parse_error_message_per_provider():
    assert parse_error_message(
        "youtube", 403, {"error": {"errors": [{"reason": "quotaExceeded", "message": "Quota exceeded"}]}}
    ) == "YouTube API Error: Quota exceeded"
    assert parse_error_message(
        "twitter", 400, {"title": "Invalid Request", "detail": "One or more parameters are invalid."}
    ) == "Twitter API Error: Invalid Request: One or more parameters are invalid."
    assert parse_error_message("facebook", 400, {"error": {"code": 100, "message": "Invalid parameter"}}) == (
        "Meta API Error 100: Invalid parameter"
    )
    assert parse_error_message("linkedin", 500, "upstream exploded") == "upstream exploded"
    assert parse_error_message("linkedin", 500, {"status": 500}).startswith("linkedin API error: 500 - ")
