"""Outbound provider API execution.

Every provider call goes through ``ApiExecutor.request``: it is rate limited
per ``platform:endpoint``, bounded by a timeout, retried on throttling and
transient failures, and non-2xx bodies are parsed into one structured
``SocialApiError`` regardless of each provider's error envelope.
"""

from __future__ import annotations

import json as jsonlib
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from config import settings
from services.platforms.errors import SocialApiError, TokenExpiredError, TransientApiError
from services.platforms.rate_limiter import RateLimiter, get_rate_limiter


logger = logging.getLogger(__name__)

META_PLATFORMS = ("facebook", "instagram")
META_INVALID_TOKEN_CODE = 190


class ErrorExpectation(str, Enum):
    """How the caller classifies a failure of this call before making it."""

    UNEXPECTED = "unexpected"
    # Negotiation attempts (deprecated metric names, alternate encodings) fail routinely.
    EXPECTED_FAILURE = "expected_failure"


def _parse_meta_error(body: Dict[str, Any]) -> Optional[str]:
    error = body.get("error")
    if not isinstance(error, dict):
        return None
    code = error.get("code")
    subcode = error.get("error_subcode")
    label = f"{code}.{subcode}" if subcode else f"{code}"
    return f"Meta API Error {label}: {error.get('message') or 'Unknown error'}"


def _parse_tiktok_error(body: Dict[str, Any]) -> Optional[str]:
    error = body.get("error")
    if not isinstance(error, dict):
        return None
    return f"TikTok API Error: {error.get('message') or error.get('code') or 'Unknown error'}"


def _parse_youtube_error(body: Dict[str, Any]) -> Optional[str]:
    error = body.get("error")
    if not isinstance(error, dict):
        return None
    errors = error.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        first = errors[0]
        return f"YouTube API Error: {first.get('message') or first.get('reason') or 'Unknown error'}"
    return f"YouTube API Error: {error.get('message') or 'Unknown error'}"


def _parse_twitter_error(body: Dict[str, Any]) -> Optional[str]:
    errors = body.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        first = errors[0]
        message = first.get("message") or first.get("detail") or "Unknown error"
        return f"Twitter API Error {first.get('code') or ''}: {message}"
    if body.get("error_description"):
        return f"Twitter API Error: {body['error_description']}"
    if body.get("detail"):
        return f"Twitter API Error: {body.get('title') or body.get('status') or ''}: {body['detail']}"
    return None


def _parse_linkedin_error(body: Dict[str, Any]) -> Optional[str]:
    if body.get("message"):
        return f"LinkedIn API Error: {body['message']}"
    return None


ERROR_PARSERS: Dict[str, Callable[[Dict[str, Any]], Optional[str]]] = {
    "facebook": _parse_meta_error,
    "instagram": _parse_meta_error,
    "tiktok": _parse_tiktok_error,
    "youtube": _parse_youtube_error,
    "twitter": _parse_twitter_error,
    "linkedin": _parse_linkedin_error,
}


def parse_error_message(platform: str, status_code: int, body: Any) -> str:
    """Normalize a provider error body into a single message."""
    if isinstance(body, str):
        return body
    if not isinstance(body, dict):
        return f"{platform} API error: {status_code}"
    parser = ERROR_PARSERS.get(platform)
    message = parser(body) if parser else None
    if message:
        return message
    return f"{platform} API error: {status_code} - {jsonlib.dumps(body)[:200]}"


def _read_body(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


def _is_invalid_token(platform: str, status_code: int, body: Any) -> bool:
    if status_code == 401:
        return True
    if platform in META_PLATFORMS and isinstance(body, dict):
        error = body.get("error")
        return isinstance(error, dict) and error.get("code") == META_INVALID_TOKEN_CODE
    return False


def _tiktok_envelope_error(body: Any) -> Optional[Dict[str, Any]]:
    # TikTok reports some failures inside a 200 response.
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if not isinstance(error, dict):
        return None
    code = str(error.get("code", "ok")).lower()
    if code in ("ok", "0", "") or str(error.get("message", "")).lower() == "ok":
        return None
    return error


class ApiExecutor:
    """Rate-limited, timed, retrying HTTP executor shared by all connectors."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> None:
        self._client = client
        self._owns_client = False
        self._rate_limiter = rate_limiter
        self._timeout = float(timeout_seconds or settings.API_TIMEOUT_SECONDS)
        self._max_retries = int(max_retries or settings.API_MAX_RETRIES)

    async def __aenter__(self) -> "ApiExecutor":
        if self._client is None:
            self._client = httpx.AsyncClient()
            self._owns_client = True
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
            self._owns_client = False

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter or get_rate_limiter()

    async def request(
        self,
        platform: str,
        url: str,
        *,
        method: str = "GET",
        params: Optional[Mapping[str, Any]] = None,
        data: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        auth: Optional[httpx.Auth] = None,
        endpoint: str = "default",
        expectation: ErrorExpectation = ErrorExpectation.UNEXPECTED,
    ) -> Any:
        async def _call() -> Any:
            return await self._send(
                platform,
                url,
                method=method,
                params=params,
                data=data,
                json=json,
                headers=headers,
                auth=auth,
                endpoint=endpoint,
                expectation=expectation,
            )

        return await self.rate_limiter.with_rate_limit(
            platform, endpoint, _call, max_retries=self._max_retries
        )

    async def _dispatch(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, timeout=self._timeout, **kwargs)
        async with httpx.AsyncClient() as client:
            return await client.request(method, url, timeout=self._timeout, **kwargs)

    async def _send(
        self,
        platform: str,
        url: str,
        *,
        method: str,
        params: Optional[Mapping[str, Any]],
        data: Optional[Mapping[str, Any]],
        json: Any,
        headers: Optional[Mapping[str, str]],
        auth: Optional[httpx.Auth],
        endpoint: str,
        expectation: ErrorExpectation,
    ) -> Any:
        started = time.monotonic()
        request_kwargs: Dict[str, Any] = {"params": params, "headers": headers}
        if data is not None:
            request_kwargs["data"] = data
        if json is not None:
            request_kwargs["json"] = json
        if auth is not None:
            request_kwargs["auth"] = auth
        try:
            response = await self._dispatch(method, url, **request_kwargs)
        except httpx.TimeoutException as exc:
            raise TransientApiError(
                platform=platform,
                endpoint=endpoint,
                status_code=408,
                message=f"Request timeout for {platform} API",
                raw_body=str(exc),
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientApiError(
                platform=platform,
                endpoint=endpoint,
                status_code=0,
                message=f"Network error: {exc}",
                raw_body=str(exc),
            ) from exc

        elapsed_ms = int((time.monotonic() - started) * 1000)
        body = _read_body(response)

        if response.is_success:
            logger.debug("[%s] %s %s - %s (%sms)", platform, method, endpoint, response.status_code, elapsed_ms)
            envelope_error = _tiktok_envelope_error(body) if platform == "tiktok" else None
            if envelope_error is None:
                return body
            status_code = 400
        else:
            status_code = response.status_code

        message = parse_error_message(platform, status_code, body)
        if status_code == 429:
            error_cls = TransientApiError
        elif _is_invalid_token(platform, status_code, body):
            error_cls = TokenExpiredError
        else:
            error_cls = SocialApiError

        log_level = logging.DEBUG if expectation is ErrorExpectation.EXPECTED_FAILURE else logging.WARNING
        logger.log(
            log_level,
            "[%s] %s %s - %s (%sms): %s",
            platform,
            method,
            endpoint,
            status_code,
            elapsed_ms,
            message,
        )
        raise error_cls(
            platform=platform,
            endpoint=endpoint,
            status_code=status_code,
            message=message,
            raw_body=body,
        )
