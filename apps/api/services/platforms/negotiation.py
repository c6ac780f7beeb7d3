"""Negotiate-and-cache for ordered provider fallbacks.

Providers rename and deprecate metrics, move fields between API versions and
accept different query encodings. Callers describe the alternatives as an
ordered list; the negotiator tries them in order, stops at the first accepted
one and remembers the winner for the rest of the run.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Sequence, Set, TypeVar

from services.platforms.errors import SocialApiError, TransientApiError


logger = logging.getLogger(__name__)

V = TypeVar("V")

REJECTION_PATTERNS = re.compile(
    r"valid insights metric|no longer supported|not supported|deprecated|invalid (metric|parameter|field)|"
    r"unknown (metric|field)|does not exist|unsupported|illegal|query parameter",
    re.IGNORECASE,
)


def is_variant_rejection(exc: BaseException) -> bool:
    """True when the provider refused the request shape rather than failing outright."""
    if isinstance(exc, TransientApiError) or not isinstance(exc, SocialApiError):
        return False
    if exc.status_code in (400, 404, 422):
        return True
    return exc.status_code == 403 and bool(REJECTION_PATTERNS.search(exc.message or ""))


@dataclass(frozen=True)
class Negotiated(Generic[V]):
    variant: V
    value: Any


class VariantNegotiator:
    """Per-run cache of winning variants keyed by a caller-chosen name."""

    def __init__(self, is_rejection: Callable[[BaseException], bool] = is_variant_rejection) -> None:
        self._is_rejection = is_rejection
        self._winners: Dict[str, Any] = {}
        self._exhausted: Set[str] = set()
        self._locks: Dict[str, asyncio.Lock] = {}

    def winner(self, key: str) -> Optional[Any]:
        return self._winners.get(key)

    def is_exhausted(self, key: str) -> bool:
        return key in self._exhausted

    async def negotiate(
        self,
        key: str,
        variants: Sequence[V],
        attempt: Callable[[V], Awaitable[Any]],
        is_rejection: Optional[Callable[[BaseException], bool]] = None,
    ) -> Optional[Negotiated[V]]:
        """Return the first accepted variant and its result, or None if all are rejected.

        Errors that are not rejections propagate unchanged. Once a winner is
        cached, later calls use it directly without falling back.
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            if key in self._exhausted:
                return None
            if key in self._winners:
                cached = self._winners[key]
            else:
                return await self._try_variants(key, variants, attempt, is_rejection or self._is_rejection)
        return Negotiated(variant=cached, value=await attempt(cached))

    async def _try_variants(
        self,
        key: str,
        variants: Sequence[V],
        attempt: Callable[[V], Awaitable[Any]],
        is_rejection: Callable[[BaseException], bool],
    ) -> Optional[Negotiated[V]]:
        for variant in variants:
            try:
                value = await attempt(variant)
            except Exception as exc:
                if not is_rejection(exc):
                    raise
                logger.debug("Variant %r rejected for %s: %s", variant, key, exc)
                continue
            self._winners[key] = variant
            logger.info("Negotiated %s -> %r", key, variant)
            return Negotiated(variant=variant, value=value)
        self._exhausted.add(key)
        logger.info("No accepted variant for %s (%s tried)", key, len(variants))
        return None
