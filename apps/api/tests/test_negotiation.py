import pytest

from services.platforms.errors import SocialApiError, TransientApiError
from services.platforms.negotiation import VariantNegotiator, is_variant_rejection


def _error(status_code: int, message: str = "bad request") -> SocialApiError:
    return SocialApiError(platform="instagram", endpoint="insights", status_code=status_code, message=message)


@pytest.mark.asyncio
async def test_first_accepted_variant_wins_and_is_cached():
    negotiator = VariantNegotiator()
    tried = []

    async def attempt(metric: str):
        tried.append(metric)
        if metric == "impressions":
            raise _error(400, "(#100) metric[0] must be one of the following values: views, reach")
        return {"metric": metric}

    first = await negotiator.negotiate("instagram:1:media", ["impressions", "views", "reach"], attempt)
    assert first.variant == "views"
    assert first.value == {"metric": "views"}
    assert tried == ["impressions", "views"]

    second = await negotiator.negotiate("instagram:1:media", ["impressions", "views", "reach"], attempt)
    assert second.variant == "views"
    assert tried == ["impressions", "views", "views"]
    assert negotiator.winner("instagram:1:media") == "views"


@pytest.mark.asyncio
async def test_all_rejected_returns_none_and_is_remembered():
    negotiator = VariantNegotiator()
    tried = []

    async def attempt(variant: str):
        tried.append(variant)
        raise _error(404)

    assert await negotiator.negotiate("linkedin:org:interval", ["dot", "raw"], attempt) is None
    assert negotiator.is_exhausted("linkedin:org:interval") is True

    assert await negotiator.negotiate("linkedin:org:interval", ["dot", "raw"], attempt) is None
    assert tried == ["dot", "raw"]


@pytest.mark.asyncio
async def test_non_rejection_errors_propagate():
    negotiator = VariantNegotiator()

    async def attempt(variant: str):
        raise TransientApiError(platform="youtube", endpoint="reports", status_code=429, message="quota")

    with pytest.raises(TransientApiError):
        await negotiator.negotiate("youtube:c:analytics", ["views,likes"], attempt)
    assert negotiator.winner("youtube:c:analytics") is None
    assert negotiator.is_exhausted("youtube:c:analytics") is False


@pytest.mark.asyncio
async def test_custom_rejection_check_overrides_default():
    negotiator = VariantNegotiator()

    async def attempt(version: str):
        if version == "v25.0":
            raise _error(403, "Unsupported get request")
        return version

    result = await negotiator.negotiate(
        "facebook:page:version",
        ["v25.0", "v24.0"],
        attempt,
        is_rejection=lambda exc: isinstance(exc, SocialApiError) and exc.status_code == 403,
    )
    assert result.variant == "v24.0"


def test_variant_rejection_classification():
    assert is_variant_rejection(_error(400)) is True
    assert is_variant_rejection(_error(404)) is True
    assert is_variant_rejection(_error(422)) is True
    assert is_variant_rejection(_error(403, "The metric is deprecated")) is True
    assert is_variant_rejection(_error(403, "Insufficient permission")) is False
    assert is_variant_rejection(_error(500)) is False
    assert is_variant_rejection(TransientApiError(platform="x", endpoint="y", status_code=429, message="x")) is False
    assert is_variant_rejection(ValueError("nope")) is False


@pytest.mark.asyncio
async def test_cached_winner_failure_propagates_without_falling_back():
    negotiator = VariantNegotiator()
    tried = []
    calls = {"count": 0}

    async def attempt(metric: str):
        tried.append(metric)
        calls["count"] += 1
        if calls["count"] > 1:
            raise _error(400, "media has no insights")
        return metric

    await negotiator.negotiate("instagram:1:reel", ["views", "plays"], attempt)

    with pytest.raises(SocialApiError):
        await negotiator.negotiate("instagram:1:reel", ["views", "plays"], attempt)
    assert tried == ["views", "views"]
    assert negotiator.winner("instagram:1:reel") == "views"
