import base64
import hashlib

import pytest

from services.platforms.errors import StateExpiredError, StateInvalidError, VerifierNotFoundError
from services.platforms.oauth_state import (
    STATE_MAX_AGE_MS,
    OAuthStateCodec,
    PkceVerifierStore,
    code_challenge,
    generate_code_verifier,
)
from services.platforms.store import MemoryStore

SECRET = "state-signing-secret-for-tests-only"


class _Clock:
    def __init__(self, now_ms: int = 1_700_000_000_000):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


def test_state_round_trips_tenant_and_timestamp():
    clock = _Clock()
    codec = OAuthStateCodec(secret=SECRET, now_ms=clock)

    state = codec.encode("tenant-42")
    decoded = codec.decode(state)

    assert decoded.tenant_id == "tenant-42"
    assert decoded.ts == clock.now_ms
    assert decoded.nonce


def test_states_for_same_tenant_differ():
    codec = OAuthStateCodec(secret=SECRET)
    assert codec.encode("tenant-42") != codec.encode("tenant-42")


def test_state_older_than_one_hour_is_expired():
    clock = _Clock()
    codec = OAuthStateCodec(secret=SECRET, now_ms=clock)
    state = codec.encode("tenant-42")

    clock.now_ms += STATE_MAX_AGE_MS + 1
    with pytest.raises(StateExpiredError) as exc_info:
        codec.decode(state)
    assert exc_info.value.error_code == "state_expired"


def test_state_signed_with_other_secret_is_invalid():
    state = OAuthStateCodec(secret="another-secret-entirely-123456").encode("tenant-42")
    with pytest.raises(StateInvalidError) as exc_info:
        OAuthStateCodec(secret=SECRET).decode(state)
    assert exc_info.value.error_code == "invalid_state"


def test_garbage_state_is_invalid():
    with pytest.raises(StateInvalidError):
        OAuthStateCodec(secret=SECRET).decode("not-a-state")


def test_code_challenge_is_unpadded_sha256_base64url():
    verifier = generate_code_verifier()
    expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")

    assert 43 <= len(verifier) <= 128
    assert code_challenge(verifier) == expected
    assert "=" not in code_challenge(verifier)


def test_rfc7636_reference_challenge():
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


@pytest.mark.asyncio
async def test_verifier_is_consumed_exactly_once():
    verifiers = PkceVerifierStore(store=MemoryStore())
    await verifiers.save("state-abc", "verifier-xyz")

    assert await verifiers.consume("state-abc") == "verifier-xyz"
    with pytest.raises(VerifierNotFoundError):
        await verifiers.consume("state-abc")


@pytest.mark.asyncio
async def test_verifier_expires_after_ttl():
    now = [1000.0]
    verifiers = PkceVerifierStore(store=MemoryStore(clock=lambda: now[0]), ttl_seconds=600)
    await verifiers.save("state-abc", "verifier-xyz")

    now[0] += 601
    with pytest.raises(VerifierNotFoundError):
        await verifiers.consume("state-abc")
