"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Coverage:
  - Issue -> validate round trip, claim contents
  - Validation order: invalid before expired before revoked
  - nbf and exp judged by the injected clock
  - Token type separation (access vs refresh audience)
  - Refresh rotation is single-use, including under concurrency
  - Revocation of access/refresh tokens, expired tokens are a no-op
  - Key material handling: derived public key, verify-only, mismatch, bad PEM
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.errors import (
    InvalidTokenError,
    KeyConfigurationError,
    SigningKeyUnavailableError,
    TokenBlacklistedError,
    TokenExpiredError,
)
from auth.store import InMemoryBlacklistStore
from auth.tokens import ACCESS_AUDIENCE, REFRESH_AUDIENCE, TokenService, generate_rsa_keypair

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Clock:
    """Settable clock so expiry can be tested without sleeping."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


def _service(rsa_keypair, blacklist, **kwargs) -> TokenService:
    return TokenService(rsa_keypair[0], blacklist=blacklist, **kwargs)


# ---------------------------------------------------------------------------
# Issuance and validation
# ---------------------------------------------------------------------------


class TestRoundTrip:
    def test_access_token_round_trip(self, token_service: TokenService) -> None:
        pair = token_service.generate_token_pair("user-1", "a@example.com")
        claims = token_service.validate_access_token(pair.access_token)
        assert claims.user_id == "user-1"
        assert claims.email == "a@example.com"
        assert claims.expires_at == pair.expires_at

    def test_refresh_token_round_trip(self, token_service: TokenService) -> None:
        pair = token_service.generate_token_pair("user-1", "a@example.com")
        claims = token_service.validate_refresh_token(pair.refresh_token)
        assert claims.user_id == "user-1"

    def test_each_token_has_its_own_id(self, token_service: TokenService) -> None:
        pair = token_service.generate_token_pair("user-1", "a@example.com")
        access = token_service.validate_access_token(pair.access_token)
        refresh = token_service.validate_refresh_token(pair.refresh_token)
        assert access.token_id != refresh.token_id

    def test_payload_carries_standard_claims(self, token_service: TokenService) -> None:
        pair = token_service.generate_token_pair("user-1", "a@example.com")
        payload = jwt.get_unverified_claims(pair.access_token)
        assert payload["sub"] == "user-1"
        assert payload["iss"] == "gatekeeper"
        assert payload["aud"] == ACCESS_AUDIENCE
        assert jwt.get_unverified_claims(pair.refresh_token)["aud"] == REFRESH_AUDIENCE
        assert jwt.get_unverified_header(pair.access_token)["alg"] == "RS256"

    def test_expires_at_reflects_access_ttl(self, rsa_keypair, blacklist) -> None:
        clock = _Clock()
        service = _service(rsa_keypair, blacklist, access_ttl=timedelta(minutes=5), clock=clock)
        pair = service.generate_token_pair("user-1", "a@example.com")
        assert pair.expires_at == clock.now + timedelta(minutes=5)

    def test_expires_at_matches_signed_exp(self, rsa_keypair, blacklist) -> None:
        """A clock with sub-second precision still yields the exp the token carries."""
        clock = _Clock(datetime.now(timezone.utc).replace(microsecond=987654))
        service = _service(rsa_keypair, blacklist, clock=clock)
        pair = service.generate_token_pair("user-1", "a@example.com")
        assert pair.expires_at.microsecond == 0
        assert service.validate_access_token(pair.access_token).expires_at == pair.expires_at
        assert jwt.get_unverified_claims(pair.access_token)["exp"] == int(pair.expires_at.timestamp())

    def test_to_dict(self, token_service: TokenService) -> None:
        body = token_service.generate_token_pair("user-1", "a@example.com").to_dict()
        assert body["token_type"] == "bearer"
        assert set(body) == {"access_token", "refresh_token", "token_type", "expires_at"}


class TestRejection:
    @pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b.c"])
    def test_malformed_token(self, token_service: TokenService, token: str) -> None:
        with pytest.raises(InvalidTokenError):
            token_service.validate_access_token(token)

    def test_token_from_another_key(self, token_service: TokenService, blacklist) -> None:
        other = TokenService(generate_rsa_keypair()[0], blacklist=blacklist)
        pair = other.generate_token_pair("user-1", "a@example.com")
        with pytest.raises(InvalidTokenError):
            token_service.validate_access_token(pair.access_token)

    def test_wrong_issuer(self, rsa_keypair, blacklist) -> None:
        issuer_a = _service(rsa_keypair, blacklist, issuer="issuer-a")
        issuer_b = _service(rsa_keypair, blacklist, issuer="issuer-b")
        pair = issuer_a.generate_token_pair("user-1", "a@example.com")
        with pytest.raises(InvalidTokenError):
            issuer_b.validate_access_token(pair.access_token)

    def test_refresh_token_rejected_as_access(self, token_service: TokenService) -> None:
        pair = token_service.generate_token_pair("user-1", "a@example.com")
        with pytest.raises(InvalidTokenError):
            token_service.validate_access_token(pair.refresh_token)

    def test_access_token_rejected_as_refresh(self, token_service: TokenService) -> None:
        pair = token_service.generate_token_pair("user-1", "a@example.com")
        with pytest.raises(InvalidTokenError):
            token_service.refresh_tokens(pair.access_token)

    def test_hs256_token_rejected(self, token_service: TokenService) -> None:
        """A token signed with a shared secret is never accepted."""
        forged = jwt.encode(
            {"user_id": "u", "email": "e", "jti": "j", "sub": "u", "iat": 0, "exp": 9999999999, "aud": ACCESS_AUDIENCE},
            "secret",
            algorithm="HS256",
        )
        with pytest.raises(InvalidTokenError):
            token_service.validate_access_token(forged)


class TestNotBefore:
    """nbf is judged by the service clock, like exp."""

    def test_clock_ahead_of_wall_time(self, rsa_keypair, blacklist) -> None:
        clock = _Clock(datetime.now(timezone.utc).replace(microsecond=0) + timedelta(hours=1))
        service = _service(rsa_keypair, blacklist, clock=clock)
        pair = service.generate_token_pair("user-1", "a@example.com")
        assert service.validate_access_token(pair.access_token).user_id == "user-1"

    def test_token_from_the_future(self, rsa_keypair, blacklist) -> None:
        clock = _Clock()
        verifier = _service(rsa_keypair, blacklist, clock=clock)
        pair = verifier.generate_token_pair("user-1", "a@example.com")
        clock.advance(timedelta(minutes=-10))
        with pytest.raises(InvalidTokenError):
            verifier.validate_access_token(pair.access_token)

    @pytest.mark.parametrize("nbf", [None, "soon", True])
    def test_missing_or_malformed_nbf(self, rsa_keypair, token_service: TokenService, nbf) -> None:
        now = int(datetime.now(timezone.utc).timestamp())
        payload = {
            "user_id": "u",
            "email": "a@example.com",
            "jti": "j",
            "sub": "u",
            "iat": now,
            "exp": now + 600,
            "iss": "gatekeeper",
            "aud": ACCESS_AUDIENCE,
        }
        if nbf is not None:
            payload["nbf"] = nbf
        token = jwt.encode(payload, rsa_keypair[0], algorithm="RS256")
        with pytest.raises(InvalidTokenError):
            token_service.validate_access_token(token)


class TestExpiry:
    def test_expired_token(self, rsa_keypair, blacklist) -> None:
        clock = _Clock()
        service = _service(rsa_keypair, blacklist, access_ttl=timedelta(seconds=1), clock=clock)
        pair = service.generate_token_pair("user-1", "a@example.com")
        clock.advance(timedelta(seconds=2))
        with pytest.raises(TokenExpiredError):
            service.validate_access_token(pair.access_token)

    def test_expired_refresh_token(self, rsa_keypair, blacklist) -> None:
        clock = _Clock()
        service = _service(rsa_keypair, blacklist, refresh_ttl=timedelta(minutes=30), clock=clock)
        pair = service.generate_token_pair("user-1", "a@example.com")
        clock.advance(timedelta(hours=1))
        with pytest.raises(TokenExpiredError):
            service.refresh_tokens(pair.refresh_token)

    def test_expired_wins_over_revoked(self, rsa_keypair, blacklist) -> None:
        clock = _Clock()
        service = _service(rsa_keypair, blacklist, clock=clock)
        pair = service.generate_token_pair("user-1", "a@example.com")
        service.blacklist_token(pair.access_token)
        clock.advance(timedelta(hours=1))
        with pytest.raises(TokenExpiredError):
            service.validate_access_token(pair.access_token)


# ---------------------------------------------------------------------------
# Rotation and revocation
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_refresh_issues_new_pair(self, token_service: TokenService) -> None:
        pair = token_service.generate_token_pair("user-1", "a@example.com")
        new_pair = token_service.refresh_tokens(pair.refresh_token)
        assert new_pair.refresh_token != pair.refresh_token
        claims = token_service.validate_access_token(new_pair.access_token)
        assert (claims.user_id, claims.email) == ("user-1", "a@example.com")

    def test_refresh_token_is_single_use(self, token_service: TokenService) -> None:
        pair = token_service.generate_token_pair("user-1", "a@example.com")
        token_service.refresh_tokens(pair.refresh_token)
        with pytest.raises(TokenBlacklistedError):
            token_service.refresh_tokens(pair.refresh_token)
        with pytest.raises(TokenBlacklistedError):
            token_service.validate_refresh_token(pair.refresh_token)

    def test_old_access_token_survives_refresh(self, token_service: TokenService) -> None:
        pair = token_service.generate_token_pair("user-1", "a@example.com")
        token_service.refresh_tokens(pair.refresh_token)
        assert token_service.validate_access_token(pair.access_token).user_id == "user-1"

    def test_concurrent_refresh_succeeds_once(self, token_service: TokenService) -> None:
        pair = token_service.generate_token_pair("user-1", "a@example.com")
        barrier = threading.Barrier(8)

        def attempt(_: int) -> str:
            barrier.wait()
            try:
                token_service.refresh_tokens(pair.refresh_token)
                return "ok"
            except TokenBlacklistedError:
                return "revoked"

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(8)))
        assert results.count("ok") == 1
        assert results.count("revoked") == 7


class TestBlacklist:
    def test_revoked_access_token_rejected(self, token_service: TokenService) -> None:
        pair = token_service.generate_token_pair("user-1", "a@example.com")
        token_service.blacklist_token(pair.access_token)
        with pytest.raises(TokenBlacklistedError):
            token_service.validate_access_token(pair.access_token)

    def test_revoking_access_leaves_refresh_valid(self, token_service: TokenService) -> None:
        pair = token_service.generate_token_pair("user-1", "a@example.com")
        token_service.blacklist_token(pair.access_token)
        assert token_service.validate_refresh_token(pair.refresh_token).user_id == "user-1"

    def test_revoked_refresh_token_cannot_refresh(self, token_service: TokenService) -> None:
        pair = token_service.generate_token_pair("user-1", "a@example.com")
        token_service.blacklist_token(pair.refresh_token)
        with pytest.raises(TokenBlacklistedError):
            token_service.refresh_tokens(pair.refresh_token)

    def test_blacklist_entry_expires_with_token(self, rsa_keypair, blacklist) -> None:
        clock = _Clock()
        service = _service(rsa_keypair, blacklist, clock=clock)
        pair = service.generate_token_pair("user-1", "a@example.com")
        service.blacklist_token(pair.access_token)
        claims = jwt.get_unverified_claims(pair.access_token)
        entry = blacklist._entries.get(claims["jti"])
        assert entry is not None
        assert entry.expires_at == datetime.fromtimestamp(claims["exp"], tz=timezone.utc)

    def test_expired_token_needs_no_entry(self, rsa_keypair, blacklist) -> None:
        clock = _Clock()
        service = _service(rsa_keypair, blacklist, access_ttl=timedelta(seconds=1), clock=clock)
        pair = service.generate_token_pair("user-1", "a@example.com")
        clock.advance(timedelta(seconds=5))
        service.blacklist_token(pair.access_token)
        assert blacklist.size() == 0

    def test_invalid_token_cannot_be_revoked(self, token_service: TokenService) -> None:
        with pytest.raises(InvalidTokenError):
            token_service.blacklist_token("garbage")


# ---------------------------------------------------------------------------
# Key material
# ---------------------------------------------------------------------------


class TestKeys:
    def test_verify_only_service(self, rsa_keypair, token_service: TokenService, blacklist) -> None:
        verifier = TokenService(None, rsa_keypair[1], blacklist=blacklist)
        assert not verifier.can_sign
        pair = token_service.generate_token_pair("user-1", "a@example.com")
        assert verifier.validate_access_token(pair.access_token).user_id == "user-1"
        with pytest.raises(SigningKeyUnavailableError):
            verifier.generate_token_pair("user-1", "a@example.com")
        with pytest.raises(SigningKeyUnavailableError):
            verifier.refresh_tokens(pair.refresh_token)

    def test_public_key_is_derived(self, rsa_keypair, token_service: TokenService) -> None:
        assert token_service.public_key_pem.strip() == rsa_keypair[1].strip()

    def test_matching_pair_accepted(self, rsa_keypair, blacklist) -> None:
        service = TokenService(rsa_keypair[0], rsa_keypair[1], blacklist=blacklist)
        assert service.can_sign

    def test_mismatched_pair_rejected(self, rsa_keypair, blacklist) -> None:
        _, other_public = generate_rsa_keypair()
        with pytest.raises(KeyConfigurationError):
            TokenService(rsa_keypair[0], other_public, blacklist=blacklist)

    def test_unparseable_key_rejected(self, blacklist) -> None:
        with pytest.raises(KeyConfigurationError):
            TokenService("not a pem", blacklist=blacklist)

    def test_ephemeral_key_when_none_configured(self) -> None:
        store = InMemoryBlacklistStore()
        try:
            service = TokenService(blacklist=store)
            assert service.can_sign
            pair = service.generate_token_pair("user-1", "a@example.com")
            assert service.validate_access_token(pair.access_token).user_id == "user-1"
        finally:
            store.close()
