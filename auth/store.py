"""
auth/store.py -- Revocation and OAuth state stores.

Pattern: Repository behind a Protocol. TokenService only knows BlacklistStore
and OAuthOrchestrator only knows StateStore; both in-memory implementations
here are thin wrappers over ExpiringStore. A Redis- or database-backed store
can be swapped in by implementing the same methods.

Security:
  Revocation markers expire exactly when the revoked token would have expired
  anyway, so the blacklist never grows beyond the set of live tokens.

  consume_pkce_challenge() is the only read path the OAuth callback uses. It
  removes the entry in the same critical section that reads it, so two
  concurrent callbacks carrying the same state cannot both succeed.

Process-local: all state is lost on restart. Tokens revoked before a restart
are then only as safe as their own embedded expiry.

Layer rule: no imports from core/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Protocol

from auth.expiring_store import ExpiringStore
from auth.models import PKCEChallenge, RevocationEntry

logger = logging.getLogger("gatekeeper.auth.store")

DEFAULT_PKCE_TTL_SECONDS = 10 * 60
DEFAULT_BLACKLIST_SWEEP_SECONDS = 60 * 60


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class BlacklistStore(Protocol):
    def is_blacklisted(self, token_id: str) -> bool: ...

    def blacklist_token(self, token_id: str, expires_at: datetime) -> None: ...


class StateStore(Protocol):
    def store_pkce_challenge(self, state: str, challenge: PKCEChallenge) -> None: ...

    def get_pkce_challenge(self, state: str) -> PKCEChallenge | None: ...

    def consume_pkce_challenge(self, state: str) -> PKCEChallenge | None: ...

    def delete_pkce_challenge(self, state: str) -> None: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryBlacklistStore:
    """Token-id blacklist. Suitable for single-instance deployments."""

    def __init__(self, sweep_interval: float = DEFAULT_BLACKLIST_SWEEP_SECONDS) -> None:
        self._entries: ExpiringStore[RevocationEntry] = ExpiringStore(
            sweep_interval=sweep_interval,
            name="token-blacklist",
        )

    def is_blacklisted(self, token_id: str) -> bool:
        return token_id in self._entries

    def blacklist_token(self, token_id: str, expires_at: datetime) -> None:
        self._entries.put(token_id, RevocationEntry(key=token_id, expires_at=expires_at), expires_at)
        logger.info("Token %s revoked until %s", token_id, expires_at.isoformat())

    def purge_expired(self) -> int:
        return self._entries.purge_expired()

    def size(self) -> int:
        return self._entries.size()

    def close(self) -> None:
        self._entries.close()


class InMemoryStateStore:
    """PKCE challenge registry keyed by OAuth state.

    Entries expire ttl_seconds after they are stored (default 10 minutes) --
    long enough for a user to complete a provider consent screen.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_PKCE_TTL_SECONDS) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self._challenges: ExpiringStore[PKCEChallenge] = ExpiringStore(
            ttl=ttl_seconds,
            name="oauth-state",
        )

    def store_pkce_challenge(self, state: str, challenge: PKCEChallenge) -> None:
        expires_at = challenge.created_at + self.ttl
        if expires_at <= datetime.now(timezone.utc):
            # created_at came from an old clock reading; anchor to now.
            expires_at = datetime.now(timezone.utc) + self.ttl
        self._challenges.put(state, challenge, expires_at)

    def get_pkce_challenge(self, state: str) -> PKCEChallenge | None:
        return self._challenges.get(state)

    def consume_pkce_challenge(self, state: str) -> PKCEChallenge | None:
        return self._challenges.pop(state)

    def delete_pkce_challenge(self, state: str) -> None:
        self._challenges.delete(state)

    def purge_expired(self) -> int:
        return self._challenges.purge_expired()

    def size(self) -> int:
        return self._challenges.size()

    def close(self) -> None:
        self._challenges.close()
