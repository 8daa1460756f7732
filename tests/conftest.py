"""
tests/conftest.py -- Shared test fixtures for Gatekeeper.

This module provides:
  - rsa_keypair: one RSA keypair per session (key generation is slow)
  - blacklist / state_store: in-memory stores, closed after each test
  - token_service: TokenService signing with rsa_keypair
  - FakeUserLinker / user_linker: in-memory UserLinker recording its calls

The DEBUG env var must be set before any core import so Settings() accepts
missing signing keys in dev mode instead of raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator

# CRITICAL: Set DEBUG before any auth/core import so Settings() can fall back
# to an ephemeral key in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest

from auth.models import OAuthProvider, OAuthUserInfo
from auth.store import InMemoryBlacklistStore, InMemoryStateStore
from auth.tokens import TokenService, generate_rsa_keypair

# ---------------------------------------------------------------------------
# Keys and stores
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def rsa_keypair() -> tuple[str, str]:
    """(private_pem, public_pem) shared by the whole session."""
    return generate_rsa_keypair()


@pytest.fixture
def blacklist() -> Generator[InMemoryBlacklistStore, None, None]:
    store = InMemoryBlacklistStore()
    yield store
    store.close()


@pytest.fixture
def state_store() -> Generator[InMemoryStateStore, None, None]:
    store = InMemoryStateStore()
    yield store
    store.close()


@pytest.fixture
def token_service(rsa_keypair: tuple[str, str], blacklist: InMemoryBlacklistStore) -> TokenService:
    private_pem, _ = rsa_keypair
    return TokenService(private_pem, blacklist=blacklist)


# ---------------------------------------------------------------------------
# Account linking
# ---------------------------------------------------------------------------


class FakeUserLinker:
    """In-memory UserLinker. users maps email -> user_id."""

    def __init__(self, users: dict[str, str] | None = None) -> None:
        self.users = dict(users or {})
        self.links: list[tuple[str, OAuthProvider, str]] = []
        self.created: list[OAuthUserInfo] = []

    def find_user_by_email(self, email: str) -> tuple[str, bool]:
        if email in self.users:
            return self.users[email], True
        return "", False

    def link_oauth_account(self, user_id: str, provider: OAuthProvider, provider_user_id: str) -> None:
        self.links.append((user_id, provider, provider_user_id))

    def create_user_from_oauth(self, user_info: OAuthUserInfo) -> str:
        user_id = f"user-{len(self.users) + 1}"
        self.users[user_info.email] = user_id
        self.created.append(user_info)
        return user_id


@pytest.fixture
def user_linker() -> FakeUserLinker:
    return FakeUserLinker({"existing@example.com": "user-existing"})
