"""
auth/services.py -- Composition root for the auth package.

build_auth_services(settings) constructs the stores and services exactly once
and AuthServices.close() tears them down again, so a host application wires
them into its lifespan symmetrically:

    @asynccontextmanager
    async def lifespan(app):
        services = build_auth_services(get_settings(), user_linker=MyLinker())
        app.state.token_service = services.token_service
        app.state.oauth = services.oauth
        yield
        services.close()

auth/dependencies.py reads app.state.token_service.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from auth.oauth import OAuthOrchestrator, UserLinker
from auth.store import InMemoryBlacklistStore, InMemoryStateStore
from auth.tokens import TokenService

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.services")


@dataclass
class AuthServices:
    token_service: TokenService
    oauth: OAuthOrchestrator
    blacklist: InMemoryBlacklistStore
    state_store: InMemoryStateStore

    def close(self) -> None:
        """Stop the stores' background sweeps. Idempotent."""
        self.blacklist.close()
        self.state_store.close()
        logger.info("Auth services closed")


def build_auth_services(settings: Settings, user_linker: UserLinker | None = None) -> AuthServices:
    blacklist = InMemoryBlacklistStore(sweep_interval=settings.blacklist_sweep_seconds)
    state_store = InMemoryStateStore(ttl_seconds=settings.pkce_ttl_seconds)
    try:
        token_service = TokenService.from_settings(settings, blacklist)
        oauth = OAuthOrchestrator.from_settings(settings, state_store, user_linker)
    except Exception:
        blacklist.close()
        state_store.close()
        raise
    logger.info("Auth services ready (issuer=%s, signing=%s)", token_service.issuer, token_service.can_sign)
    return AuthServices(
        token_service=token_service,
        oauth=oauth,
        blacklist=blacklist,
        state_store=state_store,
    )
