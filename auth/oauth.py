"""
auth/oauth.py -- OAuth 2.0 authorization-code sign-in orchestration.

Flow:
  1. generate_auth_url(provider)  -> (url, state). A PKCEChallenge keyed by
     state is stored; the caller redirects the browser to url.
  2. handle_callback(provider, code, state) -> OAuthUserInfo. The state entry
     is consumed, the code exchanged, and the provider's identity normalized.
  3. link_or_create_user(user_info) -> (user_id, is_new_user) via the
     UserLinker collaborator. The caller then mints a TokenPair.

Security notes:
  [O1] State is single-use. The callback consumes the entry with an atomic
       pop before any provider contact, so a replayed or concurrent callback
       carrying the same state fails with InvalidStateError. The entry is gone
       even if the code exchange later fails.

  [O2] State is pinned to its provider. A state issued for Google is rejected
       on the Apple callback and vice versa.

  [O3] The entry is stored whether or not PKCE is used, so the state check
       (CSRF protection) never depends on the PKCE choice.

Layer rule: no imports from core/ except for the Settings type.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, Protocol

from auth.errors import AccountLinkingError, InvalidCodeError, InvalidProviderError, InvalidStateError
from auth.models import OAuthProvider, OAuthUserInfo, PKCEChallenge
from auth.pkce import generate_code_challenge, generate_code_verifier, generate_state
from auth.providers import AppleProvider, GoogleProvider, ProviderClient
from auth.store import StateStore

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.oauth")

DEFAULT_HTTP_TIMEOUT = 10.0


class UserLinker(Protocol):
    """Account persistence owned by the host application."""

    def find_user_by_email(self, email: str) -> tuple[str, bool]: ...

    def link_oauth_account(self, user_id: str, provider: OAuthProvider, provider_user_id: str) -> None: ...

    def create_user_from_oauth(self, user_info: OAuthUserInfo) -> str: ...


class OAuthOrchestrator:
    """Drive the authorization-code (+PKCE) flow across configured providers.

    Holds no per-request state of its own; everything between the redirect and
    the callback lives in the StateStore. Safe to share between threads.
    """

    def __init__(
        self,
        providers: Iterable[ProviderClient],
        state_store: StateStore,
        user_linker: UserLinker | None = None,
        *,
        http_timeout: float = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        self._providers: dict[OAuthProvider, ProviderClient] = {p.name: p for p in providers}
        self._state_store = state_store
        self._user_linker = user_linker
        self.http_timeout = http_timeout

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        state_store: StateStore,
        user_linker: UserLinker | None = None,
    ) -> OAuthOrchestrator:
        providers = [GoogleProvider.from_settings(settings), AppleProvider.from_settings(settings)]
        orchestrator = cls(
            providers,
            state_store,
            user_linker,
            http_timeout=settings.oauth_http_timeout_seconds,
        )
        for info in orchestrator.enabled_providers():
            logger.info("%s OAuth provider registered", info["label"])
        return orchestrator

    # ------------------------------------------------------------------
    # Provider lookup
    # ------------------------------------------------------------------

    def enabled_providers(self) -> list[dict]:
        """Return {"name", "label"} for every configured provider."""
        return [{"name": p.name.value, "label": p.label} for p in self._providers.values() if p.configured]

    def _provider(self, provider: OAuthProvider | str) -> ProviderClient:
        try:
            key = OAuthProvider(provider)
        except ValueError:
            raise InvalidProviderError(f"Unsupported OAuth provider: {provider!r}") from None
        client = self._providers.get(key)
        if client is None or not client.configured:
            raise InvalidProviderError(f"OAuth provider {key.value!r} is not configured")
        return client

    # ------------------------------------------------------------------
    # Flow
    # ------------------------------------------------------------------

    def generate_auth_url(self, provider: OAuthProvider | str, use_pkce: bool = True) -> tuple[str, str]:
        """Start a sign-in attempt. Returns (authorization_url, state) [O3]."""
        client = self._provider(provider)
        state = generate_state()
        code_verifier = code_challenge = ""
        if use_pkce:
            code_verifier = generate_code_verifier()
            code_challenge = generate_code_challenge(code_verifier)

        self._state_store.store_pkce_challenge(
            state,
            PKCEChallenge(
                code_verifier=code_verifier,
                code_challenge=code_challenge,
                state=state,
                provider=client.name,
            ),
        )
        url = client.authorization_url(state, code_verifier or None)
        logger.debug("Issued %s authorization URL (pkce=%s)", client.name.value, use_pkce)
        return url, state

    def handle_callback(
        self,
        provider: OAuthProvider | str,
        code: str,
        state: str,
        *,
        timeout: float | None = None,
    ) -> OAuthUserInfo:
        """Complete a sign-in attempt and return the provider's identity.

        timeout bounds each provider request (defaults to http_timeout).

        Raises:
            InvalidProviderError:      provider unknown or not configured.
            InvalidStateError:         state unknown, expired, reused, or issued
                                       for a different provider [O1][O2].
            InvalidCodeError:          the provider rejected the code.
            ProviderUnavailableError:  the provider could not be reached.
            UserInfoFetchError:        the userinfo call failed (Google).
            InvalidProviderTokenError: the ID token failed verification (Apple).
        """
        client = self._provider(provider)
        challenge = self._state_store.consume_pkce_challenge(state) if state else None
        if challenge is None:
            logger.warning("Rejected %s callback with unknown or reused state", client.name.value)
            raise InvalidStateError()
        if challenge.provider != client.name:
            logger.warning(
                "Rejected %s callback carrying a state issued for %s",
                client.name.value,
                challenge.provider.value,
            )
            raise InvalidStateError()
        if not code:
            raise InvalidCodeError("Callback carried no authorization code")

        request_timeout = timeout if timeout is not None else self.http_timeout
        token = client.exchange_code(code, challenge.code_verifier or None, request_timeout)
        user_info = client.fetch_user_info(token, request_timeout)
        logger.info("%s sign-in completed for provider user %s", client.name.value, user_info.provider_user_id)
        return user_info

    def link_or_create_user(self, user_info: OAuthUserInfo) -> tuple[str, bool]:
        """Resolve user_info to a local user. Returns (user_id, is_new_user).

        An existing account with the same email gets the provider identity
        linked to it; otherwise a new account is created.
        """
        if self._user_linker is None:
            raise AccountLinkingError("No user linker configured")
        # Accounts are matched by email; an empty one would match every other empty one.
        if not user_info.email.strip() or not user_info.provider_user_id.strip():
            raise AccountLinkingError("Provider identity has no email or user id")
        try:
            user_id, exists = self._user_linker.find_user_by_email(user_info.email)
            if exists:
                self._user_linker.link_oauth_account(user_id, user_info.provider, user_info.provider_user_id)
                logger.info("Linked %s identity to user %s", user_info.provider.value, user_id)
                return user_id, False
            user_id = self._user_linker.create_user_from_oauth(user_info)
        except AccountLinkingError:
            raise
        except Exception as exc:
            logger.exception("Account linking failed for %s identity", user_info.provider.value)
            raise AccountLinkingError(f"Account linking failed: {exc}") from exc
        logger.info("Created user %s from %s sign-in", user_id, user_info.provider.value)
        return user_id, True
