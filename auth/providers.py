"""
auth/providers.py -- Provider-specific OAuth clients (Google, Apple).

Each provider knows its own endpoints, how to build its authorization URL,
how to exchange a code, and how to turn its response into OAuthUserInfo. The
orchestrator (auth/oauth.py) drives the flow and never branches on provider
names itself.

Transport: authlib's requests OAuth2Session, one session per call so no HTTP
client state is shared between concurrent sign-ins. Every network call takes
a timeout; nothing is retried -- a provider outage surfaces immediately.

Error mapping:
  provider answered with an OAuth error / non-2xx / unreadable body
      -> InvalidCodeError (token endpoint) or UserInfoFetchError (userinfo)
  provider unreachable (connection error, timeout)
      -> ProviderUnavailableError, chained to the requests exception

Security notes:
  [A1] Apple ID tokens are verified against Apple's published JWKS (RS256,
       iss=https://appleid.apple.com, aud=our client id, exp) before any claim
       is read. Decoding the payload without verifying the signature would let
       anyone who can reach the callback forge an identity.

  [A2] The Apple client secret is a short-lived ES256 JWT signed with the
       team's private key, generated per exchange.

Layer rule: no imports from core/ except for the Settings type.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Protocol

import requests
from authlib.integrations.base_client import OAuthError
from authlib.integrations.requests_client import OAuth2Session
from jose import JWTError, jwt
from jose.exceptions import JOSEError

from auth.errors import (
    InvalidCodeError,
    InvalidProviderTokenError,
    KeyConfigurationError,
    ProviderUnavailableError,
    UserInfoFetchError,
)
from auth.models import AppleIDTokenClaims, GoogleUserInfo, OAuthProvider, OAuthUserInfo

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.providers")

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 -- URL, not a password
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

APPLE_ISSUER = "https://appleid.apple.com"
APPLE_AUTHORIZE_URL = "https://appleid.apple.com/auth/authorize"
APPLE_TOKEN_URL = "https://appleid.apple.com/auth/token"  # noqa: S105 -- URL, not a password
APPLE_KEYS_URL = "https://appleid.apple.com/auth/keys"

APPLE_CLIENT_SECRET_TTL = timedelta(minutes=5)
APPLE_KEYS_CACHE_SECONDS = 60 * 60

# Shared session for Apple's public key endpoint only (no credentials on it).
# max_redirects=3 -- a known public endpoint has no business redirecting far.
_session = requests.Session()
_session.max_redirects = 3


class ProviderClient(Protocol):
    name: OAuthProvider
    label: str

    @property
    def configured(self) -> bool: ...

    def authorization_url(self, state: str, code_verifier: str | None) -> str: ...

    def exchange_code(self, code: str, code_verifier: str | None, timeout: float) -> dict: ...

    def fetch_user_info(self, token: dict, timeout: float) -> OAuthUserInfo: ...


# ---------------------------------------------------------------------------
# Shared authorization-code mechanics
# ---------------------------------------------------------------------------


class _AuthorizationCodeProvider:
    """Authorization URL + code exchange common to both providers."""

    name: OAuthProvider
    label: str
    authorize_url: str
    token_url: str
    # Token response field that must be present for the exchange to count.
    required_token_field = "access_token"  # noqa: S105 -- field name

    def __init__(self, client_id: str, redirect_url: str, scope: str) -> None:
        self.client_id = client_id
        self.redirect_url = redirect_url
        self.scope = scope

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.redirect_url)

    def _client_secret(self) -> str | None:
        return None

    def _extra_authorize_params(self) -> dict[str, str]:
        return {}

    def _oauth_session(self, client_secret: str | None = None, token: dict | None = None) -> OAuth2Session:
        return OAuth2Session(
            client_id=self.client_id,
            client_secret=client_secret,
            redirect_uri=self.redirect_url,
            scope=self.scope,
            token=token,
            code_challenge_method="S256",
            token_endpoint_auth_method="client_secret_post",
        )

    def authorization_url(self, state: str, code_verifier: str | None) -> str:
        """Build the provider authorization URL.

        With a code_verifier, authlib adds code_challenge (S256 of the
        verifier) and code_challenge_method=S256.
        """
        with self._oauth_session() as session:
            url, _ = session.create_authorization_url(
                self.authorize_url,
                state=state,
                code_verifier=code_verifier or None,
                **self._extra_authorize_params(),
            )
        return url

    def exchange_code(self, code: str, code_verifier: str | None, timeout: float) -> dict:
        """Exchange an authorization code at the provider token endpoint."""
        params: dict[str, Any] = {"grant_type": "authorization_code", "code": code}
        if code_verifier:
            params["code_verifier"] = code_verifier
        with self._oauth_session(client_secret=self._client_secret()) as session:
            try:
                token = session.fetch_token(self.token_url, timeout=timeout, **params)
            except OAuthError as exc:
                raise InvalidCodeError(f"{self.label} rejected the authorization code: {exc.error}") from exc
            except requests.HTTPError as exc:
                status = exc.response.status_code if exc.response is not None else "unknown"
                raise InvalidCodeError(f"{self.label} token endpoint returned status {status}") from exc
            except ValueError as exc:
                # Includes requests' JSONDecodeError -- checked before RequestException.
                raise InvalidCodeError(f"{self.label} token endpoint returned an unreadable response") from exc
            except requests.RequestException as exc:
                logger.warning("%s token endpoint unreachable: %s", self.label, exc)
                raise ProviderUnavailableError(f"{self.label} token endpoint unreachable: {exc}") from exc

        if not token.get(self.required_token_field):
            raise InvalidCodeError(f"{self.label} token response has no {self.required_token_field}")
        return dict(token)


# ---------------------------------------------------------------------------
# Google
# ---------------------------------------------------------------------------


class GoogleProvider(_AuthorizationCodeProvider):
    name = OAuthProvider.GOOGLE
    label = "Google"
    authorize_url = GOOGLE_AUTHORIZE_URL
    token_url = GOOGLE_TOKEN_URL

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_url: str,
        scope: str = "openid email profile",
    ) -> None:
        super().__init__(client_id, redirect_url, scope)
        self.client_secret = client_secret

    @classmethod
    def from_settings(cls, settings: Settings) -> GoogleProvider:
        return cls(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            redirect_url=settings.google_redirect_url,
            scope=settings.google_scopes,
        )

    @property
    def configured(self) -> bool:
        return super().configured and bool(self.client_secret)

    def _client_secret(self) -> str | None:
        return self.client_secret

    def fetch_user_info(self, token: dict, timeout: float) -> OAuthUserInfo:
        """GET the v2 userinfo endpoint with the freshly obtained access token."""
        with self._oauth_session(token=token) as session:
            try:
                resp = session.get(GOOGLE_USERINFO_URL, timeout=timeout)
                resp.raise_for_status()
                payload = resp.json()
            except requests.HTTPError as exc:
                status = exc.response.status_code if exc.response is not None else "unknown"
                raise UserInfoFetchError(f"Google userinfo returned status {status}") from exc
            except ValueError as exc:
                raise UserInfoFetchError("Google userinfo returned an unreadable response") from exc
            except requests.RequestException as exc:
                logger.warning("Google userinfo unreachable: %s", exc)
                raise ProviderUnavailableError(f"Google userinfo unreachable: {exc}") from exc

        try:
            return GoogleUserInfo.from_payload(payload).normalize()
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise UserInfoFetchError("Google userinfo is missing id or email") from exc


# ---------------------------------------------------------------------------
# Apple
# ---------------------------------------------------------------------------


class AppleKeySet:
    """Cache of Apple's ID-token signing keys (JWKS), keyed by kid.

    Refetched when older than cache_seconds, and once more when a token names
    a kid we have not seen (Apple rotates keys).
    """

    def __init__(self, keys_url: str = APPLE_KEYS_URL, cache_seconds: float = APPLE_KEYS_CACHE_SECONDS) -> None:
        self.keys_url = keys_url
        self.cache_seconds = cache_seconds
        self._keys: dict[str, dict] = {}
        self._fetched_at = 0.0
        self._lock = threading.Lock()

    def get_key(self, kid: str, timeout: float) -> dict | None:
        with self._lock:
            fresh = time.monotonic() - self._fetched_at < self.cache_seconds
            if fresh and kid in self._keys:
                return self._keys[kid]
        keys = self._fetch(timeout)
        with self._lock:
            self._keys = keys
            self._fetched_at = time.monotonic()
        return keys.get(kid)

    def _fetch(self, timeout: float) -> dict[str, dict]:
        try:
            resp = _session.get(self.keys_url, timeout=timeout)
            resp.raise_for_status()
            entries = resp.json().get("keys", [])
        except (requests.RequestException, ValueError, AttributeError) as exc:
            logger.warning("Could not fetch Apple signing keys: %s", exc)
            raise ProviderUnavailableError(f"Apple signing keys unavailable: {exc}") from exc
        return {k["kid"]: k for k in entries if isinstance(k, dict) and "kid" in k}


class AppleProvider(_AuthorizationCodeProvider):
    name = OAuthProvider.APPLE
    label = "Apple"
    authorize_url = APPLE_AUTHORIZE_URL
    token_url = APPLE_TOKEN_URL
    required_token_field = "id_token"  # noqa: S105 -- field name

    def __init__(
        self,
        client_id: str,
        team_id: str,
        key_id: str,
        private_key: str,
        redirect_url: str,
        scope: str = "name email",
        key_set: AppleKeySet | None = None,
    ) -> None:
        super().__init__(client_id, redirect_url, scope)
        self.team_id = team_id
        self.key_id = key_id
        self.private_key = private_key
        self.key_set = key_set or AppleKeySet()

    @classmethod
    def from_settings(cls, settings: Settings) -> AppleProvider:
        return cls(
            client_id=settings.apple_client_id,
            team_id=settings.apple_team_id,
            key_id=settings.apple_key_id,
            private_key=settings.apple_private_key,
            redirect_url=settings.apple_redirect_url,
            scope=settings.apple_scopes,
        )

    @property
    def configured(self) -> bool:
        return super().configured and bool(self.team_id and self.key_id and self.private_key)

    def _extra_authorize_params(self) -> dict[str, str]:
        # Apple requires form_post whenever name/email scopes are requested.
        return {"response_mode": "form_post"}

    def _client_secret(self) -> str:
        """Sign the ES256 client-secret JWT Apple expects [A2]."""
        now = datetime.now(timezone.utc)
        claims = {
            "iss": self.team_id,
            "iat": now,
            "exp": now + APPLE_CLIENT_SECRET_TTL,
            "aud": APPLE_ISSUER,
            "sub": self.client_id,
        }
        try:
            return jwt.encode(claims, self.private_key, algorithm="ES256", headers={"kid": self.key_id})
        except JOSEError as exc:
            raise KeyConfigurationError("Apple client secret could not be signed; check APPLE_PRIVATE_KEY") from exc

    def fetch_user_info(self, token: dict, timeout: float) -> OAuthUserInfo:
        claims = self.verify_id_token(token["id_token"], timeout)
        try:
            return AppleIDTokenClaims.from_claims(claims).normalize()
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidProviderTokenError("Apple ID token is missing sub or email") from exc

    def verify_id_token(self, id_token: str, timeout: float) -> dict:
        """Verify an Apple ID token and return its claims [A1]."""
        try:
            header = jwt.get_unverified_header(id_token)
        except JWTError as exc:
            raise InvalidProviderTokenError("Apple ID token is malformed") from exc

        if header.get("alg") != "RS256" or not header.get("kid"):
            raise InvalidProviderTokenError("Apple ID token has an unexpected header")

        key = self.key_set.get_key(header["kid"], timeout)
        if key is None:
            raise InvalidProviderTokenError("Apple ID token was signed with an unknown key")

        try:
            return jwt.decode(
                id_token,
                key,
                algorithms=["RS256"],
                audience=self.client_id,
                issuer=APPLE_ISSUER,
                options={
                    "require_aud": True,
                    "require_exp": True,
                    "require_iss": True,
                    "require_sub": True,
                    "verify_at_hash": False,
                },
            )
        except JOSEError as exc:
            raise InvalidProviderTokenError(f"Apple ID token failed verification: {exc}") from exc
