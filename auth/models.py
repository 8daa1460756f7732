"""
auth/models.py -- Domain dataclasses for tokens and OAuth sign-in.

Pattern: Data class (pure data container, almost no logic). Services do the
work; these types only fix the shape of what flows between them.

Provider payloads are parsed into small per-provider records (GoogleUserInfo,
AppleIDTokenClaims) and then normalized into OAuthUserInfo, so callers always
see one stable shape regardless of which provider signed the user in.

Layer rule: stdlib only. No imports from core/ or other auth/ modules.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def _required(payload: dict, key: str) -> str:
    """Return payload[key] as a non-empty string.

    Raises KeyError when absent, ValueError when null, empty or not a scalar id.
    """
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise ValueError(f"{key} must be a string")
    value = str(value).strip()
    if not value:
        raise ValueError(f"{key} is empty")
    return value


class OAuthProvider(str, Enum):
    GOOGLE = "google"
    APPLE = "apple"


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenPair:
    """An access/refresh token pair returned once per issuance or refresh.

    Nothing about the pair is stored server-side. expires_at is the access
    token's expiry -- the refresh token lives longer.
    """

    access_token: str
    refresh_token: str
    expires_at: datetime

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "bearer",
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class TokenClaims:
    """Identity recovered from a verified token. Never persisted."""

    user_id: str
    email: str
    token_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RevocationEntry:
    key: str  # token id (jti)
    expires_at: datetime


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PKCEChallenge:
    """Per-attempt state for an authorization request, keyed by state.

    code_verifier and code_challenge are empty when the attempt was started
    without PKCE -- the entry still exists so the state can be checked.
    provider pins the state to the provider it was issued for.
    """

    code_verifier: str
    code_challenge: str
    state: str
    provider: OAuthProvider
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def uses_pkce(self) -> bool:
        return bool(self.code_verifier)


@dataclass(frozen=True)
class OAuthUserInfo:
    """Normalized user information handed to the account linker."""

    provider_user_id: str
    email: str
    provider: OAuthProvider
    email_verified: bool = False
    name: str = ""
    given_name: str = ""
    family_name: str = ""
    picture: str = ""
    locale: str = ""


@dataclass(frozen=True)
class GoogleUserInfo:
    """Response of Google's v2 userinfo endpoint."""

    id: str
    email: str
    verified_email: bool = False
    name: str = ""
    given_name: str = ""
    family_name: str = ""
    picture: str = ""
    locale: str = ""

    @classmethod
    def from_payload(cls, payload: dict) -> GoogleUserInfo:
        # v2 reports "verified_email"; the OIDC-style payload uses "email_verified".
        verified = payload.get("verified_email", payload.get("email_verified", False))
        return cls(
            id=_required(payload, "id"),
            email=_required(payload, "email"),
            verified_email=bool(verified),
            name=payload.get("name", ""),
            given_name=payload.get("given_name", ""),
            family_name=payload.get("family_name", ""),
            picture=payload.get("picture", ""),
            locale=payload.get("locale", ""),
        )

    def normalize(self) -> OAuthUserInfo:
        return OAuthUserInfo(
            provider_user_id=self.id,
            email=self.email,
            provider=OAuthProvider.GOOGLE,
            email_verified=self.verified_email,
            name=self.name,
            given_name=self.given_name,
            family_name=self.family_name,
            picture=self.picture,
            locale=self.locale,
        )


@dataclass(frozen=True)
class AppleIDTokenClaims:
    """The subset of a verified Apple ID token we care about."""

    sub: str
    email: str = ""
    email_verified: bool = False
    name: str = ""

    @classmethod
    def from_claims(cls, claims: dict) -> AppleIDTokenClaims:
        verified = claims.get("email_verified", False)
        # Apple has sent this both as a JSON boolean and as "true"/"false".
        if isinstance(verified, str):
            verified = verified.lower() == "true"
        return cls(
            sub=_required(claims, "sub"),
            email=_required(claims, "email"),
            email_verified=bool(verified),
            name=claims.get("name", ""),
        )

    def normalize(self) -> OAuthUserInfo:
        return OAuthUserInfo(
            provider_user_id=self.sub,
            email=self.email,
            provider=OAuthProvider.APPLE,
            email_verified=self.email_verified,
            name=self.name,
        )
