"""
auth/errors.py -- Error taxonomy for the token and OAuth services.

Every failure the services can report is a distinct exception class so the
HTTP layer can tell them apart with a plain `except` clause. Each class
carries a stable `code` (safe to show to clients) and the HTTP status the
HTTP layer is expected to map it to. The services never pick a status
themselves and never retry.

Layer rule: stdlib only. No imports from core/ or any other auth/ module.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every error raised by the auth package."""

    code: str = "auth_error"
    status_code: int = 500

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = str(self.args[0])

    def to_dict(self) -> dict:
        """Render the {"code", "message"} body used by error responses."""
        return {"code": self.code, "message": self.message}


# ---------------------------------------------------------------------------
# Token errors -- all map to 401
# ---------------------------------------------------------------------------


class TokenError(AuthError):
    """Bearer token rejected."""

    code = "invalid_token"
    status_code = 401


class InvalidTokenError(TokenError):
    """Token is malformed, has a bad signature, or is the wrong token type."""

    code = "invalid_token"


class TokenExpiredError(TokenError):
    """Token has expired."""

    code = "token_expired"


class TokenBlacklistedError(TokenError):
    """Token has been revoked."""

    code = "token_revoked"


# ---------------------------------------------------------------------------
# Key configuration
# ---------------------------------------------------------------------------


class KeyConfigurationError(AuthError):
    """Signing key material could not be loaded."""

    code = "key_configuration"


class SigningKeyUnavailableError(AuthError):
    """This service holds only a public key and cannot issue tokens."""

    code = "signing_unavailable"


# ---------------------------------------------------------------------------
# OAuth flow errors
# ---------------------------------------------------------------------------


class OAuthFlowError(AuthError):
    """OAuth sign-in failed."""

    code = "oauth_failed"
    status_code = 400


class InvalidProviderError(OAuthFlowError):
    """Unsupported or unconfigured OAuth provider."""

    code = "invalid_provider"


class InvalidStateError(OAuthFlowError):
    """OAuth state is unknown, expired, or already used."""

    code = "invalid_state"


class InvalidCodeError(OAuthFlowError):
    """Provider rejected the authorization code."""

    code = "invalid_code"


class InvalidProviderTokenError(OAuthFlowError):
    """Provider ID token is malformed or failed verification."""

    code = "invalid_provider_token"


class ProviderUnavailableError(OAuthFlowError):
    """OAuth provider could not be reached."""

    code = "provider_unavailable"
    status_code = 502


class UserInfoFetchError(OAuthFlowError):
    """Failed to fetch user info from the provider."""

    code = "user_info_fetch_failed"
    status_code = 502


class AccountLinkingError(OAuthFlowError):
    """Account linking failed."""

    code = "account_linking_failed"
    status_code = 500


__all__ = [
    "AuthError",
    "TokenError",
    "InvalidTokenError",
    "TokenExpiredError",
    "TokenBlacklistedError",
    "KeyConfigurationError",
    "SigningKeyUnavailableError",
    "OAuthFlowError",
    "InvalidProviderError",
    "InvalidStateError",
    "InvalidCodeError",
    "InvalidProviderTokenError",
    "ProviderUnavailableError",
    "UserInfoFetchError",
    "AccountLinkingError",
]
