"""
auth/tokens.py -- Bearer token issuance, validation, rotation and revocation.

Security design decisions:
  JWT: python-jose with RS256. Tokens are signed with an RSA private key and
       verified with the public key, so a component that only validates tokens
       never needs to hold the private key. Each token carries user_id, email,
       a unique jti, iat/nbf/exp, iss and aud. The audience doubles as the
       token type: access tokens are "gatekeeper-app", refresh tokens are
       "gatekeeper-refresh", and one is never accepted in place of the other.

  Validation order [T1]: signature and structure first (InvalidTokenError,
       which covers a future nbf), then expiry (TokenExpiredError), then the
       revocation store (TokenBlacklistedError). Nothing embedded in a token
       is trusted until the signature checks out, and the store lookup runs
       last. nbf and exp are both compared with the injected clock.

  Rotation [T2]: refresh_tokens() revokes the presented refresh token's jti
       before minting the new pair. A stolen refresh token that has already
       been used fails on replay. The check-and-revoke step runs under a lock
       so two concurrent refreshes with the same token cannot both succeed.

  Revocation [T3]: blacklist entries live until the token's own exp, then
       expire with it. An already-expired token needs no entry.

  Key material [T4]: PEM private key (PKCS#1 or PKCS#8) and/or PEM public
       key. Private only -> public key derived. Public only -> verify-only
       service. Neither -> an ephemeral 2048-bit key (development only; see
       core/config.py for the production policy).

Layer rule: no imports from core/ except for the Settings type in
from_settings().
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import JWTError, jwt

from auth.errors import (
    InvalidTokenError,
    KeyConfigurationError,
    SigningKeyUnavailableError,
    TokenBlacklistedError,
    TokenExpiredError,
)
from auth.models import TokenClaims, TokenPair
from auth.store import BlacklistStore

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.tokens")

_ALGORITHM = "RS256"

ACCESS_AUDIENCE = "gatekeeper-app"
REFRESH_AUDIENCE = "gatekeeper-refresh"

DEFAULT_ACCESS_TTL = timedelta(minutes=15)
DEFAULT_REFRESH_TTL = timedelta(days=7)
DEFAULT_ISSUER = "gatekeeper"


# ---------------------------------------------------------------------------
# Key loading
# ---------------------------------------------------------------------------


def _load_private_key(pem: str) -> rsa.RSAPrivateKey:
    try:
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except (ValueError, TypeError) as exc:
        raise KeyConfigurationError(f"Failed to parse private key: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyConfigurationError("Private key is not an RSA key.")
    return key


def _load_public_key(pem: str) -> rsa.RSAPublicKey:
    try:
        key = serialization.load_pem_public_key(pem.encode("utf-8"))
    except (ValueError, TypeError) as exc:
        raise KeyConfigurationError(f"Failed to parse public key: {exc}") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise KeyConfigurationError("Public key is not an RSA key.")
    return key


def _private_pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def _public_pem(key: rsa.RSAPublicKey) -> str:
    return key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")


def generate_rsa_keypair(key_size: int = 2048) -> tuple[str, str]:
    """Return a fresh (private_pem, public_pem) pair."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return _private_pem(private_key), _public_pem(private_key.public_key())


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Issue, verify, rotate and revoke RS256 bearer token pairs.

    Thread-safe: the only mutable state it touches is the blacklist store,
    which does its own locking.
    """

    def __init__(
        self,
        private_key_pem: str | None = None,
        public_key_pem: str | None = None,
        *,
        blacklist: BlacklistStore,
        access_ttl: timedelta = DEFAULT_ACCESS_TTL,
        refresh_ttl: timedelta = DEFAULT_REFRESH_TTL,
        issuer: str = DEFAULT_ISSUER,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._blacklist = blacklist
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.issuer = issuer
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._rotation_lock = threading.Lock()

        self._private_key_pem: str | None = None
        if private_key_pem:
            private_key = _load_private_key(private_key_pem)
            derived_public = private_key.public_key()
            if public_key_pem:
                public_key = _load_public_key(public_key_pem)
                if public_key.public_numbers() != derived_public.public_numbers():
                    raise KeyConfigurationError("Public key does not match the private key.")
            self._private_key_pem = _private_pem(private_key)
            self._public_key_pem = _public_pem(derived_public)
        elif public_key_pem:
            self._public_key_pem = _public_pem(_load_public_key(public_key_pem))
            logger.info("TokenService running in verify-only mode (no private key)")
        else:
            self._private_key_pem, self._public_key_pem = generate_rsa_keypair()
            logger.warning(
                "No signing keys configured -- using an ephemeral RSA key. " "Issued tokens will not survive a restart."
            )

    @classmethod
    def from_settings(cls, settings: Settings, blacklist: BlacklistStore) -> TokenService:
        return cls(
            settings.jwt_private_key or None,
            settings.jwt_public_key or None,
            blacklist=blacklist,
            access_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
            refresh_ttl=timedelta(seconds=settings.refresh_token_ttl_seconds),
            issuer=settings.jwt_issuer,
        )

    @property
    def public_key_pem(self) -> str:
        """PEM public key, for configuring verify-only services elsewhere."""
        return self._public_key_pem

    @property
    def can_sign(self) -> bool:
        return self._private_key_pem is not None

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def generate_token_pair(self, user_id: str, email: str) -> TokenPair:
        """Mint a new access/refresh pair for (user_id, email).

        Each token gets its own jti so either can be revoked without touching
        the other.
        """
        self._require_signer()
        # jose truncates exp to whole seconds; keep expires_at in step with it.
        now = self._clock().replace(microsecond=0)
        access_expires = now + self.access_ttl
        access_token = self._encode(user_id, email, ACCESS_AUDIENCE, now, access_expires)
        refresh_token = self._encode(user_id, email, REFRESH_AUDIENCE, now, now + self.refresh_ttl)
        return TokenPair(access_token=access_token, refresh_token=refresh_token, expires_at=access_expires)

    def _encode(self, user_id: str, email: str, audience: str, now: datetime, expires: datetime) -> str:
        payload = {
            "user_id": user_id,
            "email": email,
            "jti": str(uuid.uuid4()),
            "sub": user_id,
            "iat": now,
            "nbf": now,
            "exp": expires,
            "iss": self.issuer,
            "aud": audience,
        }
        return jwt.encode(payload, self._private_key_pem, algorithm=_ALGORITHM)

    def _require_signer(self) -> None:
        if self._private_key_pem is None:
            raise SigningKeyUnavailableError()

    # ------------------------------------------------------------------
    # Validation [T1]
    # ------------------------------------------------------------------

    def validate_access_token(self, token: str) -> TokenClaims:
        """Return the claims of a valid, unexpired, unrevoked access token.

        Raises:
            InvalidTokenError:     bad signature, malformed, or a refresh token.
            TokenExpiredError:     exp has passed.
            TokenBlacklistedError: the token was revoked.
        """
        claims = self._verify(token, ACCESS_AUDIENCE)
        self._check_not_revoked(claims)
        return claims

    def validate_refresh_token(self, token: str) -> TokenClaims:
        """Same checks as validate_access_token(), for refresh tokens."""
        claims = self._verify(token, REFRESH_AUDIENCE)
        self._check_not_revoked(claims)
        return claims

    def _verify(self, token: str, audience: str | None, *, check_expiry: bool = True) -> TokenClaims:
        """Verify signature and structure, then (optionally) expiry.

        audience=None accepts either token type.
        """
        if not isinstance(token, str) or not token:
            raise InvalidTokenError()
        options = {
            # exp and nbf are checked below against the service clock.
            "verify_exp": False,
            "verify_nbf": False,
            "verify_aud": audience is not None,
            "require_aud": audience is not None,
            "require_iat": True,
            "require_sub": True,
            "require_jti": True,
            "verify_at_hash": False,
        }
        try:
            payload = jwt.decode(
                token,
                self._public_key_pem,
                algorithms=[_ALGORITHM],
                audience=audience,
                issuer=self.issuer,
                options=options,
            )
        except JWTError as exc:
            raise InvalidTokenError() from exc

        if audience is None and payload.get("aud") not in (ACCESS_AUDIENCE, REFRESH_AUDIENCE):
            raise InvalidTokenError()

        claims = _claims_from_payload(payload)
        if self._clock() < _not_before(payload):
            raise InvalidTokenError()
        if check_expiry and self._clock() >= claims.expires_at:
            raise TokenExpiredError()
        return claims

    def _check_not_revoked(self, claims: TokenClaims) -> None:
        if self._blacklist.is_blacklisted(claims.token_id):
            raise TokenBlacklistedError()

    # ------------------------------------------------------------------
    # Rotation [T2] and revocation [T3]
    # ------------------------------------------------------------------

    def refresh_tokens(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair, revoking the old one."""
        self._require_signer()
        claims = self._verify(refresh_token, REFRESH_AUDIENCE)
        with self._rotation_lock:
            self._check_not_revoked(claims)
            self._blacklist.blacklist_token(claims.token_id, claims.expires_at)
        logger.info("Refresh token %s rotated for user %s", claims.token_id, claims.user_id)
        return self.generate_token_pair(claims.user_id, claims.email)

    def blacklist_token(self, token: str) -> None:
        """Revoke token (access or refresh) until its own expiry.

        The signature must verify; the token does not need to be unexpired.
        """
        claims = self._verify(token, None, check_expiry=False)
        if self._clock() >= claims.expires_at:
            logger.debug("Token %s already expired; nothing to revoke", claims.token_id)
            return
        self._blacklist.blacklist_token(claims.token_id, claims.expires_at)


def _not_before(payload: dict) -> datetime:
    nbf = payload.get("nbf")
    if isinstance(nbf, bool) or not isinstance(nbf, (int, float)):
        raise InvalidTokenError()
    try:
        return datetime.fromtimestamp(nbf, tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as exc:
        raise InvalidTokenError() from exc


def _claims_from_payload(payload: dict) -> TokenClaims:
    try:
        user_id = payload["user_id"]
        email = payload["email"]
        token_id = payload["jti"]
        iat = payload["iat"]
        exp = payload["exp"]
        if not all(isinstance(v, str) for v in (user_id, email, token_id)):
            raise TypeError("identity claims must be strings")
        if any(isinstance(v, bool) or not isinstance(v, (int, float)) for v in (iat, exp)):
            raise TypeError("time claims must be numeric")
        return TokenClaims(
            user_id=user_id,
            email=email,
            token_id=token_id,
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )
    except (KeyError, TypeError, ValueError, OverflowError, OSError) as exc:
        raise InvalidTokenError() from exc
