"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer authentication.

An `Authorization: Bearer <token>` header is turned into verified
TokenClaims by the TokenService on app.state.token_service.

try_get_current_claims() is the soft variant (returns None on failure).
get_current_claims() raises HTTP 401 with the error's stable code, so clients
can tell an expired token (refresh and retry) from a revoked or invalid one
(sign in again).

Layer rule: no imports from core/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import TokenError
from auth.models import TokenClaims
from auth.tokens import TokenService

_BEARER_PREFIX = "bearer "


def get_bearer_token(request: Request) -> str | None:
    """Return the token from the Authorization header, or None.

    The scheme name is matched case-insensitively.
    """
    header = request.headers.get("Authorization", "")
    if header[: len(_BEARER_PREFIX)].lower() != _BEARER_PREFIX:
        return None
    token = header[len(_BEARER_PREFIX) :].strip()
    return token or None


def _token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def try_get_current_claims(request: Request) -> TokenClaims | None:
    """Attempt to authenticate the request. Never raises for token problems."""
    token = get_bearer_token(request)
    if token is None:
        return None
    try:
        return _token_service(request).validate_access_token(token)
    except TokenError:
        return None


def get_current_claims(request: Request) -> TokenClaims:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/me")
        async def me(claims: TokenClaims = Depends(get_current_claims)): ...
    """
    token = get_bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return _token_service(request).validate_access_token(token)
    except TokenError as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail=exc.to_dict(),
            headers={"WWW-Authenticate": f'Bearer error="invalid_token", error_description="{exc.code}"'},
        ) from exc
