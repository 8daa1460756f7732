"""
auth/pkce.py -- State and PKCE (RFC 7636) value generation.

  state:          32 random bytes, URL-safe base64 (43 chars). CSRF token
                  echoed back by the provider on the callback.
  code_verifier:  96 random bytes -> 128 URL-safe chars, the RFC maximum.
  code_challenge: base64url(SHA256(code_verifier)) without padding (S256).
"""

from __future__ import annotations

import secrets

from authlib.oauth2.rfc7636 import create_s256_code_challenge

STATE_BYTES = 32
VERIFIER_BYTES = 96


def generate_state() -> str:
    return secrets.token_urlsafe(STATE_BYTES)


def generate_code_verifier() -> str:
    return secrets.token_urlsafe(VERIFIER_BYTES)


def generate_code_challenge(code_verifier: str) -> str:
    """Return the S256 code challenge for code_verifier."""
    return create_s256_code_challenge(code_verifier)
