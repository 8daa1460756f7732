"""Unit tests for auth/pkce.py.

Covers:
- RFC 7636 Appendix B test vector for the S256 challenge
- Verifier and state length/alphabet
"""

import re

from auth.pkce import generate_code_challenge, generate_code_verifier, generate_state

_URLSAFE = re.compile(r"^[A-Za-z0-9_-]+$")

RFC_VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
RFC_CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_challenge_matches_rfc_vector() -> None:
    assert generate_code_challenge(RFC_VERIFIER) == RFC_CHALLENGE


def test_challenge_is_deterministic() -> None:
    verifier = generate_code_verifier()
    assert generate_code_challenge(verifier) == generate_code_challenge(verifier)


def test_verifier_shape() -> None:
    verifier = generate_code_verifier()
    assert len(verifier) == 128
    assert _URLSAFE.match(verifier)


def test_state_shape_and_uniqueness() -> None:
    states = {generate_state() for _ in range(50)}
    assert len(states) == 50
    for state in states:
        assert len(state) == 43
        assert _URLSAFE.match(state)
