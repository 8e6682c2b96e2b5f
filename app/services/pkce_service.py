from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass

# PKCE (RFC 7636) material for the authorization step, plus the state nonce
# that binds the redirect back to the flow that started it.

# RFC 7636 §4.1 "unreserved" characters.
_UNRESERVED = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"

CODE_VERIFIER_LENGTH = 64
STATE_LENGTH = 32


@dataclass(frozen=True, slots=True)
class PKCEPair:
    code_verifier: str
    code_challenge: str
    code_challenge_method: str = "S256"


def _random_string(length: int) -> str:
    # secrets.choice draws uniformly, so no modulo bias over the 66-char set.
    return "".join(secrets.choice(_UNRESERVED) for _ in range(length))


def generate_code_verifier() -> str:
    return _random_string(CODE_VERIFIER_LENGTH)


# compute code challenge from code verifier using S256 method
def compute_code_challenge(code_verifier: str) -> str:
    code_verifier_bytes = code_verifier.encode("utf-8")
    sha256_digest = hashlib.sha256(code_verifier_bytes).digest()
    code_challenge = (
        base64.urlsafe_b64encode(sha256_digest).rstrip(b"=").decode("utf-8")
    )
    return code_challenge


def verify_code_challenge(code_verifier: str, expected_challenge: str) -> bool:
    """Compare the challenge derived from ``code_verifier`` against ``expected_challenge``.

    Constant-time, so it is safe to use on values pasted back from a server.
    """
    actual_challenge = compute_code_challenge(code_verifier)
    return hmac.compare_digest(actual_challenge, expected_challenge)


def generate_pkce() -> PKCEPair:
    code_verifier = generate_code_verifier()
    return PKCEPair(
        code_verifier=code_verifier,
        code_challenge=compute_code_challenge(code_verifier),
        code_challenge_method="S256",
    )


def generate_state() -> str:
    """CSRF-binding nonce for the authorization request."""
    return _random_string(STATE_LENGTH)
