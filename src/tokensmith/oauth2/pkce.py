"""PKCE (Proof Key for Code Exchange) helpers.

RFC 7636 binds the token request to the authorize request: the client keeps a
random *code verifier* and sends ``BASE64URL(SHA256(verifier))`` as the
*code challenge*. Only the S256 method is supported.

Verifiers and challenges are never logged.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from typing import Final

# RFC 7636 §4.1: verifier length between 43 and 128 characters.
_VERIFIER_LEN: Final[int] = 64
_ALLOWED_CHARS: Final[str] = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ" "abcdefghijklmnopqrstuvwxyz" "0123456789" "-._~"
)


def generate_code_verifier(length: int = _VERIFIER_LEN) -> str:
    """Generate a high-entropy code verifier of *length* characters (43-128)."""
    if not 43 <= length <= 128:
        raise ValueError("code verifier length must be 43-128 characters")
    return "".join(secrets.choice(_ALLOWED_CHARS) for _ in range(length))


def code_challenge_s256(verifier: str) -> str:
    """Base64url-encoded SHA-256 of *verifier*, without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_code_verifier(verifier: str, challenge: str | None) -> bool:
    """True when *verifier* hashes to the stored *challenge*."""
    if not verifier or not challenge:
        return False
    try:
        computed = code_challenge_s256(verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(computed.encode(), challenge.encode("utf-8"))
