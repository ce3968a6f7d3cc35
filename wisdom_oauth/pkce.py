"""PKCE (Proof Key for Code Exchange) implementation.

RFC 7636 - Proof Key for Code Exchange for OAuth 2.0 public clients.
Uses S256 challenge method (SHA-256 hash of the code verifier).
"""

from __future__ import annotations

import base64
import hashlib
import re
import secrets

from dataclasses import dataclass


_NON_ALPHANUMERIC = re.compile(r"[^a-zA-Z0-9]")

# Minimum accepted verifier length after stripping non-alphanumerics
MIN_VERIFIER_LENGTH = 50
_VERIFIER_BYTES = 44


def generate_code_verifier() -> str:
    """Generate a random alphanumeric verifier of 50 to 60 characters.

    44 random bytes encode to 60 base64 characters; ``+``, ``/`` and
    ``=`` are stripped and generation is retried while the remainder
    is shorter than 50 characters.

    Returns
    -------
    str
        The code verifier.
    """
    while True:
        secret = base64.b64encode(secrets.token_bytes(_VERIFIER_BYTES)).decode("ascii")
        verifier = _NON_ALPHANUMERIC.sub("", secret)
        if len(verifier) >= MIN_VERIFIER_LENGTH:
            return verifier


def generate_code_challenge(verifier: str) -> str:
    """Derive the S256 code challenge for a verifier.

    Parameters
    ----------
    verifier : str
        The code verifier.

    Returns
    -------
    str
        base64url(SHA-256(verifier)) without ``=`` padding.
    """
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE code verifier and challenge pair.

    Attributes
    ----------
    verifier : str
        The code verifier (high-entropy random string).
    challenge : str
        The code challenge (base64url-encoded SHA-256 hash of verifier).
    method : str
        The challenge method, always "S256".
    """

    verifier: str
    challenge: str
    method: str = "S256"

    @classmethod
    def generate(cls) -> PKCEChallenge:
        """Generate a new PKCE code verifier and challenge.

        Returns
        -------
        PKCEChallenge
            A new PKCE challenge pair.
        """
        verifier = generate_code_verifier()
        return cls(verifier=verifier, challenge=generate_code_challenge(verifier))
