"""Upstream credential minting.

The upstream provider authenticates each call with a short-lived HS256 JWT
signed with the secret half of a ``<identifier>.<signingKey>`` API key. The
header carries ``sign_type: SIGN`` in addition to the standard ``alg``/``typ``.

A fresh credential is minted for every outbound call; nothing is cached.
"""

import logging
import time
from typing import Optional

import jwt
from jwt.exceptions import PyJWTError as JWTError

from .errors import InvalidCredentialMaterial, SigningFailure
from .models import Credential

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
TOKEN_HEADERS = {"alg": ALGORITHM, "typ": "JWT", "sign_type": "SIGN"}


def split_secret(secret: Optional[str]) -> tuple:
    """Split ``<identifier>.<signingKey>`` into its two parts."""
    if not secret or not isinstance(secret, str):
        raise InvalidCredentialMaterial("invalid API key", detail="JIUTIAN_API_KEY is not set")
    parts = secret.split(".")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise InvalidCredentialMaterial(
            "invalid API key",
            detail="API key must have the form <identifier>.<signingKey>",
        )
    return parts[0], parts[1]


def mint(secret: str, lifetime_seconds: int = 3600, now: Optional[float] = None) -> Credential:
    """
    Mint a signed credential for one upstream call.

    Args:
        secret: The shared secret, ``<identifier>.<signingKey>``
        lifetime_seconds: Seconds until the token expires
        now: Issuance time override (epoch seconds), mainly for tests

    Returns:
        Credential holding the token and its issuance/expiry instants

    Raises:
        InvalidCredentialMaterial: the secret cannot be split
        SigningFailure: the signature could not be computed
    """
    key_id, signing_key = split_secret(secret)
    issued_at = int(now if now is not None else time.time())
    expires_at = issued_at + int(lifetime_seconds)

    payload = {
        "api_key": key_id,
        "exp": expires_at,
        "timestamp": issued_at,
    }
    try:
        token = jwt.encode(payload, signing_key, algorithm=ALGORITHM, headers=TOKEN_HEADERS)
    except (JWTError, TypeError, ValueError) as e:
        logger.error(f"JWT signing failed: {str(e)}")
        raise SigningFailure("failed to sign upstream credential", detail=str(e)) from e

    return Credential(token=token, issued_at=issued_at, expires_at=expires_at)
