"""Caller-principal JWTs for the HTTP surface."""

from __future__ import annotations

import time
from typing import Any

import jwt

from ..config import get_settings


def issue_caller_token(*, principal: str, ttl_seconds: int | None = None) -> tuple[str, int]:
    """Create a signed JWT naming ``principal`` as the caller.

    The engine never authenticates transports itself; this token is how the
    service host hands a caller principal to the routes.

    Parameters
    ----------
    principal:
        Opaque caller identity embedded in the ``sub`` claim.
    ttl_seconds:
        Optional override for the configured token lifetime.

    Returns
    -------
    tuple[str, int]
        The encoded JWT and its TTL in seconds.
    """

    settings = get_settings()
    now = int(time.time())
    expires_in = ttl_seconds if ttl_seconds is not None else settings.jwt_ttl_seconds
    payload: dict[str, Any] = {
        "iss": settings.jwt_issuer,
        "sub": principal,
        "iat": now,
        "exp": now + expires_in,
    }
    token = jwt.encode(payload, settings.jwt_secret, algorithm="HS256")
    return token, expires_in


def decode_caller_token(token: str) -> str:
    """Verify ``token`` and return the caller principal it names.

    Raises
    ------
    jwt.PyJWTError
        Propagated when the token is invalid, expired, or from another issuer.
    """

    settings = get_settings()
    claims = jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        issuer=settings.jwt_issuer,
        options={"require": ["sub", "exp"]},
    )
    return str(claims["sub"])
