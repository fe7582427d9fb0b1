"""
hdpay.api.deps — FastAPI dependency injection
==============================================

The admin API is guarded by an HS256 bearer token carrying an ``is_admin``
claim.  The signing secret is checked once, at import, so a misconfigured
deployment fails on boot instead of accepting forgeable tokens.
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError

from hdpay.config import HdPayConfig, load_config
from hdpay.services.context import AppContext

JWT_ALGORITHM = "HS256"
MIN_JWT_SECRET_LENGTH = 32

# Placeholders that ship in examples and tutorials
_WEAK_JWT_SECRETS = frozenset({
    "hdpay-dev-secret-change-me",
    "change-me",
    "changeme",
    "secret",
    "dev",
})


def _jwt_secret_problem(secret: str) -> str | None:
    """Why *secret* is unusable, or ``None`` if it is acceptable."""
    if not secret:
        return (
            "JWT_SECRET environment variable is not set "
            "(generate one with `openssl rand -base64 48`)"
        )
    if secret.lower() in _WEAK_JWT_SECRETS:
        return f"JWT_SECRET is a known weak default ('{secret}')"
    if len(secret) < MIN_JWT_SECRET_LENGTH:
        return (
            f"JWT_SECRET is too short ({len(secret)} chars, "
            f"need at least {MIN_JWT_SECRET_LENGTH})"
        )
    return None


def _load_jwt_secret() -> str:
    secret = os.getenv("JWT_SECRET", "").strip()
    problem = _jwt_secret_problem(secret)
    if problem is not None:
        raise RuntimeError(f"{problem}; the admin API will not start without a strong secret.")
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_config() -> HdPayConfig:
    return load_config(os.getenv("HDPAY_CONFIG", "config.yaml"))


@lru_cache(maxsize=1)
def get_context() -> AppContext:
    return AppContext.from_env(get_config())


def _bearer_token(authorization: str | None) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme != "Bearer" or not token:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    return token


def get_current_admin(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Decoded claims of a valid admin token; 401 if invalid, 403 if not admin."""
    try:
        claims = jwt.decode(_bearer_token(authorization), JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token") from None
    if claims.get("is_admin") is not True:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return claims


ContextDep = Annotated[AppContext, Depends(get_context)]
AdminDep = Annotated[dict, Depends(get_current_admin)]
