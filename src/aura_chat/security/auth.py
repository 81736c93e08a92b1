from __future__ import annotations

"""Authentication utilities: JWT verification and the current-user dependency.

Tokens are issued by the account service; this module only verifies them.
``create_access_token`` exists for local tooling and tests.

Env vars:
- JWT_SECRET (required in prod; default for dev)
- JWT_ALGORITHM (default HS256)
- JWT_EXPIRES_MIN (default 60)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import os
import logging
import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from ..domain.errors import Unauthorized


logger = logging.getLogger(__name__)
bearer_scheme = HTTPBearer(auto_error=False)


def _get_env(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name, default)
    if val is None:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return val


@dataclass
class JwtConfig:
    secret: str
    algorithm: str = "HS256"
    expires_min: int = 60

    @staticmethod
    def from_env() -> "JwtConfig":
        secret = _get_env("JWT_SECRET", "dev-secret-change-me")
        algorithm = os.getenv("JWT_ALGORITHM", "HS256")
        expires = int(os.getenv("JWT_EXPIRES_MIN", "60"))
        return JwtConfig(secret=secret, algorithm=algorithm, expires_min=expires)


class User(BaseModel):
    user_id: str
    email: Optional[str] = None
    name: str = ""


def create_access_token(user: User, cfg: Optional[JwtConfig] = None) -> str:
    cfg = cfg or JwtConfig.from_env()
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=cfg.expires_min)
    payload = {
        "sub": user.user_id,
        "email": user.email,
        "name": user.name,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, cfg.secret, algorithm=cfg.algorithm)


def decode_token(token: str, cfg: Optional[JwtConfig] = None) -> User:
    cfg = cfg or JwtConfig.from_env()
    try:
        data = jwt.decode(token, cfg.secret, algorithms=[cfg.algorithm])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.PyJWTError:
        raise Unauthorized("Invalid token")
    subject = data.get("sub")
    if not subject:
        raise Unauthorized("Invalid token")
    return User(user_id=str(subject), email=data.get("email"), name=str(data.get("name") or ""))


def get_current_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> User:
    """Resolve the caller from a bearer token; anything else is 401."""
    if creds is None or not creds.scheme or creds.scheme.lower() != "bearer":
        raise Unauthorized("Missing bearer token")
    user = decode_token(creds.credentials)
    logger.debug("user_authenticated", extra={"user_id": user.user_id})
    return user
