from __future__ import annotations
import os
from datetime import datetime, timedelta, timezone
from typing import Any
import jwt

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
ACCESS_TTL_MIN = int(os.getenv("ACCESS_TTL_MIN", "15"))

def make_access_token(sub: str, role: str = "user", ttl_min: int = ACCESS_TTL_MIN) -> str:
    # Tokens are issued by the auth service; this helper mirrors its format for tooling and tests.
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "role": role,
        "type": "access",
        "iat": now.timestamp(),
        "exp": int((now + timedelta(minutes=ttl_min)).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)

def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
