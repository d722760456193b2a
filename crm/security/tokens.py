from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from jose import JWTError, jwt


class TokenError(ValueError):
    """Raised when a bearer token cannot be decoded or is malformed."""


def create_access_token(
    *,
    user_id: int,
    phone: str,
    role: str,
    secret: str,
    algorithm: str = "HS256",
    expires_minutes: int = 60,
) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "phone": phone,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_minutes)).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_access_token(token: str, *, secret: str, algorithm: str = "HS256") -> Dict[str, Any]:
    try:
        data = jwt.decode(token, secret, algorithms=[algorithm])
    except JWTError as exc:
        raise TokenError("invalid_token") from exc
    if "sub" not in data or "phone" not in data:
        raise TokenError("invalid_token_payload")
    try:
        data["sub"] = int(data["sub"])
    except (TypeError, ValueError) as exc:
        raise TokenError("invalid_token_subject") from exc
    return data
