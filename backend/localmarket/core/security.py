from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt

from localmarket.core.config import settings


def _create_token(subject: str, token_type: str, expires_delta: timedelta) -> str:
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode = {"sub": subject, "type": token_type, "exp": expire}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def create_access_token(subject: str, *, expires_minutes: int | None = None) -> str:
    minutes = settings.access_token_exp_minutes if expires_minutes is None else expires_minutes
    return _create_token(subject, "access", timedelta(minutes=minutes))


def decode_token(token: str) -> Optional[dict[str, Any]]:
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
