"""ATA CRM — JWT access tokens (python-jose).

Login and password handling belong to the identity service; this module only
verifies its bearer tokens and mints tokens for internal tooling and tests.
"""
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from crm.config import get_settings

settings = get_settings()


def create_access_token(
    subject: str | Any,
    company_id: int,
    role: str,
    name: str | None = None,
    client_id: int | None = None,
    extra_claims: dict | None = None,
) -> str:
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_TTL_MINUTES)
    payload = {
        "sub": str(subject),
        "company_id": company_id,
        "role": role,
        "exp": expire,
        "iat": now,
        "type": "access",
    }
    if name:
        payload["name"] = name
    if client_id is not None:
        payload["client_id"] = client_id
    if extra_claims:
        payload.update(extra_claims)
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
