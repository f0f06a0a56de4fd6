from datetime import datetime, timedelta, timezone
from uuid import uuid4
import jwt

from bustrack.src import exceptions
from bustrack.src.constants import (
    JWT_ACCESS_EXPIRE,
    JWT_ALGORITHM,
    JWT_REFRESH_EXPIRE,
    JWT_REFRESH_SECRET,
    JWT_SECRET,
)
from bustrack.src.enums import TokenType

secrets = {
    TokenType.ACCESS: JWT_SECRET,
    TokenType.REFRESH: JWT_REFRESH_SECRET,
}


def makeAccessToken(user_id: int, username: str, role: str) -> str:
    """
    Mint a short lived HS256 access token carrying `{id, username, role}`.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "id": user_id,
        "username": username,
        "role": role,
        "type": TokenType.ACCESS.value,
        "iat": now,
        "exp": now + timedelta(seconds=JWT_ACCESS_EXPIRE),
    }
    return jwt.encode(payload, secrets[TokenType.ACCESS], algorithm=JWT_ALGORITHM)


def makeRefreshToken(user_id: int) -> tuple[str, datetime]:
    """
    Mint a long lived HS256 refresh token carrying `{id, type=refresh}`.

    A random `jti` keeps tokens issued within the same second distinct.

    Returns:
        tuple[str, datetime]: The encoded token and its expiry time.
    """
    now = datetime.now(timezone.utc)
    expiresAt = now + timedelta(seconds=JWT_REFRESH_EXPIRE)
    payload = {
        "id": user_id,
        "type": TokenType.REFRESH.value,
        "jti": uuid4().hex,
        "iat": now,
        "exp": expiresAt,
    }
    token = jwt.encode(payload, secrets[TokenType.REFRESH], algorithm=JWT_ALGORITHM)
    return token, expiresAt


def decode(token: str, tokenType: TokenType) -> dict:
    """
    Verify a token's signature, expiry and type.

    Raises:
        exceptions.InvalidToken: On tampering, expiry, a foreign secret,
            a mismatching `type` claim or a missing `id`.
    """
    try:
        payload = jwt.decode(token, secrets[tokenType], algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise exceptions.InvalidToken()
    except jwt.InvalidTokenError:
        raise exceptions.InvalidToken()

    if payload.get("type") != tokenType.value or "id" not in payload:
        raise exceptions.InvalidToken()
    return payload
