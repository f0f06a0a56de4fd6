from datetime import datetime, timedelta, timezone

import jwt as pyjwt
import pytest

from bustrack.src import exceptions, jwt
from bustrack.src.constants import JWT_ALGORITHM, JWT_SECRET
from bustrack.src.enums import TokenType


def test_access_token_payload():
    token = jwt.makeAccessToken(5, "kamal", "driver")
    payload = jwt.decode(token, TokenType.ACCESS)
    assert payload["id"] == 5
    assert payload["username"] == "kamal"
    assert payload["role"] == "driver"


def test_refresh_tokens_are_unique():
    first, expiresAt = jwt.makeRefreshToken(5)
    second, _ = jwt.makeRefreshToken(5)
    assert first != second
    assert expiresAt > datetime.now(timezone.utc) + timedelta(days=6)
    assert jwt.decode(first, TokenType.REFRESH)["id"] == 5


def test_token_types_are_not_interchangeable():
    access = jwt.makeAccessToken(5, "kamal", "driver")
    refresh, _ = jwt.makeRefreshToken(5)
    with pytest.raises(exceptions.InvalidToken):
        jwt.decode(refresh, TokenType.ACCESS)
    with pytest.raises(exceptions.InvalidToken):
        jwt.decode(access, TokenType.REFRESH)


def test_expired_token():
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    token = pyjwt.encode(
        {"id": 5, "type": "access", "iat": past, "exp": past + timedelta(minutes=15)},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )
    with pytest.raises(exceptions.InvalidToken):
        jwt.decode(token, TokenType.ACCESS)


def test_tampered_token():
    token = jwt.makeAccessToken(5, "kamal", "driver")
    header, payload, signature = token.split(".")
    tampered = ".".join([header, payload, signature[::-1]])
    with pytest.raises(exceptions.InvalidToken):
        jwt.decode(tampered, TokenType.ACCESS)


def test_missing_id():
    token = pyjwt.encode(
        {"type": "access", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )
    with pytest.raises(exceptions.InvalidToken):
        jwt.decode(token, TokenType.ACCESS)
