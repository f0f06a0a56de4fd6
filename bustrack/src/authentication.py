"""
Credential checks and token issuing.

Access tokens are stateless JWTs. Refresh tokens are JWTs too, but one is
only honoured while a matching `RefreshToken` row exists, which makes
rotation and logout effective immediately.
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import or_
from sqlalchemy.orm.session import Session

from bustrack.src import argon2, exceptions, jwt
from bustrack.src.constants import JWT_ACCESS_EXPIRE, MAX_REFRESH_TOKENS
from bustrack.src.db import RefreshToken, User
from bustrack.src.enums import TokenType


def authenticate(session: Session, login: str, password: str) -> User:
    """
    Check a username or email and password pair.

    Failed attempts have no side effect, there is no lockout.

    Raises:
        exceptions.InvalidCredentials: If no user matches or the password is wrong.
        exceptions.InactiveAccount: If the account has been deactivated.
    """
    login = login.strip()
    user = (
        session.query(User)
        .filter(or_(User.username == login, User.email_id == login.lower()))
        .first()
    )
    if user is None:
        raise exceptions.InvalidCredentials()
    if not user.is_active:
        raise exceptions.InactiveAccount()
    if not argon2.checkPassword(password, user.password):
        raise exceptions.InvalidCredentials()

    if argon2.needsRehash(user.password):
        user.password = argon2.makePassword(password)
    user.last_login = datetime.now(timezone.utc)
    session.commit()
    return user


def evictTokens(session: Session, user_id: int, keep: int) -> None:
    """Delete all but the newest `keep` refresh tokens of a user."""
    tokens = (
        session.query(RefreshToken)
        .filter(RefreshToken.user_id == user_id)
        .order_by(RefreshToken.created_on.desc(), RefreshToken.id.desc())
        .all()
    )
    for token in tokens[keep:]:
        session.delete(token)
    session.flush()


def issueTokens(session: Session, user: User) -> dict:
    """
    Mint an access/refresh token pair for a user.

    The refresh token is stored, evicting the oldest ones so that at most
    `MAX_REFRESH_TOKENS` remain.
    """
    evictTokens(session, user.id, MAX_REFRESH_TOKENS - 1)
    refreshToken, expiresAt = jwt.makeRefreshToken(user.id)
    session.add(RefreshToken(user_id=user.id, token=refreshToken, expires_at=expiresAt))
    session.commit()

    return {
        "access_token": jwt.makeAccessToken(user.id, user.username, user.role),
        "refresh_token": refreshToken,
        "token_type": "Bearer",
        "expires_in": JWT_ACCESS_EXPIRE,
    }


def refreshTokens(session: Session, refreshToken: str) -> tuple[User, dict]:
    """
    Rotate a refresh token: the presented one is removed and a new pair issued.

    Raises:
        exceptions.InvalidToken: If the token fails verification, is no longer
            stored, or belongs to a missing or inactive account.
    """
    payload = jwt.decode(refreshToken, TokenType.REFRESH)
    stored = (
        session.query(RefreshToken)
        .filter(
            RefreshToken.token == refreshToken,
            RefreshToken.user_id == payload["id"],
        )
        .with_for_update()
        .first()
    )
    if stored is None:
        raise exceptions.InvalidToken()

    user = session.query(User).filter(User.id == payload["id"]).first()
    if user is None or not user.is_active:
        raise exceptions.InvalidToken()

    session.delete(stored)
    session.flush()
    return user, issueTokens(session, user)


def revokeToken(session: Session, user: User, refreshToken: Optional[str] = None) -> bool:
    """
    Remove a refresh token of the user. Unknown or missing tokens are ignored.

    Returns:
        bool: True if a token was removed.
    """
    if refreshToken is None:
        return False
    query = session.query(RefreshToken).filter(
        RefreshToken.user_id == user.id, RefreshToken.token == refreshToken
    )
    removed = query.delete(synchronize_session=False)
    session.commit()
    return removed > 0


def changePassword(
    session: Session, user: User, currentPassword: str, newPassword: str
) -> User:
    """
    Replace a user's password after checking the current one.

    Raises:
        exceptions.IncorrectPassword: If `currentPassword` does not match.
    """
    if not argon2.checkPassword(currentPassword, user.password):
        raise exceptions.IncorrectPassword()
    user.password = argon2.makePassword(newPassword)
    session.commit()
    return user
