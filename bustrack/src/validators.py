"""
Validation and guard checks for the Bus Tracking API.

This module centralizes guard logic such as:
- Access token validation against the live user record
- Coordinate and ping value validation
- Password strength and role field checks
- Operator license period checks

All functions raise appropriate exceptions from `bustrack.src.exceptions`
when validation fails, ensuring consistent error handling.
"""

import re
from datetime import datetime, timezone
from typing import List, Optional
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm.session import Session

from bustrack.src import exceptions, jwt
from bustrack.src.constants import (
    MAX_HEADING,
    MAX_LATITUDE,
    MAX_LONGITUDE,
    MAX_SPEED,
    MIN_HEADING,
    MIN_LATITUDE,
    MIN_LONGITUDE,
    MIN_SPEED,
    REGEX_PASSWORD,
)
from bustrack.src.db import Bus, Operator, User
from bustrack.src.enums import TokenType, UserRole


# ---------------------------------------------------------------------------
# Token validation
# ---------------------------------------------------------------------------
def accessToken(
    credential: Optional[HTTPAuthorizationCredentials], session: Session
) -> User:
    """
    Validate a bearer access token and load the user it was issued to.

    The token payload is only used to locate the user. Role and scope are
    always taken from the live record so deactivation and role changes
    apply immediately.

    Args:
        credential (HTTPAuthorizationCredentials | None): Parsed Authorization header.
        session (Session): Active SQLAlchemy session for DB lookup.

    Returns:
        User: The active user owning the token.

    Raises:
        exceptions.InvalidToken: If the token is missing, malformed, expired
            or its user no longer exists.
        exceptions.InactiveAccount: If the user has been deactivated.
    """
    if credential is None:
        raise exceptions.InvalidToken()

    payload = jwt.decode(credential.credentials, TokenType.ACCESS)
    user = session.query(User).filter(User.id == payload["id"]).first()
    if user is None:
        raise exceptions.InvalidToken()
    if not user.is_active:
        raise exceptions.InactiveAccount()
    return user


def optionalAccessToken(
    credential: Optional[HTTPAuthorizationCredentials], session: Session
) -> Optional[User]:
    """Same as `accessToken`, but anonymous requests yield None."""
    if credential is None:
        return None
    return accessToken(credential, session)


# ---------------------------------------------------------------------------
# Coordinate validation
# ---------------------------------------------------------------------------
def coordinateErrors(latitude: float, longitude: float) -> List[dict]:
    errors = []
    if not MIN_LATITUDE <= latitude <= MAX_LATITUDE:
        errors.append(
            {
                "field": "latitude",
                "message": f"Latitude must be between {MIN_LATITUDE} and {MAX_LATITUDE}",
            }
        )
    if not MIN_LONGITUDE <= longitude <= MAX_LONGITUDE:
        errors.append(
            {
                "field": "longitude",
                "message": f"Longitude must be between {MIN_LONGITUDE} and {MAX_LONGITUDE}",
            }
        )
    return errors


def coordinates(latitude: float, longitude: float) -> bool:
    """
    Validate a latitude/longitude pair against WGS 84 bounds.

    Raises:
        exceptions.InvalidCoordinates: Listing every out-of-range component.
    """
    errors = coordinateErrors(latitude, longitude)
    if errors:
        raise exceptions.InvalidCoordinates(errors=errors)
    return True


def ping(
    latitude: float,
    longitude: float,
    speed: float,
    heading: float,
    accuracy: Optional[float] = None,
) -> bool:
    """
    Validate every value of a GPS ping at once.

    Raises:
        exceptions.InvalidCoordinates: With one entry per violated bound,
            covering coordinates, speed, heading and accuracy together.
    """
    errors = coordinateErrors(latitude, longitude)
    if not MIN_SPEED <= speed <= MAX_SPEED:
        errors.append(
            {
                "field": "speed",
                "message": f"Speed must be between {MIN_SPEED} and {MAX_SPEED} km/h",
            }
        )
    if not MIN_HEADING <= heading <= MAX_HEADING:
        errors.append(
            {
                "field": "heading",
                "message": f"Heading must be between {MIN_HEADING} and {MAX_HEADING} degrees",
            }
        )
    if accuracy is not None and accuracy < 0:
        errors.append({"field": "accuracy", "message": "Accuracy cannot be negative"})
    if errors:
        raise exceptions.InvalidCoordinates(errors=errors)
    return True


# ---------------------------------------------------------------------------
# Account validation
# ---------------------------------------------------------------------------
def passwordStrength(password: str) -> str:
    """
    Used as a pydantic field validator. Requires at least one lowercase
    letter, one uppercase letter and one digit.
    """
    if re.match(REGEX_PASSWORD, password) is None:
        raise ValueError(
            "Password must contain at least one lowercase letter, "
            "one uppercase letter and one number"
        )
    return password


def roleFields(
    role: UserRole, operator_id: Optional[int], assigned_bus_id: Optional[int]
) -> bool:
    """
    Validate the role dependent fields of a user.

    Rules:
        - `operator_id` is only accepted for operator and driver accounts.
        - An operator account must name its operator.
        - `assigned_bus_id` is only accepted for driver and user accounts.
    """
    if operator_id is not None and role not in (UserRole.OPERATOR, UserRole.DRIVER):
        raise exceptions.UnexpectedParameter(User.operator_id)
    if operator_id is None and role == UserRole.OPERATOR:
        raise exceptions.MissingParameter(User.operator_id)
    if assigned_bus_id is not None and role not in (UserRole.DRIVER, UserRole.USER):
        raise exceptions.UnexpectedParameter(User.assigned_bus_id)
    return True


def userReferences(
    session: Session, operator_id: Optional[int], assigned_bus_id: Optional[int]
) -> bool:
    """Validate that the operator and bus a user points at exist."""
    if operator_id is not None:
        if session.query(Operator.id).filter(Operator.id == operator_id).first() is None:
            raise exceptions.UnknownValue(User.operator_id)
    if assigned_bus_id is not None:
        if session.query(Bus.id).filter(Bus.id == assigned_bus_id).first() is None:
            raise exceptions.UnknownValue(User.assigned_bus_id)
    return True


# ---------------------------------------------------------------------------
# Operator validation
# ---------------------------------------------------------------------------
def licensePeriod(
    issueDate: datetime, expiryDate: datetime, requireFuture: bool = True
) -> bool:
    """
    Validate an operator license window.

    Raises:
        exceptions.InvalidLicensePeriod: If the expiry is not after the issue date.
        exceptions.ExpiredLicense: If `requireFuture` is set and the license has expired.
    """
    # Naive datetimes are treated as UTC
    if issueDate.tzinfo is None:
        issueDate = issueDate.replace(tzinfo=timezone.utc)
    if expiryDate.tzinfo is None:
        expiryDate = expiryDate.replace(tzinfo=timezone.utc)

    if expiryDate <= issueDate:
        raise exceptions.InvalidLicensePeriod()
    if requireFuture and expiryDate <= datetime.now(timezone.utc):
        raise exceptions.ExpiredLicense()
    return True
