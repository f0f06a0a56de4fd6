"""
Centralized exception handling for the Bus Tracking API.

This module provides:
- Base APIException class extending FastAPI's HTTPException.
- Custom domain-specific exceptions with appropriate status codes and headers.
- Utility functions for formatting DB errors, logging, and routing exceptions.

Usage:
    - Raise specific exceptions in route handlers or services.
    - Use `handle()` to normalize raw exceptions (DB, Redis, Pydantic) into API-friendly responses.
"""

from traceback import format_exception
from logging import getLogger
from fastapi import status, HTTPException
from sqlalchemy.exc import IntegrityError
from psycopg2.errorcodes import UNIQUE_VIOLATION, FOREIGN_KEY_VIOLATION
from pydantic import ValidationError
from redis.exceptions import RedisError
from sqlalchemy import Column


# ---------------------------------------------------------------------------
# Utility functions
# ---------------------------------------------------------------------------
def formatIntegrityError(e: IntegrityError) -> str:
    """
    Format a database integrity error into a user-friendly message.
    """
    errorMessage: str = e.orig.diag.message_detail or str(e.orig)
    errorMessage = errorMessage.translate({ord(i): None for i in '\\"\\.\\(\\)'})
    errorMessage = errorMessage.replace("Key ", "For ")
    errorMessage = errorMessage.replace("=", " value ")
    return errorMessage


def logException(e: Exception) -> None:
    """Log an exception with traceback using Uvicorn's error logger."""
    detail = "".join(format_exception(type(e), e, e.__traceback__))
    logger = getLogger("uvicorn.error")
    logger.error(detail)


# ---------------------------------------------------------------------------
# Base Exception
# ---------------------------------------------------------------------------
class APIException(HTTPException):
    """
    Base class for all application-specific exceptions.

    Provides default handling of status_code, detail, and headers.
    `errors` carries a per-field breakdown for validation failures.
    """

    status_code = status.HTTP_400_BAD_REQUEST
    detail = None
    headers = None
    errors = None

    def __init__(self, *args, errors: list | None = None, **kwargs):
        kwargs.setdefault("status_code", self.status_code)
        kwargs.setdefault("detail", self.detail)
        kwargs.setdefault("headers", self.headers)
        super().__init__(*args, **kwargs)
        if errors is not None:
            self.errors = errors


# ---------------------------------------------------------------------------
# Exception handling entrypoint
# ---------------------------------------------------------------------------
def handle(e: Exception):
    """
    Normalize and re-raise exceptions as API-friendly errors.

    Converts raw exceptions from DB, Pydantic, Redis, etc. into
    corresponding APIException subclasses.
    """
    if isinstance(e, IntegrityError) and hasattr(e.orig, "diag"):
        if e.orig.diag.sqlstate == UNIQUE_VIOLATION:
            raise UniqueViolation(formatIntegrityError(e))
        if e.orig.diag.sqlstate == FOREIGN_KEY_VIOLATION:
            raise ForeignKeyViolation(formatIntegrityError(e))
    if isinstance(e, ValidationError):
        raise PydanticError(errors=e.errors(include_url=False))
    if isinstance(e, APIException):
        raise e
    if isinstance(e, RedisError):
        raise RedisDBError(detail=str(e))

    logException(e)
    raise e


# ---------------------------------------------------------------------------
# Exception Classes
# ---------------------------------------------------------------------------
class PydanticError(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    detail = "Validation failed"
    headers = {"X-Error": "PydanticError"}


class UniqueViolation(APIException):
    status_code = status.HTTP_409_CONFLICT
    headers = {"X-Error": "UniqueViolation"}

    def __init__(self, detail: str):
        super().__init__(detail=detail)


class ForeignKeyViolation(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    headers = {"X-Error": "ForeignKeyViolation"}

    def __init__(self, detail: str):
        super().__init__(detail=detail)


class DuplicateValue(APIException):
    status_code = status.HTTP_409_CONFLICT
    headers = {"X-Error": "DuplicateValue"}

    def __init__(self, column_name: Column):
        detail = f"The {column_name.name} is already in use"
        super().__init__(detail=detail)


class UnknownValue(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    headers = {"X-Error": "UnknownValue"}

    def __init__(self, column_name: Column):
        detail = f"Invalid {column_name.name} is provided"
        super().__init__(detail=detail)


class InvalidValue(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    headers = {"X-Error": "InvalidValue"}

    def __init__(self, column_name: Column):
        detail = f"Invalid {column_name.name} is provided"
        super().__init__(detail=detail)


class InvalidCoordinates(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    detail = "Validation failed"
    headers = {"X-Error": "InvalidCoordinates"}


class InvalidRadius(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    detail = "Radius must be greater than 0 and at most 100 km"
    headers = {"X-Error": "InvalidRadius"}


class InvalidCredentials(APIException):
    status_code = status.HTTP_401_UNAUTHORIZED
    detail = "Invalid credentials"
    headers = {"X-Error": "InvalidCredentials"}


class InactiveAccount(APIException):
    status_code = status.HTTP_401_UNAUTHORIZED
    detail = "Account is inactive. Please contact administrator."
    headers = {"X-Error": "InactiveAccount"}


class InvalidToken(APIException):
    status_code = status.HTTP_401_UNAUTHORIZED
    detail = "Invalid or expired token"
    headers = {"X-Error": "InvalidToken"}


class IncorrectPassword(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    detail = "Current password is incorrect"
    headers = {"X-Error": "IncorrectPassword"}


class NoPermission(APIException):
    status_code = status.HTTP_403_FORBIDDEN
    detail = "Access denied. This user has no permission to perform this action"
    headers = {"X-Error": "NoPermission"}


class InvalidIdentifier(APIException):
    status_code = status.HTTP_404_NOT_FOUND
    detail = "Invalid ID provided"
    headers = {"X-Error": "InvalidIdentifier"}


class LocationNotFound(APIException):
    status_code = status.HTTP_404_NOT_FOUND
    detail = "Location not found for this bus"
    headers = {"X-Error": "LocationNotFound"}


class InactiveResource(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    headers = {"X-Error": "InactiveResource"}

    def __init__(self, orm_class):
        detail = (
            f"The status of {orm_class.__name__} is not in an active or useful state"
        )
        super().__init__(detail=detail)


class DataInUse(APIException):
    status_code = status.HTTP_409_CONFLICT
    headers = {"X-Error": "DataInUse"}

    def __init__(self, orm_class):
        detail = f"The {orm_class.__name__} is currently in use"
        super().__init__(detail=detail)


class UnexpectedParameter(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    headers = {"X-Error": "UnexpectedParameter"}

    def __init__(self, column_name: Column):
        detail = f"Unexpected parameter {column_name.name} is provided"
        super().__init__(detail=detail)


class MissingParameter(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    headers = {"X-Error": "MissingParameter"}

    def __init__(self, column_name: Column):
        detail = f"The {column_name.name} is missing"
        super().__init__(detail=detail)


class InvalidLicensePeriod(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    detail = "License expiry date must be after issue date"
    headers = {"X-Error": "InvalidLicensePeriod"}


class ExpiredLicense(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    detail = "Cannot create operator with expired license"
    headers = {"X-Error": "ExpiredLicense"}


class SelfDeletion(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    detail = "You cannot delete your own account"
    headers = {"X-Error": "SelfDeletion"}


class LockAcquireTimeout(APIException):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    headers = {"X-Error": "LockAcquireTimeout"}
    detail = "Lock acquisition timed out"


class RedisDBError(APIException):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    headers = {"X-Error": "RedisAPIError"}

    def __init__(self, detail: str):
        super().__init__(detail=detail)
