from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, status
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, EmailStr, Field, field_validator

from bustrack.api.bearer import bearer
from bustrack.src import authentication, argon2, exceptions, getters, schemas, validators
from bustrack.src.constants import REGEX_USERNAME
from bustrack.src.db import User, sessionMaker
from bustrack.src.enums import UserRole
from bustrack.src.functions import makeExceptionResponses, updateIfChanged
from bustrack.src.loggers import logEvent

route_v1 = APIRouter()


## Output Schema
class UserSchema(BaseModel):
    id: int
    username: str
    email_id: str
    first_name: str
    last_name: str
    phone_number: str
    role: UserRole
    operator_id: Optional[int]
    assigned_bus_id: Optional[int]
    is_active: bool
    last_login: Optional[datetime]
    updated_on: Optional[datetime]
    created_on: datetime


class TokenSchema(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str
    expires_in: int


class SessionSchema(BaseModel):
    user: UserSchema
    tokens: TokenSchema


## Input Forms
class RegisterForm(BaseModel):
    username: str = Field(min_length=3, max_length=30, pattern=REGEX_USERNAME)
    email_id: EmailStr = Field(max_length=256)
    password: str = Field(min_length=6, max_length=128)
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    phone_number: schemas.LankanPhoneNumber

    @field_validator("password")
    @classmethod
    def checkPassword(cls, password: str) -> str:
        return validators.passwordStrength(password)


class LoginForm(BaseModel):
    login: str = Field(min_length=1, description="Username or email address")
    password: str = Field(min_length=1)


class RefreshForm(BaseModel):
    refresh_token: str


class LogoutForm(BaseModel):
    refresh_token: Optional[str] = None


class ProfileForm(BaseModel):
    email_id: Optional[EmailStr] = Field(default=None, max_length=256)
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    phone_number: Optional[schemas.LankanPhoneNumber] = None


class PasswordForm(BaseModel):
    current_password: str
    new_password: str = Field(min_length=6, max_length=128)

    @field_validator("new_password")
    @classmethod
    def checkPassword(cls, password: str) -> str:
        return validators.passwordStrength(password)


## Function
def userJSON(user: User) -> dict:
    return jsonable_encoder(user, exclude={User.password.key})


def checkUniqueAccount(session, username: Optional[str], email_id: Optional[str], user_id=None):
    """Reject a username or email already used by another account."""
    if username is not None:
        query = session.query(User.id).filter(User.username == username)
        if user_id is not None:
            query = query.filter(User.id != user_id)
        if query.first() is not None:
            raise exceptions.DuplicateValue(User.username)
    if email_id is not None:
        query = session.query(User.id).filter(User.email_id == email_id)
        if user_id is not None:
            query = query.filter(User.id != user_id)
        if query.first() is not None:
            raise exceptions.DuplicateValue(User.email_id)


## API endpoints
@route_v1.post(
    "/auth/register",
    tags=["Auth"],
    response_model=schemas.Envelope[SessionSchema],
    status_code=status.HTTP_201_CREATED,
    responses=makeExceptionResponses(
        [exceptions.DuplicateValue, exceptions.PydanticError]
    ),
    description="""
    Creates a public user account and logs it in.
    The role of self registered accounts is always `user`.
    Username and email address must not be used by another account.
    """,
)
async def register(
    fParam: RegisterForm,
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        email_id = fParam.email_id.lower()
        checkUniqueAccount(session, fParam.username, email_id)

        user = User(
            username=fParam.username,
            email_id=email_id,
            password=argon2.makePassword(fParam.password),
            first_name=fParam.first_name,
            last_name=fParam.last_name,
            phone_number=fParam.phone_number,
            role=UserRole.USER.value,
        )
        session.add(user)
        session.commit()
        session.refresh(user)

        tokens = authentication.issueTokens(session, user)
        userData = userJSON(user)
        logEvent(None, request_info, userData)
        return {
            "success": True,
            "message": "User registered successfully",
            "data": {"user": userData, "tokens": tokens},
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.post(
    "/auth/login",
    tags=["Auth"],
    response_model=schemas.Envelope[SessionSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidCredentials, exceptions.InactiveAccount]
    ),
    description="""
    Authenticates with a username or email address and a password.
    Issues an access token and a refresh token.
    At most 5 refresh tokens are kept per account, the oldest is discarded first.
    Failed attempts are not counted, there is no account lockout.
    """,
)
async def login(fParam: LoginForm):
    try:
        session = sessionMaker()
        user = authentication.authenticate(session, fParam.login, fParam.password)
        tokens = authentication.issueTokens(session, user)
        return {
            "success": True,
            "message": "Login successful",
            "data": {"user": userJSON(user), "tokens": tokens},
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.post(
    "/auth/refresh",
    tags=["Auth"],
    response_model=schemas.Envelope[TokenSchema],
    responses=makeExceptionResponses([exceptions.InvalidToken]),
    description="""
    Exchanges a refresh token for a new token pair.
    The presented refresh token is revoked, so each refresh token works once.
    """,
)
async def refresh(fParam: RefreshForm):
    try:
        session = sessionMaker()
        _, tokens = authentication.refreshTokens(session, fParam.refresh_token)
        return {
            "success": True,
            "message": "Tokens refreshed successfully",
            "data": tokens,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.post(
    "/auth/logout",
    tags=["Auth"],
    response_model=schemas.Envelope[None],
    responses=makeExceptionResponses([exceptions.InvalidToken]),
    description="""
    Revokes the given refresh token of the caller.
    Unknown or already revoked tokens are ignored.
    """,
)
async def logout(
    fParam: LogoutForm = LogoutForm(),
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        if authentication.revokeToken(session, user, fParam.refresh_token):
            logEvent(user, request_info, {"revoked": True})
        return {"success": True, "message": "Logout successful"}
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/auth/me",
    tags=["Auth"],
    response_model=schemas.Envelope[UserSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.InactiveAccount]
    ),
    description="""
    Fetches the profile of the caller.
    """,
)
async def fetch_profile(credential=Depends(bearer)):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        return {
            "success": True,
            "message": "Profile retrieved successfully",
            "data": userJSON(user),
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.put(
    "/auth/me",
    tags=["Auth"],
    response_model=schemas.Envelope[UserSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.DuplicateValue]
    ),
    description="""
    Updates the profile of the caller.
    Role, operator and bus assignment can only be changed by an administrator.
    """,
)
async def update_profile(
    fParam: ProfileForm,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        if fParam.email_id is not None:
            fParam.email_id = fParam.email_id.lower()
            checkUniqueAccount(session, None, fParam.email_id, user.id)

        updateIfChanged(
            user,
            fParam,
            [
                User.email_id.key,
                User.first_name.key,
                User.last_name.key,
                User.phone_number.key,
            ],
        )
        haveUpdates = session.is_modified(user)
        if haveUpdates:
            session.commit()
            session.refresh(user)

        userData = userJSON(user)
        if haveUpdates:
            logEvent(user, request_info, userData)
        return {
            "success": True,
            "message": "Profile updated successfully",
            "data": userData,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.put(
    "/auth/password",
    tags=["Auth"],
    response_model=schemas.Envelope[None],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.IncorrectPassword]
    ),
    description="""
    Changes the password of the caller.
    The current password must be supplied.
    """,
)
async def change_password(
    fParam: PasswordForm,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        authentication.changePassword(
            session, user, fParam.current_password, fParam.new_password
        )
        logEvent(user, request_info, {"password_changed": True})
        return {"success": True, "message": "Password changed successfully"}
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()
