from enum import IntEnum
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import func, or_
from sqlalchemy.orm.session import Session

from bustrack.api import auth as auth_api
from bustrack.api.bearer import bearer
from bustrack.src import argon2, exceptions, getters, policy, schemas, tracking, validators
from bustrack.src.constants import (
    LOCATION_RETENTION_DAYS,
    MAX_PAGE_LIMIT,
    REGEX_USERNAME,
)
from bustrack.src.db import User, sessionMaker
from bustrack.src.enums import Action, OrderIn, UserRole
from bustrack.src.functions import (
    enumStr,
    makeExceptionResponses,
    paginate,
    updateIfChanged,
)
from bustrack.src.loggers import logEvent
from bustrack.src.redis import acquireLock, releaseLock

route_v1 = APIRouter()


## Output Schema
class UserListSchema(BaseModel):
    users: List[auth_api.UserSchema]
    pagination: schemas.Pagination


class RoleStatsSchema(BaseModel):
    role: UserRole
    total: int
    active: int
    inactive: int


class UserStatsSchema(BaseModel):
    total_users: int
    active_users: int
    inactive_users: int
    role_stats: List[RoleStatsSchema]


class CleanupSchema(BaseModel):
    deleted_count: int
    retention_days: int


## Input Forms
class CreateForm(BaseModel):
    username: str = Field(min_length=3, max_length=30, pattern=REGEX_USERNAME)
    email_id: EmailStr = Field(max_length=256)
    password: str = Field(min_length=6, max_length=128)
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    phone_number: schemas.LankanPhoneNumber
    role: UserRole = Field(default=UserRole.USER, description=enumStr(UserRole))
    operator_id: Optional[int] = None
    assigned_bus_id: Optional[int] = None
    is_active: bool = True

    @field_validator("password")
    @classmethod
    def checkPassword(cls, password: str) -> str:
        return validators.passwordStrength(password)


class OperatorUserForm(CreateForm):
    role: UserRole = Field(default=UserRole.OPERATOR, description="Always operator")
    operator_id: int


class UpdateForm(BaseModel):
    username: Optional[str] = Field(
        default=None, min_length=3, max_length=30, pattern=REGEX_USERNAME
    )
    email_id: Optional[EmailStr] = Field(default=None, max_length=256)
    password: Optional[str] = Field(default=None, min_length=6, max_length=128)
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    phone_number: Optional[schemas.LankanPhoneNumber] = None
    role: Optional[UserRole] = Field(default=None, description=enumStr(UserRole))
    operator_id: Optional[int] = None
    assigned_bus_id: Optional[int] = None
    is_active: Optional[bool] = None

    @field_validator("password")
    @classmethod
    def checkPassword(cls, password: Optional[str]) -> Optional[str]:
        if password is None:
            return password
        return validators.passwordStrength(password)


class CleanupForm(BaseModel):
    retention_days: int = Field(default=LOCATION_RETENTION_DAYS, gt=0)


## Query Parameters
class OrderBy(IntEnum):
    id = 1
    username = 2
    last_login = 3
    created_on = 4


class QueryParams(BaseModel):
    # filters
    search: str | None = Field(
        Query(
            default=None,
            description="Matches username, email address, first name or last name",
        )
    )
    role: UserRole | None = Field(Query(default=None, description=enumStr(UserRole)))
    is_active: bool | None = Field(Query(default=None))
    operator_id: int | None = Field(Query(default=None))
    # Ordering
    order_by: OrderBy = Field(Query(default=OrderBy.id, description=enumStr(OrderBy)))
    order_in: OrderIn = Field(Query(default=OrderIn.DESC, description=enumStr(OrderIn)))
    # Pagination
    page: int = Field(Query(default=1, gt=0))
    limit: int = Field(Query(default=20, gt=0, le=MAX_PAGE_LIMIT))


## Function
def requireAdmin(session: Session, credential) -> User:
    user = validators.accessToken(credential, session)
    policy.enforce(policy.actorFromUser(user), Action.MANAGE, policy.BusScope())
    return user


def getUser(session: Session, user_id: int, role: Optional[UserRole] = None) -> User:
    query = session.query(User).filter(User.id == user_id)
    if role is not None:
        query = query.filter(User.role == role.value)
    user = query.first()
    if user is None:
        raise exceptions.InvalidIdentifier()
    return user


def searchUser(
    session: Session, qParam: QueryParams, role: Optional[UserRole] = None
) -> tuple[List[dict], schemas.Pagination]:
    query = session.query(User)

    # Filters
    if role is not None:
        query = query.filter(User.role == role.value)
    elif qParam.role is not None:
        query = query.filter(User.role == qParam.role.value)
    if qParam.search is not None:
        query = query.filter(
            or_(
                User.username.ilike(f"%{qParam.search}%"),
                User.email_id.ilike(f"%{qParam.search}%"),
                User.first_name.ilike(f"%{qParam.search}%"),
                User.last_name.ilike(f"%{qParam.search}%"),
            )
        )
    if qParam.is_active is not None:
        query = query.filter(User.is_active == qParam.is_active)
    if qParam.operator_id is not None:
        query = query.filter(User.operator_id == qParam.operator_id)

    total = query.count()

    # Ordering
    orderingAttribute = getattr(User, OrderBy(qParam.order_by).name)
    if qParam.order_in == OrderIn.ASC:
        query = query.order_by(orderingAttribute.asc(), User.id.asc())
    else:
        query = query.order_by(orderingAttribute.desc(), User.id.desc())

    # Pagination
    query = query.offset((qParam.page - 1) * qParam.limit).limit(qParam.limit)
    users = [auth_api.userJSON(user) for user in query.all()]
    return users, paginate(total, qParam.page, qParam.limit, len(users))


def userStats(session: Session) -> dict:
    rows = (
        session.query(User.role, User.is_active, func.count(User.id))
        .group_by(User.role, User.is_active)
        .all()
    )
    roleStats = {
        role: {"role": role, "total": 0, "active": 0, "inactive": 0}
        for role in UserRole
    }
    for role, isActive, count in rows:
        stats = roleStats[UserRole(role)]
        stats["total"] += count
        stats["active" if isActive else "inactive"] += count

    active = sum(x["active"] for x in roleStats.values())
    inactive = sum(x["inactive"] for x in roleStats.values())
    return {
        "total_users": active + inactive,
        "active_users": active,
        "inactive_users": inactive,
        "role_stats": list(roleStats.values()),
    }


def createUser(session: Session, fParam: CreateForm) -> User:
    validators.roleFields(fParam.role, fParam.operator_id, fParam.assigned_bus_id)
    validators.userReferences(session, fParam.operator_id, fParam.assigned_bus_id)
    email_id = fParam.email_id.lower()
    auth_api.checkUniqueAccount(session, fParam.username, email_id)

    user = User(
        username=fParam.username,
        email_id=email_id,
        password=argon2.makePassword(fParam.password),
        first_name=fParam.first_name,
        last_name=fParam.last_name,
        phone_number=fParam.phone_number,
        role=fParam.role.value,
        operator_id=fParam.operator_id,
        assigned_bus_id=fParam.assigned_bus_id,
        is_active=fParam.is_active,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def updateUser(session: Session, user: User, fParam: UpdateForm) -> bool:
    """
    Apply an administrator update to a user account.

    Changing the role drops an `operator_id` or `assigned_bus_id` the new
    role does not accept, unless the form sets it explicitly.
    Returns whether anything was changed.
    """
    role = fParam.role if fParam.role is not None else UserRole(user.role)
    operator_id = fParam.operator_id
    if operator_id is None and role in (UserRole.OPERATOR, UserRole.DRIVER):
        operator_id = user.operator_id
    assigned_bus_id = fParam.assigned_bus_id
    if assigned_bus_id is None and role in (UserRole.DRIVER, UserRole.USER):
        assigned_bus_id = user.assigned_bus_id

    validators.roleFields(role, operator_id, assigned_bus_id)
    validators.userReferences(session, fParam.operator_id, fParam.assigned_bus_id)
    if fParam.email_id is not None:
        fParam.email_id = fParam.email_id.lower()
    auth_api.checkUniqueAccount(session, fParam.username, fParam.email_id, user.id)

    updateIfChanged(
        user,
        fParam,
        [
            User.username.key,
            User.email_id.key,
            User.first_name.key,
            User.last_name.key,
            User.phone_number.key,
            User.is_active.key,
        ],
    )
    if user.role != role.value:
        user.role = role.value
    if user.operator_id != operator_id:
        user.operator_id = operator_id
    if user.assigned_bus_id != assigned_bus_id:
        user.assigned_bus_id = assigned_bus_id
    if fParam.password is not None:
        user.password = argon2.makePassword(fParam.password)

    haveUpdates = session.is_modified(user)
    if haveUpdates:
        session.commit()
        session.refresh(user)
    return haveUpdates


def deleteUser(session: Session, actor: User, user: User) -> dict:
    if user.id == actor.id:
        raise exceptions.SelfDeletion()
    userData = auth_api.userJSON(user)
    session.delete(user)
    session.commit()
    return userData


## API endpoints
@route_v1.get(
    "/admin/users",
    tags=["Admin"],
    response_model=schemas.Envelope[UserListSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission]
    ),
    description="""
    Fetches a page of user accounts.
    Supports filtering by role, activation status and operator,
    and searching over username, email address and name.
    Only administrators can list users.
    """,
)
async def fetch_users(qParam: QueryParams = Depends(), credential=Depends(bearer)):
    try:
        session = sessionMaker()
        requireAdmin(session, credential)
        users, pagination = searchUser(session, qParam)
        return {
            "success": True,
            "message": "Users retrieved successfully",
            "data": {"users": users, "pagination": pagination},
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/admin/users/stats",
    tags=["Admin"],
    response_model=schemas.Envelope[UserStatsSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission]
    ),
    description="""
    Account totals, overall and per role.
    Only administrators can view user statistics.
    """,
)
async def fetch_user_stats(credential=Depends(bearer)):
    try:
        session = sessionMaker()
        requireAdmin(session, credential)
        return {
            "success": True,
            "message": "User statistics retrieved successfully",
            "data": userStats(session),
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/admin/users/{user_id}",
    tags=["Admin"],
    response_model=schemas.Envelope[auth_api.UserSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.InvalidIdentifier]
    ),
    description="""
    Fetches a user account.
    Only administrators can view other accounts.
    """,
)
async def fetch_user(user_id: int, credential=Depends(bearer)):
    try:
        session = sessionMaker()
        requireAdmin(session, credential)
        user = getUser(session, user_id)
        return {
            "success": True,
            "message": "User retrieved successfully",
            "data": auth_api.userJSON(user),
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.post(
    "/admin/users",
    tags=["Admin"],
    response_model=schemas.Envelope[auth_api.UserSchema],
    status_code=status.HTTP_201_CREATED,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.DuplicateValue,
            exceptions.UnknownValue,
            exceptions.UnexpectedParameter,
            exceptions.MissingParameter,
        ]
    ),
    description="""
    Creates a user account with any role.
    `operator_id` is accepted for operators and drivers, and required for operators.
    `assigned_bus_id` is accepted for drivers and users.
    Only administrators can create accounts.
    Logs the account creation activity with the associated user.
    """,
)
async def create_user(
    fParam: CreateForm,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        admin = requireAdmin(session, credential)
        user = createUser(session, fParam)
        userData = auth_api.userJSON(user)
        logEvent(admin, request_info, userData)
        return {
            "success": True,
            "message": "User created successfully",
            "data": userData,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.put(
    "/admin/users/{user_id}",
    tags=["Admin"],
    response_model=schemas.Envelope[auth_api.UserSchema],
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.InvalidIdentifier,
            exceptions.DuplicateValue,
            exceptions.UnknownValue,
            exceptions.UnexpectedParameter,
            exceptions.MissingParameter,
        ]
    ),
    description="""
    Updates a user account, including its role, operator and bus assignment.
    A new password can be set without knowing the current one.
    Only administrators can update other accounts.
    Logs the account updating activity with the associated user.
    """,
)
async def update_user(
    user_id: int,
    fParam: UpdateForm,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        admin = requireAdmin(session, credential)
        user = getUser(session, user_id)
        haveUpdates = updateUser(session, user, fParam)

        userData = auth_api.userJSON(user)
        if haveUpdates:
            logEvent(admin, request_info, userData)
        return {
            "success": True,
            "message": "User updated successfully",
            "data": userData,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.delete(
    "/admin/users/{user_id}",
    tags=["Admin"],
    response_model=schemas.Envelope[None],
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.InvalidIdentifier,
            exceptions.SelfDeletion,
        ]
    ),
    description="""
    Deletes a user account together with its refresh tokens.
    Administrators cannot delete their own account.
    Logs the deletion activity with the associated user.
    """,
)
async def delete_user(
    user_id: int,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        admin = requireAdmin(session, credential)
        user = getUser(session, user_id)
        userData = deleteUser(session, admin, user)
        logEvent(admin, request_info, userData)
        return {"success": True, "message": "User deleted successfully"}
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/admin/bus-operators",
    tags=["Admin"],
    response_model=schemas.Envelope[UserListSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission]
    ),
    description="""
    Fetches a page of operator accounts.
    Accepts the same filters as `/admin/users`, the role filter is ignored.
    """,
)
async def fetch_operator_users(
    qParam: QueryParams = Depends(), credential=Depends(bearer)
):
    try:
        session = sessionMaker()
        requireAdmin(session, credential)
        users, pagination = searchUser(session, qParam, UserRole.OPERATOR)
        return {
            "success": True,
            "message": "Bus operators retrieved successfully",
            "data": {"users": users, "pagination": pagination},
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/admin/bus-operators/{user_id}",
    tags=["Admin"],
    response_model=schemas.Envelope[auth_api.UserSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.InvalidIdentifier]
    ),
    description="""
    Fetches an operator account.
    Accounts with any other role are reported as missing.
    """,
)
async def fetch_operator_user(user_id: int, credential=Depends(bearer)):
    try:
        session = sessionMaker()
        requireAdmin(session, credential)
        user = getUser(session, user_id, UserRole.OPERATOR)
        return {
            "success": True,
            "message": "Bus operator retrieved successfully",
            "data": auth_api.userJSON(user),
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.post(
    "/admin/bus-operators",
    tags=["Admin"],
    response_model=schemas.Envelope[auth_api.UserSchema],
    status_code=status.HTTP_201_CREATED,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.DuplicateValue,
            exceptions.UnknownValue,
            exceptions.UnexpectedParameter,
        ]
    ),
    description="""
    Creates an operator account bound to an existing operator.
    The role is always `operator`.
    Logs the account creation activity with the associated user.
    """,
)
async def create_operator_user(
    fParam: OperatorUserForm,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        admin = requireAdmin(session, credential)
        fParam.role = UserRole.OPERATOR
        user = createUser(session, fParam)
        userData = auth_api.userJSON(user)
        logEvent(admin, request_info, userData)
        return {
            "success": True,
            "message": "Bus operator created successfully",
            "data": userData,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.put(
    "/admin/bus-operators/{user_id}",
    tags=["Admin"],
    response_model=schemas.Envelope[auth_api.UserSchema],
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.InvalidIdentifier,
            exceptions.DuplicateValue,
            exceptions.UnknownValue,
            exceptions.UnexpectedParameter,
        ]
    ),
    description="""
    Updates an operator account. The role cannot be changed here.
    Logs the account updating activity with the associated user.
    """,
)
async def update_operator_user(
    user_id: int,
    fParam: UpdateForm,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        admin = requireAdmin(session, credential)
        user = getUser(session, user_id, UserRole.OPERATOR)
        if fParam.role is not None and fParam.role != UserRole.OPERATOR:
            raise exceptions.UnexpectedParameter(User.role)
        haveUpdates = updateUser(session, user, fParam)

        userData = auth_api.userJSON(user)
        if haveUpdates:
            logEvent(admin, request_info, userData)
        return {
            "success": True,
            "message": "Bus operator updated successfully",
            "data": userData,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.delete(
    "/admin/bus-operators/{user_id}",
    tags=["Admin"],
    response_model=schemas.Envelope[None],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.InvalidIdentifier]
    ),
    description="""
    Deletes an operator account.
    Logs the deletion activity with the associated user.
    """,
)
async def delete_operator_user(
    user_id: int,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        admin = requireAdmin(session, credential)
        user = getUser(session, user_id, UserRole.OPERATOR)
        userData = deleteUser(session, admin, user)
        logEvent(admin, request_info, userData)
        return {"success": True, "message": "Bus operator deleted successfully"}
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.post(
    "/admin/locations/cleanup",
    tags=["Admin"],
    response_model=schemas.Envelope[CleanupSchema],
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.LockAcquireTimeout,
        ]
    ),
    description="""
    Deletes location history older than `retention_days` days.
    Runs under the same lock as the background cleaner.
    Only administrators can trigger a cleanup.
    """,
)
async def cleanup_locations(
    fParam: CleanupForm = CleanupForm(),
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    cleanerLock = None
    try:
        session = sessionMaker()
        admin = requireAdmin(session, credential)
        cleanerLock = acquireLock("cleaner")
        deletedCount = tracking.cleanup(session, fParam.retention_days)

        cleanupData = {
            "deleted_count": deletedCount,
            "retention_days": fParam.retention_days,
        }
        logEvent(admin, request_info, cleanupData)
        return {
            "success": True,
            "message": f"Deleted {deletedCount} old location records",
            "data": cleanupData,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        releaseLock(cleanerLock)
        session.close()
