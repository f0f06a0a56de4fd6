from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import func, or_
from sqlalchemy.orm.session import Session

from bustrack.api import auth as auth_api
from bustrack.api import bus as bus_api
from bustrack.api.bearer import bearer
from bustrack.src import exceptions, getters, policy, schemas, validators
from bustrack.src.constants import (
    LICENSE_EXPIRY_THRESHOLD_DAYS,
    MAX_PAGE_LIMIT,
)
from bustrack.src.db import Bus, Operator, User, sessionMaker
from bustrack.src.enums import BusStatus, OrderIn
from bustrack.src.functions import (
    daysUntil,
    enumStr,
    makeExceptionResponses,
    paginate,
    updateIfChanged,
)
from bustrack.src.loggers import logEvent

route_v1 = APIRouter()


## Output Schema
class OperatorSchema(BaseModel):
    id: int
    name: str
    registration_number: str
    license_number: str
    license_issue_date: datetime
    license_expiry_date: datetime
    license_is_valid: bool
    phone_number: str
    email_id: Optional[str]
    street: Optional[str]
    city: Optional[str]
    province: Optional[str]
    postal_code: Optional[str]
    is_active: bool
    total_buses: int
    updated_on: Optional[datetime]
    created_on: datetime


class OperatorListSchema(BaseModel):
    operators: List[OperatorSchema]
    pagination: schemas.Pagination


class LicenseSchema(BaseModel):
    is_expired: bool
    days_until_expiry: int
    expiry_date: datetime
    is_valid: bool


class OperatorStatsSchema(BaseModel):
    total_buses: int
    bus_status: List[bus_api.CountSchema]
    bus_type_stats: List[bus_api.CountSchema]
    total_users: int
    user_roles: List[bus_api.CountSchema]


class OperatorDetailSchema(OperatorSchema):
    statistics: OperatorStatsSchema
    license_status: LicenseSchema


class ExpiringLicenseSchema(OperatorSchema):
    days_until_expiry: int


class ToggleSchema(BaseModel):
    operator: OperatorSchema
    deactivated_buses: int
    deactivated_users: int


## Input Forms
class CreateForm(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    registration_number: str = Field(min_length=1, max_length=32)
    license_number: str = Field(min_length=1, max_length=32)
    license_issue_date: datetime
    license_expiry_date: datetime
    phone_number: schemas.LankanPhoneNumber
    email_id: Optional[EmailStr] = Field(default=None, max_length=256)
    street: Optional[str] = Field(default=None, max_length=128)
    city: Optional[str] = Field(default=None, max_length=64)
    province: Optional[str] = Field(default=None, max_length=64)
    postal_code: Optional[str] = Field(default=None, max_length=16)


class UpdateForm(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    registration_number: Optional[str] = Field(default=None, min_length=1, max_length=32)
    license_number: Optional[str] = Field(default=None, min_length=1, max_length=32)
    license_issue_date: Optional[datetime] = None
    license_expiry_date: Optional[datetime] = None
    license_is_valid: Optional[bool] = None
    phone_number: Optional[schemas.LankanPhoneNumber] = None
    email_id: Optional[EmailStr] = Field(default=None, max_length=256)
    street: Optional[str] = Field(default=None, max_length=128)
    city: Optional[str] = Field(default=None, max_length=64)
    province: Optional[str] = Field(default=None, max_length=64)
    postal_code: Optional[str] = Field(default=None, max_length=16)


## Query Parameters
class OrderBy(IntEnum):
    id = 1
    name = 2
    license_expiry_date = 3
    created_on = 4


class QueryParams(BaseModel):
    # filters
    search: str | None = Field(
        Query(
            default=None,
            description="Matches name, registration number or email address",
        )
    )
    is_active: bool | None = Field(Query(default=None))
    license_is_valid: bool | None = Field(Query(default=None))
    # Ordering
    order_by: OrderBy = Field(Query(default=OrderBy.name, description=enumStr(OrderBy)))
    order_in: OrderIn = Field(Query(default=OrderIn.ASC, description=enumStr(OrderIn)))
    # Pagination
    page: int = Field(Query(default=1, gt=0))
    limit: int = Field(Query(default=20, gt=0, le=MAX_PAGE_LIMIT))


class ExpiringParams(BaseModel):
    days: int = Field(Query(default=LICENSE_EXPIRY_THRESHOLD_DAYS, gt=0))


## Function
def operatorJSON(operator: Operator) -> dict:
    return jsonable_encoder(operator)


def getOperator(session: Session, operator_id: int) -> Operator:
    operator = session.query(Operator).filter(Operator.id == operator_id).first()
    if operator is None:
        raise exceptions.InvalidIdentifier()
    return operator


def checkUniqueOperator(
    session: Session,
    registration_number: Optional[str],
    license_number: Optional[str],
    operator_id=None,
):
    if registration_number is not None:
        query = session.query(Operator.id).filter(
            Operator.registration_number == registration_number
        )
        if operator_id is not None:
            query = query.filter(Operator.id != operator_id)
        if query.first() is not None:
            raise exceptions.DuplicateValue(Operator.registration_number)
    if license_number is not None:
        query = session.query(Operator.id).filter(
            Operator.license_number == license_number
        )
        if operator_id is not None:
            query = query.filter(Operator.id != operator_id)
        if query.first() is not None:
            raise exceptions.DuplicateValue(Operator.license_number)


def licenseStatus(operator: Operator) -> dict:
    remaining = daysUntil(operator.license_expiry_date)
    return {
        "is_expired": remaining <= 0,
        "days_until_expiry": remaining,
        "expiry_date": operator.license_expiry_date,
        "is_valid": operator.license_is_valid and remaining > 0,
    }


def operatorStats(session: Session, operator_id: int) -> dict:
    busStatus = (
        session.query(Bus.status, func.count(Bus.id))
        .filter(Bus.operator_id == operator_id)
        .group_by(Bus.status)
        .all()
    )
    busTypes = (
        session.query(Bus.bus_type, func.count(Bus.id))
        .filter(Bus.operator_id == operator_id)
        .group_by(Bus.bus_type)
        .all()
    )
    userRoles = (
        session.query(User.role, func.count(User.id))
        .filter(User.operator_id == operator_id)
        .group_by(User.role)
        .all()
    )
    return {
        "total_buses": sum(count for _, count in busStatus),
        "bus_status": [{"key": k, "count": v} for k, v in busStatus],
        "bus_type_stats": [{"key": k, "count": v} for k, v in busTypes],
        "total_users": sum(count for _, count in userRoles),
        "user_roles": [{"key": k, "count": v} for k, v in userRoles],
    }


def updateOperator(operator: Operator, fParam: UpdateForm):
    updateIfChanged(
        operator,
        fParam,
        [
            Operator.name.key,
            Operator.registration_number.key,
            Operator.license_number.key,
            Operator.license_issue_date.key,
            Operator.license_expiry_date.key,
            Operator.license_is_valid.key,
            Operator.phone_number.key,
            Operator.email_id.key,
            Operator.street.key,
            Operator.city.key,
            Operator.province.key,
            Operator.postal_code.key,
        ],
    )


def searchOperator(
    session: Session, qParam: QueryParams
) -> tuple[List[dict], schemas.Pagination]:
    query = session.query(Operator)

    # Filters
    if qParam.search is not None:
        query = query.filter(
            or_(
                Operator.name.ilike(f"%{qParam.search}%"),
                Operator.registration_number.ilike(f"%{qParam.search}%"),
                Operator.email_id.ilike(f"%{qParam.search}%"),
            )
        )
    if qParam.is_active is not None:
        query = query.filter(Operator.is_active == qParam.is_active)
    if qParam.license_is_valid is not None:
        query = query.filter(Operator.license_is_valid == qParam.license_is_valid)

    total = query.count()

    # Ordering
    orderingAttribute = getattr(Operator, OrderBy(qParam.order_by).name)
    if qParam.order_in == OrderIn.ASC:
        query = query.order_by(orderingAttribute.asc(), Operator.id.asc())
    else:
        query = query.order_by(orderingAttribute.desc(), Operator.id.desc())

    # Pagination
    query = query.offset((qParam.page - 1) * qParam.limit).limit(qParam.limit)
    operators = [operatorJSON(operator) for operator in query.all()]
    return operators, paginate(total, qParam.page, qParam.limit, len(operators))


def requireAdmin(session: Session, credential):
    user = validators.accessToken(credential, session)
    actor = policy.actorFromUser(user)
    if not policy.isAdmin(actor):
        raise exceptions.NoPermission()
    return user


## API endpoints
@route_v1.get(
    "/operators",
    tags=["Operator"],
    response_model=schemas.Envelope[OperatorListSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission]
    ),
    description="""
    Fetches a page of operators.
    Only administrators can list operators.
    Supports searching over name, registration number and email address.
    """,
)
async def fetch_operators(qParam: QueryParams = Depends(), credential=Depends(bearer)):
    try:
        session = sessionMaker()
        requireAdmin(session, credential)
        operators, pagination = searchOperator(session, qParam)
        return {
            "success": True,
            "message": "Operators retrieved successfully",
            "data": {"operators": operators, "pagination": pagination},
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/operators/expiring-licenses",
    tags=["Operator"],
    response_model=schemas.Envelope[List[ExpiringLicenseSchema]],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission]
    ),
    description="""
    Fetches the active operators whose license expires within `days` days,
    soonest expiry first. Already expired licenses are not included.
    Only administrators can view expiring licenses.
    """,
)
async def fetch_expiring_licenses(
    qParam: ExpiringParams = Depends(), credential=Depends(bearer)
):
    try:
        session = sessionMaker()
        requireAdmin(session, credential)
        now = datetime.now(timezone.utc)
        operators = (
            session.query(Operator)
            .filter(
                Operator.is_active,
                Operator.license_expiry_date > now,
                Operator.license_expiry_date <= now + timedelta(days=qParam.days),
            )
            .order_by(Operator.license_expiry_date.asc())
            .all()
        )

        expiring = []
        for operator in operators:
            operatorData = operatorJSON(operator)
            operatorData["days_until_expiry"] = daysUntil(
                operator.license_expiry_date, now
            )
            expiring.append(operatorData)
        return {
            "success": True,
            "message": f"Found {len(expiring)} operators with expiring licenses",
            "data": expiring,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/operators/{operator_id}",
    tags=["Operator"],
    response_model=schemas.Envelope[OperatorDetailSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.InvalidIdentifier]
    ),
    description="""
    Fetches an operator with fleet and staff statistics and its license status.
    Administrators can view any operator, operator accounts only their own.
    """,
)
async def fetch_operator(operator_id: int, credential=Depends(bearer)):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        policy.enforceOperator(policy.actorFromUser(user), operator_id)

        operator = getOperator(session, operator_id)
        operatorData = operatorJSON(operator)
        operatorData["statistics"] = operatorStats(session, operator.id)
        operatorData["license_status"] = licenseStatus(operator)
        return {
            "success": True,
            "message": "Operator retrieved successfully",
            "data": operatorData,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.post(
    "/operators",
    tags=["Operator"],
    response_model=schemas.Envelope[OperatorSchema],
    status_code=status.HTTP_201_CREATED,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.DuplicateValue,
            exceptions.InvalidLicensePeriod,
            exceptions.ExpiredLicense,
        ]
    ),
    description="""
    Registers a new bus operator.
    Only administrators can create operators.
    Registration and license numbers must be unique.
    The license must expire after it was issued and must not be expired yet.
    Logs the operator creation activity with the associated user.
    """,
)
async def create_operator(
    fParam: CreateForm,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        user = requireAdmin(session, credential)
        checkUniqueOperator(session, fParam.registration_number, fParam.license_number)
        validators.licensePeriod(fParam.license_issue_date, fParam.license_expiry_date)

        operator = Operator(
            name=fParam.name,
            registration_number=fParam.registration_number,
            license_number=fParam.license_number,
            license_issue_date=fParam.license_issue_date,
            license_expiry_date=fParam.license_expiry_date,
            phone_number=fParam.phone_number,
            email_id=fParam.email_id.lower() if fParam.email_id else None,
            street=fParam.street,
            city=fParam.city,
            province=fParam.province,
            postal_code=fParam.postal_code,
        )
        session.add(operator)
        session.commit()
        session.refresh(operator)

        operatorData = operatorJSON(operator)
        logEvent(user, request_info, operatorData)
        return {
            "success": True,
            "message": "Operator created successfully",
            "data": operatorData,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.put(
    "/operators/{operator_id}",
    tags=["Operator"],
    response_model=schemas.Envelope[OperatorSchema],
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.InvalidIdentifier,
            exceptions.DuplicateValue,
            exceptions.InvalidLicensePeriod,
            exceptions.ExpiredLicense,
        ]
    ),
    description="""
    Updates an operator.
    Administrators can update any operator, operator accounts only their own.
    The activation status is changed through `/operators/{operator_id}/status`.
    Changes are saved only if the operator data has been modified.
    Logs the operator updating activity with the associated user.
    """,
)
async def update_operator(
    operator_id: int,
    fParam: UpdateForm,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        policy.enforceOperator(policy.actorFromUser(user), operator_id)

        operator = getOperator(session, operator_id)
        checkUniqueOperator(
            session, fParam.registration_number, fParam.license_number, operator.id
        )
        if fParam.email_id is not None:
            fParam.email_id = fParam.email_id.lower()

        updateOperator(operator, fParam)
        haveUpdates = session.is_modified(operator)
        if fParam.license_issue_date is not None or fParam.license_expiry_date is not None:
            validators.licensePeriod(
                operator.license_issue_date,
                operator.license_expiry_date,
                requireFuture=fParam.license_expiry_date is not None,
            )
        if haveUpdates:
            session.commit()
            session.refresh(operator)

        operatorData = operatorJSON(operator)
        if haveUpdates:
            logEvent(user, request_info, operatorData)
        return {
            "success": True,
            "message": "Operator updated successfully",
            "data": operatorData,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.patch(
    "/operators/{operator_id}/status",
    tags=["Operator"],
    response_model=schemas.Envelope[ToggleSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.InvalidIdentifier]
    ),
    description="""
    Toggles an operator between active and inactive.
    Only administrators can change the operator status.
    Deactivating an operator sets all of its buses to inactive
    and deactivates all of its user accounts.
    Re-activating an operator does not restore them.
    """,
)
async def toggle_operator_status(
    operator_id: int,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        user = requireAdmin(session, credential)
        operator = getOperator(session, operator_id)

        operator.is_active = not operator.is_active
        deactivatedBuses = deactivatedUsers = 0
        if not operator.is_active:
            deactivatedBuses = (
                session.query(Bus)
                .filter(
                    Bus.operator_id == operator.id,
                    Bus.status != BusStatus.INACTIVE.value,
                )
                .update(
                    {Bus.status: BusStatus.INACTIVE.value}, synchronize_session=False
                )
            )
            deactivatedUsers = (
                session.query(User)
                .filter(User.operator_id == operator.id, User.is_active)
                .update({User.is_active: False}, synchronize_session=False)
            )
        session.commit()
        session.refresh(operator)

        operatorData = operatorJSON(operator)
        toggleData = {
            "operator": operatorData,
            "deactivated_buses": deactivatedBuses,
            "deactivated_users": deactivatedUsers,
        }
        logEvent(user, request_info, toggleData)
        state = "activated" if operator.is_active else "deactivated"
        return {
            "success": True,
            "message": f"Operator {state} successfully",
            "data": toggleData,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.delete(
    "/operators/{operator_id}",
    tags=["Operator"],
    response_model=schemas.Envelope[None],
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.InvalidIdentifier,
            exceptions.DataInUse,
        ]
    ),
    description="""
    Deletes an operator.
    Only administrators can delete operators.
    An operator that still owns buses or user accounts cannot be deleted.
    Logs the deletion activity with the associated user.
    """,
)
async def delete_operator(
    operator_id: int,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        user = requireAdmin(session, credential)
        operator = getOperator(session, operator_id)
        if session.query(Bus.id).filter(Bus.operator_id == operator.id).first():
            raise exceptions.DataInUse(Operator)
        if session.query(User.id).filter(User.operator_id == operator.id).first():
            raise exceptions.DataInUse(Operator)

        operatorData = operatorJSON(operator)
        session.delete(operator)
        session.commit()
        logEvent(user, request_info, operatorData)
        return {"success": True, "message": "Operator deleted successfully"}
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/operators/{operator_id}/buses",
    tags=["Operator"],
    response_model=schemas.Envelope[bus_api.BusListSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.InvalidIdentifier]
    ),
    description="""
    Fetches a page of the buses owned by an operator.
    Administrators can view any fleet, operator accounts only their own.
    Accepts the same filters as `/buses`.
    """,
)
async def fetch_operator_buses(
    operator_id: int,
    qParam: bus_api.FleetParams = Depends(),
    credential=Depends(bearer),
):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        policy.enforceOperator(policy.actorFromUser(user), operator_id)
        getOperator(session, operator_id)

        buses, pagination = bus_api.searchBus(
            session, qParam, policy.BusScope(operator_id=operator_id)
        )
        return {
            "success": True,
            "message": "Operator buses retrieved successfully",
            "data": {"buses": buses, "pagination": pagination},
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/operators/{operator_id}/users",
    tags=["Operator"],
    response_model=schemas.Envelope[List[auth_api.UserSchema]],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.InvalidIdentifier]
    ),
    description="""
    Fetches the user accounts belonging to an operator, ordered by username.
    Administrators can view any operator, operator accounts only their own.
    """,
)
async def fetch_operator_users(operator_id: int, credential=Depends(bearer)):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        policy.enforceOperator(policy.actorFromUser(user), operator_id)
        getOperator(session, operator_id)

        users = (
            session.query(User)
            .filter(User.operator_id == operator_id)
            .order_by(User.username.asc())
            .all()
        )
        return {
            "success": True,
            "message": "Operator users retrieved successfully",
            "data": [auth_api.userJSON(x) for x in users],
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/operators/{operator_id}/license",
    tags=["Operator"],
    response_model=schemas.Envelope[LicenseSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.InvalidIdentifier]
    ),
    description="""
    Reports whether the license of an operator is valid and how many days are left.
    Only administrators can check license status.
    """,
)
async def fetch_license_status(operator_id: int, credential=Depends(bearer)):
    try:
        session = sessionMaker()
        requireAdmin(session, credential)
        operator = getOperator(session, operator_id)
        return {
            "success": True,
            "message": "License status retrieved successfully",
            "data": licenseStatus(operator),
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()
