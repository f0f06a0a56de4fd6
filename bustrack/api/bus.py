from datetime import datetime
from enum import IntEnum
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import func, or_
from sqlalchemy.orm.session import Session

from bustrack.api.bearer import bearer
from bustrack.src import exceptions, getters, policy, schemas, tracking, validators
from bustrack.src.constants import (
    MAX_BUS_CAPACITY,
    MAX_PAGE_LIMIT,
    MIN_BUS_CAPACITY,
)
from bustrack.src.db import Bus, Operator, Route, sessionMaker
from bustrack.src.enums import Action, BusStatus, BusType, OrderIn
from bustrack.src.functions import (
    enumStr,
    generateBusCode,
    makeExceptionResponses,
    paginate,
    toJSON,
    toPoint,
    updateIfChanged,
)
from bustrack.src.loggers import logEvent

route_v1 = APIRouter()


## Output Schema
class RouteBriefSchema(BaseModel):
    id: int
    route_number: str
    origin: str
    destination: str


class OperatorBriefSchema(BaseModel):
    id: int
    name: str


class BusSchema(BaseModel):
    id: int
    bus_code: Optional[str]
    bus_number: str
    route_id: int
    operator_id: Optional[int]
    capacity: int
    bus_type: BusType
    current_location: Optional[schemas.PointSchema]
    status: BusStatus
    last_updated: Optional[datetime]
    updated_on: Optional[datetime]
    created_on: datetime


class BusDetailSchema(BusSchema):
    route: Optional[RouteBriefSchema] = None
    operator: Optional[OperatorBriefSchema] = None


class BusListSchema(BaseModel):
    buses: List[BusDetailSchema]
    pagination: schemas.Pagination


class CountSchema(BaseModel):
    key: str
    count: int


class BusStatsSchema(BaseModel):
    total_buses: int
    active_buses: int
    inactive_buses: int
    maintenance_buses: int
    status_stats: List[CountSchema]
    bus_type_stats: List[CountSchema]


class BusLocationSchema(BaseModel):
    bus: BusSchema
    location: dict


## Input Forms
class CreateForm(BaseModel):
    bus_number: str = Field(min_length=1, max_length=20)
    route_id: int
    operator_id: Optional[int] = None
    capacity: int = Field(ge=MIN_BUS_CAPACITY, le=MAX_BUS_CAPACITY)
    bus_type: BusType = Field(description=enumStr(BusType))
    status: BusStatus = Field(default=BusStatus.ACTIVE, description=enumStr(BusStatus))
    current_location: Optional[schemas.PointSchema] = None


class UpdateForm(BaseModel):
    bus_number: Optional[str] = Field(default=None, min_length=1, max_length=20)
    route_id: Optional[int] = None
    operator_id: Optional[int] = None
    capacity: Optional[int] = Field(
        default=None, ge=MIN_BUS_CAPACITY, le=MAX_BUS_CAPACITY
    )
    bus_type: Optional[BusType] = Field(default=None, description=enumStr(BusType))
    status: Optional[BusStatus] = Field(default=None, description=enumStr(BusStatus))


class LegacyLocationForm(BaseModel):
    latitude: float
    longitude: float
    speed: Optional[float] = None
    heading: Optional[float] = None
    timestamp: Optional[datetime] = None


## Query Parameters
class OrderBy(IntEnum):
    id = 1
    bus_number = 2
    last_updated = 3
    created_on = 4


class FleetParams(BaseModel):
    # filters
    search: str | None = Field(
        Query(default=None, description="Matches bus number or bus code")
    )
    status: BusStatus | None = Field(
        Query(default=None, description=enumStr(BusStatus))
    )
    bus_type: BusType | None = Field(Query(default=None, description=enumStr(BusType)))
    route_id: int | None = Field(Query(default=None))
    # Ordering
    order_by: OrderBy = Field(
        Query(default=OrderBy.last_updated, description=enumStr(OrderBy))
    )
    order_in: OrderIn = Field(Query(default=OrderIn.DESC, description=enumStr(OrderIn)))
    # Pagination
    page: int = Field(Query(default=1, gt=0))
    limit: int = Field(Query(default=20, gt=0, le=MAX_PAGE_LIMIT))


class QueryParams(FleetParams):
    operator_id: int | None = Field(Query(default=None))


## Function
def busJSON(bus: Bus) -> dict:
    return toJSON(bus, [Bus.current_location.key])


def busDetailJSON(bus: Bus, route: Optional[Route], operator: Optional[Operator]) -> dict:
    busData = busJSON(bus)
    if route is not None:
        busData["route"] = {
            "id": route.id,
            "route_number": route.route_number,
            "origin": route.origin,
            "destination": route.destination,
        }
    if operator is not None:
        busData["operator"] = {"id": operator.id, "name": operator.name}
    return busData


def validateRoute(session: Session, route_id: int) -> Route:
    route = session.query(Route).filter(Route.id == route_id).first()
    if route is None:
        raise exceptions.UnknownValue(Bus.route_id)
    if not route.is_active:
        raise exceptions.InactiveResource(Route)
    return route


def validateOperator(session: Session, operator_id: int) -> Operator:
    operator = session.query(Operator).filter(Operator.id == operator_id).first()
    if operator is None:
        raise exceptions.UnknownValue(Bus.operator_id)
    return operator


def checkUniqueBusNumber(session: Session, bus_number: str, bus_id=None):
    query = session.query(Bus.id).filter(Bus.bus_number == bus_number)
    if bus_id is not None:
        query = query.filter(Bus.id != bus_id)
    if query.first() is not None:
        raise exceptions.DuplicateValue(Bus.bus_number)


def recountBuses(session: Session, *operator_ids) -> None:
    """Refresh the denormalized `total_buses` of the given operators."""
    for operator_id in set(operator_ids):
        if operator_id is None:
            continue
        total = session.query(func.count(Bus.id)).filter(Bus.operator_id == operator_id)
        session.query(Operator).filter(Operator.id == operator_id).update(
            {Operator.total_buses: total.scalar_subquery()},
            synchronize_session=False,
        )


def updateBus(bus: Bus, fParam: UpdateForm):
    updateIfChanged(
        bus,
        fParam,
        [
            Bus.bus_number.key,
            Bus.route_id.key,
            Bus.operator_id.key,
            Bus.capacity.key,
            Bus.bus_type.key,
            Bus.status.key,
        ],
    )


def searchBus(
    session: Session, qParam: FleetParams, scope: Optional[policy.BusScope] = None
) -> tuple[List[dict], schemas.Pagination]:
    query = (
        session.query(Bus, Route, Operator)
        .join(Route, Route.id == Bus.route_id)
        .outerjoin(Operator, Operator.id == Bus.operator_id)
    )

    # Scope
    if scope is not None:
        if scope.operator_id is not None:
            query = query.filter(Bus.operator_id == scope.operator_id)
        else:
            query = query.filter(Bus.id == scope.bus_id)
    # Filters
    if qParam.search is not None:
        query = query.filter(
            or_(
                Bus.bus_number.ilike(f"%{qParam.search}%"),
                Bus.bus_code.ilike(f"%{qParam.search}%"),
            )
        )
    if qParam.status is not None:
        query = query.filter(Bus.status == qParam.status.value)
    if qParam.bus_type is not None:
        query = query.filter(Bus.bus_type == qParam.bus_type.value)
    if qParam.route_id is not None:
        query = query.filter(Bus.route_id == qParam.route_id)
    if isinstance(qParam, QueryParams) and qParam.operator_id is not None:
        query = query.filter(Bus.operator_id == qParam.operator_id)

    total = query.count()

    # Ordering
    orderingAttribute = getattr(Bus, OrderBy(qParam.order_by).name)
    if qParam.order_in == OrderIn.ASC:
        query = query.order_by(orderingAttribute.asc(), Bus.id.asc())
    else:
        query = query.order_by(orderingAttribute.desc(), Bus.id.desc())

    # Pagination
    query = query.offset((qParam.page - 1) * qParam.limit).limit(qParam.limit)
    buses = [busDetailJSON(bus, route, operator) for bus, route, operator in query.all()]
    return buses, paginate(total, qParam.page, qParam.limit, len(buses))


def busStats(session: Session) -> dict:
    statusCounts = dict(
        session.query(Bus.status, func.count(Bus.id)).group_by(Bus.status).all()
    )
    typeCounts = (
        session.query(Bus.bus_type, func.count(Bus.id)).group_by(Bus.bus_type).all()
    )
    return {
        "total_buses": sum(statusCounts.values()),
        "active_buses": statusCounts.get(BusStatus.ACTIVE.value, 0),
        "inactive_buses": statusCounts.get(BusStatus.INACTIVE.value, 0),
        "maintenance_buses": statusCounts.get(BusStatus.MAINTENANCE.value, 0),
        "status_stats": [{"key": k, "count": v} for k, v in statusCounts.items()],
        "bus_type_stats": [{"key": k, "count": v} for k, v in typeCounts],
    }


## API endpoints
@route_v1.get(
    "/buses",
    tags=["Bus"],
    response_model=schemas.Envelope[BusListSchema],
    responses=makeExceptionResponses([exceptions.InvalidToken]),
    description="""
    Fetches a page of buses with their route and operator.
    Public endpoint, the bearer token is optional.
    Operators only see their own fleet, drivers and bus bound users only their assigned bus.
    Supports searching over bus number and bus code.
    """,
)
async def fetch_buses(qParam: QueryParams = Depends(), credential=Depends(bearer)):
    try:
        session = sessionMaker()
        user = validators.optionalAccessToken(credential, session)
        actor = policy.actorFromUser(user)
        policy.enforce(actor, Action.LIST, policy.BusScope())

        buses, pagination = searchBus(session, qParam, policy.listingScope(actor))
        return {
            "success": True,
            "message": "Buses retrieved successfully",
            "data": {"buses": buses, "pagination": pagination},
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/buses/stats",
    tags=["Bus"],
    response_model=schemas.Envelope[BusStatsSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission]
    ),
    description="""
    Fleet totals by status and by bus type.
    Only administrators can view fleet statistics.
    """,
)
async def fetch_bus_stats(credential=Depends(bearer)):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        policy.enforce(policy.actorFromUser(user), Action.MANAGE, policy.BusScope())

        return {
            "success": True,
            "message": "Bus statistics retrieved successfully",
            "data": busStats(session),
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/buses/route/{route_id}",
    tags=["Bus"],
    response_model=schemas.Envelope[List[BusSchema]],
    responses=makeExceptionResponses([exceptions.InvalidIdentifier]),
    description="""
    Fetches the active buses running on a route, most recently updated first.
    Public endpoint.
    """,
)
async def fetch_buses_by_route(route_id: int):
    try:
        session = sessionMaker()
        if session.query(Route.id).filter(Route.id == route_id).first() is None:
            raise exceptions.InvalidIdentifier()

        buses = (
            session.query(Bus)
            .filter(Bus.route_id == route_id, Bus.status == BusStatus.ACTIVE.value)
            .order_by(Bus.last_updated.desc())
            .all()
        )
        return {
            "success": True,
            "message": "Buses retrieved successfully",
            "data": [busJSON(bus) for bus in buses],
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/buses/{bus_id}",
    tags=["Bus"],
    response_model=schemas.Envelope[BusDetailSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.InvalidIdentifier]
    ),
    description="""
    Fetches a bus with its route and operator.
    Public endpoint. Authenticated callers are limited to the buses in their scope.
    """,
)
async def fetch_bus(bus_id: int, credential=Depends(bearer)):
    try:
        session = sessionMaker()
        user = validators.optionalAccessToken(credential, session)
        actor = policy.actorFromUser(user)
        if actor is None:
            bus = session.query(Bus).filter(Bus.id == bus_id).first()
            if bus is None:
                raise exceptions.InvalidIdentifier()
        else:
            bus = tracking.loadBus(session, bus_id, actor, Action.READ)

        route = session.query(Route).filter(Route.id == bus.route_id).first()
        operator = None
        if bus.operator_id is not None:
            operator = (
                session.query(Operator).filter(Operator.id == bus.operator_id).first()
            )
        return {
            "success": True,
            "message": "Bus retrieved successfully",
            "data": busDetailJSON(bus, route, operator),
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.post(
    "/buses",
    tags=["Bus"],
    response_model=schemas.Envelope[BusSchema],
    status_code=status.HTTP_201_CREATED,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.DuplicateValue,
            exceptions.UnknownValue,
            exceptions.InactiveResource,
            exceptions.InvalidCoordinates,
        ]
    ),
    description="""
    Creates a new bus on an active route.
    Only administrators can create buses.
    The bus number must be unique. A human readable bus code is generated.
    Logs the bus creation activity with the associated user.
    """,
)
async def create_bus(
    fParam: CreateForm,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        policy.enforce(policy.actorFromUser(user), Action.MANAGE, policy.BusScope())

        checkUniqueBusNumber(session, fParam.bus_number)
        validateRoute(session, fParam.route_id)
        if fParam.operator_id is not None:
            validateOperator(session, fParam.operator_id)
        current_location = None
        if fParam.current_location is not None:
            longitude, latitude = fParam.current_location.coordinates
            validators.coordinates(latitude, longitude)
            current_location = toPoint(longitude, latitude)

        bus = Bus(
            bus_code=generateBusCode(
                lambda code: session.query(Bus.id).filter(Bus.bus_code == code).first()
                is not None
            ),
            bus_number=fParam.bus_number,
            route_id=fParam.route_id,
            operator_id=fParam.operator_id,
            capacity=fParam.capacity,
            bus_type=fParam.bus_type.value,
            status=fParam.status.value,
            current_location=current_location,
        )
        session.add(bus)
        session.flush()
        recountBuses(session, bus.operator_id)
        session.commit()
        session.refresh(bus)

        busData = busJSON(bus)
        logEvent(user, request_info, busData)
        return {"success": True, "message": "Bus created successfully", "data": busData}
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.put(
    "/buses/{bus_id}",
    tags=["Bus"],
    response_model=schemas.Envelope[BusSchema],
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.InvalidIdentifier,
            exceptions.DuplicateValue,
            exceptions.UnknownValue,
            exceptions.InactiveResource,
        ]
    ),
    description="""
    Updates an existing bus.
    Only administrators can update buses.
    A changed bus number must stay unique, a changed route must exist and be active.
    Changes are saved only if the bus data has been modified.
    Logs the bus updating activity with the associated user.
    """,
)
async def update_bus(
    bus_id: int,
    fParam: UpdateForm,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        policy.enforce(policy.actorFromUser(user), Action.MANAGE, policy.BusScope())

        bus = session.query(Bus).filter(Bus.id == bus_id).first()
        if bus is None:
            raise exceptions.InvalidIdentifier()
        if fParam.bus_number is not None and fParam.bus_number != bus.bus_number:
            checkUniqueBusNumber(session, fParam.bus_number, bus.id)
        if fParam.route_id is not None and fParam.route_id != bus.route_id:
            validateRoute(session, fParam.route_id)
        if fParam.operator_id is not None and fParam.operator_id != bus.operator_id:
            validateOperator(session, fParam.operator_id)

        previousOperator = bus.operator_id
        updateBus(bus, fParam)
        haveUpdates = session.is_modified(bus)
        if haveUpdates:
            session.flush()
            recountBuses(session, previousOperator, bus.operator_id)
            session.commit()
            session.refresh(bus)

        busData = busJSON(bus)
        if haveUpdates:
            logEvent(user, request_info, busData)
        return {"success": True, "message": "Bus updated successfully", "data": busData}
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.delete(
    "/buses/{bus_id}",
    tags=["Bus"],
    response_model=schemas.Envelope[None],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.InvalidIdentifier]
    ),
    description="""
    Deletes a bus together with its location history.
    Only administrators can delete buses.
    Users assigned to the bus lose the assignment.
    Logs the deletion activity with the associated user.
    """,
)
async def delete_bus(
    bus_id: int,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        policy.enforce(policy.actorFromUser(user), Action.MANAGE, policy.BusScope())

        bus = session.query(Bus).filter(Bus.id == bus_id).first()
        if bus is None:
            raise exceptions.InvalidIdentifier()

        busData = busJSON(bus)
        session.delete(bus)
        session.flush()
        recountBuses(session, bus.operator_id)
        session.commit()
        logEvent(user, request_info, busData)
        return {"success": True, "message": "Bus deleted successfully"}
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.put(
    "/buses/{bus_id}/location",
    tags=["Bus"],
    response_model=schemas.Envelope[BusLocationSchema],
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.InvalidIdentifier,
            exceptions.InvalidCoordinates,
        ]
    ),
    description="""
    Records a location for a bus and returns the bus with its new position.
    Kept for older clients, new clients use `/locations/bus/{bus_id}/update`.
    Administrators can update any bus, operators their own fleet and drivers their assigned bus.
    """,
)
async def update_bus_location(
    bus_id: int,
    fParam: LegacyLocationForm,
    credential=Depends(bearer),
):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        ping = tracking.Ping(
            latitude=fParam.latitude,
            longitude=fParam.longitude,
            speed=fParam.speed if fParam.speed is not None else 0,
            heading=fParam.heading if fParam.heading is not None else 0,
            timestamp=fParam.timestamp,
        )
        location = tracking.updateLocation(
            session, bus_id, ping, policy.actorFromUser(user)
        )
        bus = session.query(Bus).filter(Bus.id == bus_id).first()
        return {
            "success": True,
            "message": "Bus location updated successfully",
            "data": {
                "bus": busJSON(bus),
                "location": tracking.locationJSON(location),
            },
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()
