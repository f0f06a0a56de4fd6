from datetime import datetime
from enum import IntEnum
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import func, or_
from sqlalchemy.orm.session import Session

from bustrack.api.bearer import bearer
from bustrack.src import exceptions, getters, policy, schemas, validators
from bustrack.src.constants import MAX_PAGE_LIMIT, REGEX_ROUTE_NUMBER
from bustrack.src.db import Bus, Route, Waypoint, sessionMaker
from bustrack.src.enums import Action, BusStatus, OrderIn
from bustrack.src.functions import (
    enumStr,
    makeExceptionResponses,
    paginate,
    pointToJSON,
    toJSON,
    toPoint,
    updateIfChanged,
)
from bustrack.src.loggers import logEvent

route_v1 = APIRouter()


## Output Schema
class WaypointSchema(BaseModel):
    position: int
    name: str
    location: schemas.PointSchema
    estimated_time: Optional[int]


class RouteSchema(BaseModel):
    id: int
    route_number: str
    origin: str
    destination: str
    distance: float
    estimated_duration: int
    is_active: bool
    waypoints: List[WaypointSchema]
    updated_on: Optional[datetime]
    created_on: datetime


class RouteBusSchema(BaseModel):
    id: int
    bus_code: Optional[str]
    bus_number: str
    bus_type: str
    capacity: int
    status: str
    current_location: Optional[schemas.PointSchema]
    last_updated: Optional[datetime]


class RouteDetailSchema(RouteSchema):
    buses: List[RouteBusSchema]
    bus_count: int


class RouteListSchema(BaseModel):
    routes: List[RouteSchema]
    pagination: schemas.Pagination


class RouteAverageSchema(BaseModel):
    avg_distance: Optional[float]
    avg_duration: Optional[float]
    max_distance: Optional[float]
    min_distance: Optional[float]


class PopularRouteSchema(BaseModel):
    id: int
    route_number: str
    origin: str
    destination: str
    bus_count: int


class RouteStatsSchema(BaseModel):
    total_routes: int
    active_routes: int
    inactive_routes: int
    average_stats: RouteAverageSchema
    popular_routes: List[PopularRouteSchema]


## Input Forms
class WaypointForm(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    location: schemas.PointSchema
    estimated_time: Optional[int] = Field(default=None, ge=0)


class CreateForm(BaseModel):
    route_number: str = Field(min_length=1, max_length=16, pattern=REGEX_ROUTE_NUMBER)
    origin: str = Field(min_length=1, max_length=64)
    destination: str = Field(min_length=1, max_length=64)
    distance: float = Field(gt=0, description="Kilometers")
    estimated_duration: int = Field(gt=0, description="Minutes")
    waypoints: List[WaypointForm] = []
    is_active: bool = True


class UpdateForm(BaseModel):
    route_number: Optional[str] = Field(
        default=None, min_length=1, max_length=16, pattern=REGEX_ROUTE_NUMBER
    )
    origin: Optional[str] = Field(default=None, min_length=1, max_length=64)
    destination: Optional[str] = Field(default=None, min_length=1, max_length=64)
    distance: Optional[float] = Field(default=None, gt=0)
    estimated_duration: Optional[int] = Field(default=None, gt=0)
    waypoints: Optional[List[WaypointForm]] = Field(
        default=None, description="Replaces every waypoint of the route"
    )
    is_active: Optional[bool] = None


## Query Parameters
class OrderBy(IntEnum):
    id = 1
    route_number = 2
    distance = 3
    estimated_duration = 4
    created_on = 5


class QueryParams(BaseModel):
    # filters
    search: str | None = Field(
        Query(default=None, description="Matches route number, origin or destination")
    )
    origin: str | None = Field(Query(default=None))
    destination: str | None = Field(Query(default=None))
    is_active: bool | None = Field(Query(default=None))
    # Ordering
    order_by: OrderBy = Field(
        Query(default=OrderBy.route_number, description=enumStr(OrderBy))
    )
    order_in: OrderIn = Field(Query(default=OrderIn.ASC, description=enumStr(OrderIn)))
    # Pagination
    page: int = Field(Query(default=1, gt=0))
    limit: int = Field(Query(default=20, gt=0, le=MAX_PAGE_LIMIT))


class SearchParams(BaseModel):
    origin: str | None = Field(Query(default=None))
    destination: str | None = Field(Query(default=None))
    max_distance: float | None = Field(Query(default=None, gt=0))


## Function
def validateWaypoints(waypoints: List[WaypointForm]) -> bool:
    errors = []
    for position, waypoint in enumerate(waypoints):
        longitude, latitude = waypoint.location.coordinates
        for error in validators.coordinateErrors(latitude, longitude):
            error["field"] = f"waypoints.{position}.{error['field']}"
            errors.append(error)
    if errors:
        raise exceptions.InvalidCoordinates(errors=errors)
    return True


def replaceWaypoints(session: Session, route: Route, waypoints: List[WaypointForm]):
    session.query(Waypoint).filter(Waypoint.route_id == route.id).delete(
        synchronize_session=False
    )
    for position, waypoint in enumerate(waypoints):
        longitude, latitude = waypoint.location.coordinates
        session.add(
            Waypoint(
                route_id=route.id,
                position=position,
                name=waypoint.name,
                location=toPoint(longitude, latitude),
                estimated_time=waypoint.estimated_time,
            )
        )


def checkUniqueRouteNumber(session: Session, route_number: str, route_id=None):
    query = session.query(Route.id).filter(Route.route_number == route_number)
    if route_id is not None:
        query = query.filter(Route.id != route_id)
    if query.first() is not None:
        raise exceptions.DuplicateValue(Route.route_number)


def routeJSON(session: Session, route: Route) -> dict:
    routeData = toJSON(route)
    waypoints = (
        session.query(Waypoint)
        .filter(Waypoint.route_id == route.id)
        .order_by(Waypoint.position.asc())
        .all()
    )
    routeData["waypoints"] = [
        {
            "position": waypoint.position,
            "name": waypoint.name,
            "location": pointToJSON(waypoint.location),
            "estimated_time": waypoint.estimated_time,
        }
        for waypoint in waypoints
    ]
    return routeData


def getRoute(session: Session, route_id: int) -> Route:
    route = session.query(Route).filter(Route.id == route_id).first()
    if route is None:
        raise exceptions.InvalidIdentifier()
    return route


def updateRoute(route: Route, fParam: UpdateForm):
    updateIfChanged(
        route,
        fParam,
        [
            Route.route_number.key,
            Route.origin.key,
            Route.destination.key,
            Route.distance.key,
            Route.estimated_duration.key,
            Route.is_active.key,
        ],
    )


def searchRoute(
    session: Session, qParam: QueryParams
) -> tuple[List[dict], schemas.Pagination]:
    query = session.query(Route)

    # Filters
    if qParam.search is not None:
        query = query.filter(
            or_(
                Route.route_number.ilike(f"%{qParam.search}%"),
                Route.origin.ilike(f"%{qParam.search}%"),
                Route.destination.ilike(f"%{qParam.search}%"),
            )
        )
    if qParam.origin is not None:
        query = query.filter(Route.origin.ilike(f"%{qParam.origin}%"))
    if qParam.destination is not None:
        query = query.filter(Route.destination.ilike(f"%{qParam.destination}%"))
    if qParam.is_active is not None:
        query = query.filter(Route.is_active == qParam.is_active)

    total = query.count()

    # Ordering
    orderingAttribute = getattr(Route, OrderBy(qParam.order_by).name)
    if qParam.order_in == OrderIn.ASC:
        query = query.order_by(orderingAttribute.asc(), Route.id.asc())
    else:
        query = query.order_by(orderingAttribute.desc(), Route.id.desc())

    # Pagination
    query = query.offset((qParam.page - 1) * qParam.limit).limit(qParam.limit)
    routes = [routeJSON(session, route) for route in query.all()]
    return routes, paginate(total, qParam.page, qParam.limit, len(routes))


def routeStats(session: Session) -> dict:
    total = session.query(func.count(Route.id)).scalar()
    active = session.query(func.count(Route.id)).filter(Route.is_active).scalar()
    avgDistance, avgDuration, maxDistance, minDistance = session.query(
        func.avg(Route.distance),
        func.avg(Route.estimated_duration),
        func.max(Route.distance),
        func.min(Route.distance),
    ).one()

    busCount = func.count(Bus.id).label("bus_count")
    popular = (
        session.query(Route, busCount)
        .outerjoin(Bus, Bus.route_id == Route.id)
        .group_by(Route.id)
        .order_by(busCount.desc(), Route.id.asc())
        .limit(10)
        .all()
    )
    return {
        "total_routes": total,
        "active_routes": active,
        "inactive_routes": total - active,
        "average_stats": {
            "avg_distance": float(avgDistance) if avgDistance is not None else None,
            "avg_duration": float(avgDuration) if avgDuration is not None else None,
            "max_distance": maxDistance,
            "min_distance": minDistance,
        },
        "popular_routes": [
            {
                "id": route.id,
                "route_number": route.route_number,
                "origin": route.origin,
                "destination": route.destination,
                "bus_count": count,
            }
            for route, count in popular
        ],
    }


## API endpoints
@route_v1.get(
    "/routes",
    tags=["Route"],
    response_model=schemas.Envelope[RouteListSchema],
    description="""
    Fetches a page of routes with their waypoints.
    Public endpoint.
    Supports searching over route number, origin and destination.
    """,
)
async def fetch_routes(qParam: QueryParams = Depends()):
    try:
        session = sessionMaker()
        routes, pagination = searchRoute(session, qParam)
        return {
            "success": True,
            "message": "Routes retrieved successfully",
            "data": {"routes": routes, "pagination": pagination},
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/routes/search",
    tags=["Route"],
    response_model=schemas.Envelope[List[RouteSchema]],
    description="""
    Finds active routes by origin, destination and maximum distance.
    Public endpoint. Shortest routes come first.
    """,
)
async def search_routes(qParam: SearchParams = Depends()):
    try:
        session = sessionMaker()
        query = session.query(Route).filter(Route.is_active)
        if qParam.origin is not None:
            query = query.filter(Route.origin.ilike(f"%{qParam.origin}%"))
        if qParam.destination is not None:
            query = query.filter(Route.destination.ilike(f"%{qParam.destination}%"))
        if qParam.max_distance is not None:
            query = query.filter(Route.distance <= qParam.max_distance)
        routes = query.order_by(
            Route.distance.asc(), Route.estimated_duration.asc()
        ).all()
        return {
            "success": True,
            "message": "Routes retrieved successfully",
            "data": [routeJSON(session, route) for route in routes],
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/routes/stats",
    tags=["Route"],
    response_model=schemas.Envelope[RouteStatsSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission]
    ),
    description="""
    Route totals, distance and duration averages and the 10 routes with most buses.
    Only administrators can view route statistics.
    """,
)
async def fetch_route_stats(credential=Depends(bearer)):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        policy.enforce(policy.actorFromUser(user), Action.MANAGE, policy.BusScope())

        return {
            "success": True,
            "message": "Route statistics retrieved successfully",
            "data": routeStats(session),
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/routes/{route_id}",
    tags=["Route"],
    response_model=schemas.Envelope[RouteDetailSchema],
    responses=makeExceptionResponses([exceptions.InvalidIdentifier]),
    description="""
    Fetches a route with its waypoints and the active buses running on it.
    Public endpoint.
    """,
)
async def fetch_route(route_id: int):
    try:
        session = sessionMaker()
        route = getRoute(session, route_id)
        buses = (
            session.query(Bus)
            .filter(Bus.route_id == route.id, Bus.status == BusStatus.ACTIVE.value)
            .order_by(Bus.last_updated.desc())
            .all()
        )

        routeData = routeJSON(session, route)
        routeData["buses"] = [toJSON(bus, [Bus.current_location.key]) for bus in buses]
        routeData["bus_count"] = len(buses)
        return {
            "success": True,
            "message": "Route retrieved successfully",
            "data": routeData,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.post(
    "/routes",
    tags=["Route"],
    response_model=schemas.Envelope[RouteSchema],
    status_code=status.HTTP_201_CREATED,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.DuplicateValue,
            exceptions.InvalidCoordinates,
        ]
    ),
    description="""
    Creates a new route with its ordered waypoints.
    Only administrators can create routes.
    The route number must be unique and every waypoint must have valid coordinates.
    Logs the route creation activity with the associated user.
    """,
)
async def create_route(
    fParam: CreateForm,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        policy.enforce(policy.actorFromUser(user), Action.MANAGE, policy.BusScope())

        checkUniqueRouteNumber(session, fParam.route_number)
        validateWaypoints(fParam.waypoints)

        route = Route(
            route_number=fParam.route_number,
            origin=fParam.origin,
            destination=fParam.destination,
            distance=fParam.distance,
            estimated_duration=fParam.estimated_duration,
            is_active=fParam.is_active,
        )
        session.add(route)
        session.flush()
        replaceWaypoints(session, route, fParam.waypoints)
        session.commit()
        session.refresh(route)

        routeData = routeJSON(session, route)
        logEvent(user, request_info, routeData)
        return {
            "success": True,
            "message": "Route created successfully",
            "data": routeData,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.put(
    "/routes/{route_id}",
    tags=["Route"],
    response_model=schemas.Envelope[RouteSchema],
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.InvalidIdentifier,
            exceptions.DuplicateValue,
            exceptions.InvalidCoordinates,
        ]
    ),
    description="""
    Updates an existing route.
    Only administrators can update routes.
    When waypoints are given they replace the current ones entirely.
    Logs the route updating activity with the associated user.
    """,
)
async def update_route(
    route_id: int,
    fParam: UpdateForm,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        policy.enforce(policy.actorFromUser(user), Action.MANAGE, policy.BusScope())

        route = getRoute(session, route_id)
        if fParam.route_number is not None and fParam.route_number != route.route_number:
            checkUniqueRouteNumber(session, fParam.route_number, route.id)

        updateRoute(route, fParam)
        haveUpdates = session.is_modified(route)
        if fParam.waypoints is not None:
            validateWaypoints(fParam.waypoints)
            replaceWaypoints(session, route, fParam.waypoints)
            haveUpdates = True
        if haveUpdates:
            session.commit()
            session.refresh(route)

        routeData = routeJSON(session, route)
        if haveUpdates:
            logEvent(user, request_info, routeData)
        return {
            "success": True,
            "message": "Route updated successfully",
            "data": routeData,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.patch(
    "/routes/{route_id}/status",
    tags=["Route"],
    response_model=schemas.Envelope[RouteSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.InvalidIdentifier]
    ),
    description="""
    Toggles a route between active and inactive.
    Only administrators can change the route status.
    Buses cannot be added to an inactive route.
    """,
)
async def toggle_route_status(
    route_id: int,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        policy.enforce(policy.actorFromUser(user), Action.MANAGE, policy.BusScope())

        route = getRoute(session, route_id)
        route.is_active = not route.is_active
        session.commit()
        session.refresh(route)

        routeData = routeJSON(session, route)
        logEvent(user, request_info, routeData)
        state = "activated" if route.is_active else "deactivated"
        return {
            "success": True,
            "message": f"Route {state} successfully",
            "data": routeData,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.delete(
    "/routes/{route_id}",
    tags=["Route"],
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
    Deletes a route and its waypoints.
    Only administrators can delete routes.
    A route still referenced by any bus cannot be deleted.
    Logs the deletion activity with the associated user.
    """,
)
async def delete_route(
    route_id: int,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        policy.enforce(policy.actorFromUser(user), Action.MANAGE, policy.BusScope())

        route = getRoute(session, route_id)
        if session.query(Bus.id).filter(Bus.route_id == route.id).first() is not None:
            raise exceptions.DataInUse(Route)

        routeData = toJSON(route)
        session.delete(route)
        session.commit()
        logEvent(user, request_info, routeData)
        return {"success": True, "message": "Route deleted successfully"}
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()
