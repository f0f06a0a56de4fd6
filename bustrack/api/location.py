from datetime import date, datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from bustrack.api.bearer import bearer
from bustrack.src import exceptions, getters, policy, schemas, tracking, validators
from bustrack.src.constants import (
    DEFAULT_NEARBY_RADIUS,
    MAX_ACTIVE_LOCATIONS,
    MAX_HISTORY_LIMIT,
    MAX_NEARBY_RADIUS,
)
from bustrack.src.db import sessionMaker
from bustrack.src.enums import BusStatus
from bustrack.src.functions import enumStr, makeExceptionResponses
from bustrack.src.loggers import logEvent

route_v1 = APIRouter()


## Output Schema
class CoordinatesSchema(BaseModel):
    longitude: float
    latitude: float


class LocationSchema(BaseModel):
    id: int
    bus_id: int
    location: schemas.PointSchema
    speed: float
    heading: float
    accuracy: Optional[float]
    timestamp: datetime
    is_active: bool


class PingSchema(LocationSchema):
    coordinates: CoordinatesSchema


class LocationPagination(BaseModel):
    total_locations: int
    total_pages: int
    current_page: int
    count: int


class HistorySchema(BaseModel):
    locations: List[LocationSchema]
    pagination: LocationPagination


class DaySchema(BaseModel):
    bus_id: int
    date: date
    total_records: int
    locations: List[LocationSchema]


class OverallStatsSchema(BaseModel):
    total_records: int
    avg_speed: Optional[float]
    max_speed: Optional[float]
    first_record: Optional[datetime]
    last_record: Optional[datetime]


class DailyStatsSchema(BaseModel):
    date: str
    count: int
    avg_speed: float


class LocationStatsSchema(BaseModel):
    overall: OverallStatsSchema
    daily: List[DailyStatsSchema]


class RouteBriefSchema(BaseModel):
    id: int
    route_number: str
    origin: str
    destination: str


class OperatorBriefSchema(BaseModel):
    id: int
    name: str


class BusSummarySchema(BaseModel):
    id: int
    bus_code: Optional[str]
    bus_number: str
    bus_type: str
    capacity: int
    status: str
    route: RouteBriefSchema
    operator: Optional[OperatorBriefSchema] = None


class BusLocationSchema(BaseModel):
    bus: BusSummarySchema
    location: LocationSchema


class NearbySchema(BusLocationSchema):
    distance: float = Field(description="Kilometers, rounded to 2 decimals")


## Input Forms
class PingForm(BaseModel):
    latitude: float
    longitude: float
    speed: float = 0
    heading: float = 0
    accuracy: Optional[float] = None
    timestamp: Optional[datetime] = Field(
        default=None, description="Time of the fix, defaults to the time of arrival"
    )


## Query Parameters
class HistoryParams(BaseModel):
    page: int = Field(Query(default=1, gt=0))
    limit: int = Field(Query(default=50, gt=0, le=MAX_HISTORY_LIMIT))
    start_date: datetime | None = Field(Query(default=None))
    end_date: datetime | None = Field(Query(default=None))


class ActiveParams(BaseModel):
    limit: int = Field(Query(default=100, gt=0, le=MAX_ACTIVE_LOCATIONS))
    active_only: bool = Field(Query(default=True))


class NearbyParams(BaseModel):
    latitude: float = Field(Query())
    longitude: float = Field(Query())
    radius: float = Field(
        Query(
            default=DEFAULT_NEARBY_RADIUS,
            description=f"Kilometers, at most {MAX_NEARBY_RADIUS}",
        )
    )
    status: BusStatus | None = Field(
        Query(default=BusStatus.ACTIVE, description=enumStr(BusStatus))
    )


## Function
def pingJSON(location) -> dict:
    locationData = tracking.locationJSON(location)
    longitude, latitude = locationData["location"]["coordinates"]
    locationData["coordinates"] = {"longitude": longitude, "latitude": latitude}
    return locationData


## API endpoints
@route_v1.api_route(
    "/locations/bus/{bus_id}/update",
    methods=["POST", "PUT"],
    tags=["Location"],
    response_model=schemas.Envelope[PingSchema],
    status_code=status.HTTP_201_CREATED,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.InvalidCoordinates,
            exceptions.NoPermission,
            exceptions.InvalidIdentifier,
        ]
    ),
    description="""
    Records a GPS ping for a bus and makes it the current location of the bus.
    Administrators can update any bus, operators their own fleet and drivers their assigned bus.
    Every out of range value is reported in one response.
    """,
)
async def update_location(
    bus_id: int,
    fParam: PingForm,
    credential=Depends(bearer),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        ping = tracking.Ping(**fParam.model_dump())
        location = tracking.updateLocation(
            session, bus_id, ping, policy.actorFromUser(user)
        )
        locationData = pingJSON(location)
        logEvent(user, request_info, locationData)
        return {
            "success": True,
            "message": "Location updated successfully",
            "data": locationData,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/locations/bus/{bus_id}/latest",
    tags=["Location"],
    response_model=schemas.Envelope[LocationSchema],
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.InvalidIdentifier,
            exceptions.LocationNotFound,
        ]
    ),
    description="""
    Fetches the newest ping of a bus.
    Authenticated callers are limited to the buses in their scope.
    """,
)
async def fetch_latest_location(bus_id: int, credential=Depends(bearer)):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        location = tracking.getLatestLocation(
            session, bus_id, policy.actorFromUser(user)
        )
        return {
            "success": True,
            "message": "Latest location retrieved successfully",
            "data": tracking.locationJSON(location),
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/locations/bus/{bus_id}/history",
    tags=["Location"],
    response_model=schemas.Envelope[HistorySchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.InvalidIdentifier]
    ),
    description="""
    Fetches a page of the location history of a bus, newest first.
    `start_date` and `end_date` are inclusive.
    A page past the last one returns no locations.
    """,
)
async def fetch_location_history(
    bus_id: int, qParam: HistoryParams = Depends(), credential=Depends(bearer)
):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        params = tracking.HistoryParams(**qParam.model_dump())
        locations, pagination = tracking.getHistory(
            session, bus_id, params, policy.actorFromUser(user)
        )
        return {
            "success": True,
            "message": "Location history retrieved successfully",
            "data": {
                "locations": [tracking.locationJSON(x) for x in locations],
                "pagination": {
                    "total_locations": pagination.total,
                    "total_pages": pagination.total_pages,
                    "current_page": pagination.current_page,
                    "count": pagination.count,
                },
            },
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/locations/bus/{bus_id}/date/{date}",
    tags=["Location"],
    response_model=schemas.Envelope[DaySchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.InvalidIdentifier]
    ),
    description="""
    Fetches every ping of a bus on one UTC day, newest first.
    The date is given as `YYYY-MM-DD`.
    """,
)
async def fetch_locations_by_date(
    bus_id: int, date: date, credential=Depends(bearer)
):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        locations = tracking.getHistoryByDate(
            session, bus_id, date, policy.actorFromUser(user)
        )
        return {
            "success": True,
            "message": "Locations retrieved successfully",
            "data": {
                "bus_id": bus_id,
                "date": date,
                "total_records": len(locations),
                "locations": [tracking.locationJSON(x) for x in locations],
            },
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/locations/bus/{bus_id}/stats",
    tags=["Location"],
    response_model=schemas.Envelope[LocationStatsSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.InvalidIdentifier]
    ),
    description="""
    Ping statistics of a bus: overall totals and speeds,
    and one bucket per day for the last 30 days.
    """,
)
async def fetch_location_stats(bus_id: int, credential=Depends(bearer)):
    try:
        session = sessionMaker()
        user = validators.accessToken(credential, session)
        stats = tracking.getStats(session, bus_id, policy.actorFromUser(user))
        return {
            "success": True,
            "message": "Location statistics retrieved successfully",
            "data": stats,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/locations/buses/active",
    tags=["Location"],
    response_model=schemas.Envelope[List[BusLocationSchema]],
    responses=makeExceptionResponses([exceptions.InvalidToken]),
    description="""
    Fetches the newest ping of every bus, most recently seen first.
    Restricted to active buses unless `active_only` is false.
    Requires authentication.
    """,
)
async def fetch_active_locations(
    qParam: ActiveParams = Depends(), credential=Depends(bearer)
):
    try:
        session = sessionMaker()
        validators.accessToken(credential, session)
        locations = tracking.getAllActive(session, qParam.limit, qParam.active_only)
        return {
            "success": True,
            "message": "Active bus locations retrieved successfully",
            "data": locations,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/locations/nearby",
    tags=["Location"],
    response_model=schemas.Envelope[List[NearbySchema]],
    responses=makeExceptionResponses(
        [exceptions.InvalidCoordinates, exceptions.InvalidRadius]
    ),
    description="""
    Finds the buses seen within `radius` kilometers of a point, nearest first.
    Each bus appears once, with its newest ping inside the radius.
    Public endpoint.
    """,
)
async def fetch_nearby_buses(qParam: NearbyParams = Depends()):
    try:
        session = sessionMaker()
        nearby = tracking.getNearby(
            session, qParam.latitude, qParam.longitude, qParam.radius, qParam.status
        )
        return {
            "success": True,
            "message": f"Found {len(nearby)} buses nearby",
            "data": nearby,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_v1.get(
    "/locations/route/{route_id}",
    tags=["Location"],
    response_model=schemas.Envelope[List[BusLocationSchema]],
    responses=makeExceptionResponses([exceptions.InvalidIdentifier]),
    description="""
    Fetches the newest ping of every active bus on a route, ordered by bus number.
    Public endpoint.
    """,
)
async def fetch_route_locations(route_id: int):
    try:
        session = sessionMaker()
        locations = tracking.getRouteLocations(session, route_id)
        return {
            "success": True,
            "message": "Route bus locations retrieved successfully",
            "data": locations,
        }
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()
