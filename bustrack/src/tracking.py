"""
Location ingest and query engine.

Stores GPS pings of buses, keeps the denormalized `Bus.current_location`
in step with the newest ping, and answers the latest, history, proximity
and statistics queries. Proximity and distance computations are delegated
to PostGIS.

Every function takes the SQLAlchemy session explicitly. Functions acting on
a single bus also take the actor and consult `bustrack.src.policy` before
reading or writing anything.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Tuple
from geoalchemy2 import Geography
from pydantic import BaseModel, Field
from sqlalchemy import delete, func
from sqlalchemy.orm.session import Session

from bustrack.src import exceptions, policy, schemas, validators
from bustrack.src.constants import (
    EPSG_4326,
    MAX_HISTORY_LIMIT,
    MAX_NEARBY_RADIUS,
    STATS_WINDOW_DAYS,
)
from bustrack.src.db import Bus, Location, Operator, Route
from bustrack.src.enums import Action, BusStatus
from bustrack.src.functions import paginate, pointToJSON, toPoint

logger = logging.getLogger("Tracking")


## Inputs
class Ping(BaseModel):
    latitude: float
    longitude: float
    speed: float = 0
    heading: float = 0
    accuracy: Optional[float] = None
    timestamp: Optional[datetime] = None


class HistoryParams(BaseModel):
    page: int = Field(default=1, gt=0)
    limit: int = Field(default=50, gt=0, le=MAX_HISTORY_LIMIT)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


## Helpers
def asUTC(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def loadBus(
    session: Session, busId: int, actor, action: Action, lock: bool = False
) -> Bus:
    """
    Load a bus and check that the actor may perform `action` on it.

    An unknown bus is reported as missing only to administrators, every
    other actor gets the same denial as for an out of scope bus.

    Raises:
        exceptions.NoPermission: If the policy denies the access.
        exceptions.InvalidIdentifier: If the bus does not exist.
    """
    query = session.query(Bus).filter(Bus.id == busId)
    if lock:
        query = query.with_for_update()
    bus = query.first()
    if bus is None:
        if not policy.isAdmin(actor):
            raise exceptions.NoPermission()
        raise exceptions.InvalidIdentifier()

    policy.enforce(
        actor, action, policy.BusScope(bus_id=bus.id, operator_id=bus.operator_id)
    )
    return bus


def latestPerBus(session: Session, *conditions):
    """
    Subquery of the newest location id of every bus, among the locations
    matching `conditions`. Ties on timestamp are broken by the higher id.
    """
    return (
        session.query(Location.id.label("id"))
        .filter(*conditions)
        .distinct(Location.bus_id)
        .order_by(Location.bus_id, Location.timestamp.desc(), Location.id.desc())
        .subquery()
    )


def locationJSON(location: Location) -> dict:
    return {
        "id": location.id,
        "bus_id": location.bus_id,
        "location": pointToJSON(location.location),
        "speed": location.speed,
        "heading": location.heading,
        "accuracy": location.accuracy,
        "timestamp": location.timestamp,
        "is_active": location.is_active,
    }


def routeSummary(route: Route) -> dict:
    return {
        "id": route.id,
        "route_number": route.route_number,
        "origin": route.origin,
        "destination": route.destination,
    }


def busSummary(bus: Bus, route: Route, operator: Optional[Operator] = None) -> dict:
    summary = {
        "id": bus.id,
        "bus_code": bus.bus_code,
        "bus_number": bus.bus_number,
        "bus_type": bus.bus_type,
        "capacity": bus.capacity,
        "status": bus.status,
        "route": routeSummary(route),
    }
    if operator is not None:
        summary["operator"] = {"id": operator.id, "name": operator.name}
    return summary


## Ingest
def updateLocation(session: Session, busId: int, ping: Ping, actor) -> Location:
    """
    Record a GPS ping for a bus.

    The new location row and the bus's `current_location`/`last_updated`
    are written in one transaction while the bus row is locked, so pings of
    the same bus are serialized and the cached position always matches a
    stored ping.

    Raises:
        exceptions.InvalidCoordinates: If any ping value is out of range.
        exceptions.NoPermission: If the actor may not update this bus.
        exceptions.InvalidIdentifier: If the bus does not exist (admins only).
    """
    validators.ping(ping.latitude, ping.longitude, ping.speed, ping.heading, ping.accuracy)
    bus = loadBus(session, busId, actor, Action.UPDATE, lock=True)

    timestamp = asUTC(ping.timestamp) if ping.timestamp else datetime.now(timezone.utc)
    point = toPoint(ping.longitude, ping.latitude)
    location = Location(
        bus_id=bus.id,
        location=point,
        speed=ping.speed,
        heading=ping.heading,
        accuracy=ping.accuracy,
        timestamp=timestamp,
    )
    session.add(location)
    bus.current_location = point
    bus.last_updated = timestamp
    session.commit()
    session.refresh(location)
    session.refresh(bus)
    logger.debug(f"Bus {bus.bus_number} moved to {ping.longitude}, {ping.latitude}")
    return location


## Queries
def getLatestLocation(session: Session, busId: int, actor) -> Location:
    loadBus(session, busId, actor, Action.READ)
    location = (
        session.query(Location)
        .filter(Location.bus_id == busId)
        .order_by(Location.timestamp.desc(), Location.id.desc())
        .first()
    )
    if location is None:
        raise exceptions.LocationNotFound()
    return location


def getHistory(
    session: Session, busId: int, params: HistoryParams, actor
) -> Tuple[List[Location], schemas.Pagination]:
    """
    A page of a bus's location history, newest first.

    `start_date` and `end_date` are inclusive. A page past the end yields an
    empty list together with the real totals.
    """
    loadBus(session, busId, actor, Action.READ)
    query = session.query(Location).filter(Location.bus_id == busId)
    if params.start_date is not None:
        query = query.filter(Location.timestamp >= asUTC(params.start_date))
    if params.end_date is not None:
        query = query.filter(Location.timestamp <= asUTC(params.end_date))

    total = query.count()
    locations = (
        query.order_by(Location.timestamp.desc(), Location.id.desc())
        .offset((params.page - 1) * params.limit)
        .limit(params.limit)
        .all()
    )
    return locations, paginate(total, params.page, params.limit, len(locations))


def getHistoryByDate(
    session: Session, busId: int, day: date, actor
) -> List[Location]:
    """All pings of one UTC calendar day, newest first, capped at `MAX_HISTORY_LIMIT`."""
    loadBus(session, busId, actor, Action.READ)
    dayStart = datetime.combine(day, time.min, tzinfo=timezone.utc)
    dayEnd = dayStart + timedelta(days=1)
    return (
        session.query(Location)
        .filter(
            Location.bus_id == busId,
            Location.timestamp >= dayStart,
            Location.timestamp < dayEnd,
        )
        .order_by(Location.timestamp.desc(), Location.id.desc())
        .limit(MAX_HISTORY_LIMIT)
        .all()
    )


def getNearby(
    session: Session,
    latitude: float,
    longitude: float,
    radiusKm: float,
    status: Optional[BusStatus] = BusStatus.ACTIVE,
) -> List[dict]:
    """
    Buses seen within `radiusKm` of a point, nearest first.

    For each bus only its newest ping inside the radius is considered. Each
    row carries the bus, route and operator summary and the distance in km
    rounded to 2 decimals. `status` filters on the bus status, None keeps
    every status.

    Raises:
        exceptions.InvalidCoordinates: If the centre is out of range.
        exceptions.InvalidRadius: Unless 0 < radiusKm <= MAX_NEARBY_RADIUS.
    """
    validators.coordinates(latitude, longitude)
    if not 0 < radiusKm <= MAX_NEARBY_RADIUS:
        raise exceptions.InvalidRadius()

    center = func.ST_GeogFromText(f"SRID={EPSG_4326};POINT({longitude} {latitude})")
    geography = Location.location.cast(Geography)
    latest = latestPerBus(session, func.ST_DWithin(geography, center, radiusKm * 1000))
    distance = func.ST_Distance(geography, center).label("distance")

    query = (
        session.query(Location, Bus, Route, Operator, distance)
        .join(latest, latest.c.id == Location.id)
        .join(Bus, Bus.id == Location.bus_id)
        .join(Route, Route.id == Bus.route_id)
        .outerjoin(Operator, Operator.id == Bus.operator_id)
    )
    if status is not None:
        query = query.filter(Bus.status == status.value)

    nearby = []
    for location, bus, route, operator, meters in query.order_by(distance.asc()).all():
        nearby.append(
            {
                "bus": busSummary(bus, route, operator),
                "location": locationJSON(location),
                "distance": round(meters / 1000, 2),
            }
        )
    return nearby


def getAllActive(session: Session, limit: int, activeOnly: bool = True) -> List[dict]:
    """Newest ping of every bus, most recently seen first, capped at `limit`."""
    latest = latestPerBus(session)
    query = (
        session.query(Location, Bus, Route)
        .join(latest, latest.c.id == Location.id)
        .join(Bus, Bus.id == Location.bus_id)
        .join(Route, Route.id == Bus.route_id)
    )
    if activeOnly:
        query = query.filter(Bus.status == BusStatus.ACTIVE.value)

    rows = query.order_by(Location.timestamp.desc()).limit(limit).all()
    return [
        {"bus": busSummary(bus, route), "location": locationJSON(location)}
        for location, bus, route in rows
    ]


def getRouteLocations(session: Session, routeId: int) -> List[dict]:
    """Newest ping of every active bus on a route, ordered by bus number."""
    route = session.query(Route).filter(Route.id == routeId).first()
    if route is None:
        raise exceptions.InvalidIdentifier()

    latest = latestPerBus(session)
    rows = (
        session.query(Location, Bus)
        .join(latest, latest.c.id == Location.id)
        .join(Bus, Bus.id == Location.bus_id)
        .filter(Bus.route_id == routeId, Bus.status == BusStatus.ACTIVE.value)
        .order_by(Bus.bus_number.asc())
        .all()
    )
    return [
        {"bus": busSummary(bus, route), "location": locationJSON(location)}
        for location, bus in rows
    ]


def getStats(session: Session, busId: int, actor) -> dict:
    """
    Aggregate ping statistics of a bus.

    Returns:
        dict: With two keys:
            - overall: total_records, avg_speed, max_speed, first_record, last_record
            - daily: one `{date, count, avg_speed}` bucket per UTC day with
              pings in the trailing `STATS_WINDOW_DAYS` days, oldest first.
    """
    loadBus(session, busId, actor, Action.READ)
    total, avgSpeed, maxSpeed, firstRecord, lastRecord = (
        session.query(
            func.count(Location.id),
            func.avg(Location.speed),
            func.max(Location.speed),
            func.min(Location.timestamp),
            func.max(Location.timestamp),
        )
        .filter(Location.bus_id == busId)
        .one()
    )

    since = datetime.now(timezone.utc) - timedelta(days=STATS_WINDOW_DAYS)
    day = func.to_char(func.timezone("UTC", Location.timestamp), "YYYY-MM-DD")
    buckets = (
        session.query(
            day.label("date"),
            func.count(Location.id).label("count"),
            func.avg(Location.speed).label("avg_speed"),
        )
        .filter(Location.bus_id == busId, Location.timestamp >= since)
        .group_by("date")
        .order_by("date")
        .all()
    )

    return {
        "overall": {
            "total_records": total,
            "avg_speed": float(avgSpeed) if avgSpeed is not None else None,
            "max_speed": maxSpeed,
            "first_record": firstRecord,
            "last_record": lastRecord,
        },
        "daily": [
            {"date": bucketDate, "count": count, "avg_speed": float(bucketAvg)}
            for bucketDate, count, bucketAvg in buckets
        ],
    }


## Retention
def cleanup(session: Session, retentionDays: int) -> int:
    """Delete pings older than `retentionDays` days and return how many were removed."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=retentionDays)
    result = session.execute(delete(Location).where(Location.timestamp < cutoff))
    session.commit()
    deletedCount = result.rowcount
    logger.info(f"Removed {deletedCount} locations older than {retentionDays} days")
    return deletedCount
