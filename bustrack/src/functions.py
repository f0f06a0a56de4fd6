import math, random, time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Type

from fastapi.encoders import jsonable_encoder
from geoalchemy2.elements import WKTElement
from geoalchemy2.shape import to_shape

from bustrack.src import schemas
from bustrack.src.constants import (
    BUS_CODE_DIGITS,
    BUS_CODE_MAX_ATTEMPTS,
    BUS_CODE_PREFIX,
    EPSG_4326,
)
from bustrack.src.exceptions import APIException


def makeExceptionResponses(exceptions: List[Type[APIException]]) -> Dict[int, dict]:
    """
    Generate OpenAPI response documentation from a list of APIException classes.

    Exceptions sharing a status code are grouped under that code, each one
    contributing a named example built from its `X-Error` header and detail.

    Args:
        exceptions (List[Type[APIException]]): Exception classes an endpoint may raise.

    Returns:
        Dict[int, dict]: A dictionary of OpenAPI response specs grouped by status code.
    """
    responses = {}

    for exception in exceptions:
        status_code = exception.status_code
        example_key = exception.__name__
        example_value = {
            "summary": str(exception.headers),
            "value": {"success": False, "message": exception.detail},
        }

        if status_code not in responses:
            responses[status_code] = {
                "model": schemas.ErrorResponse,
                "content": {
                    "application/json": {"examples": {example_key: example_value}}
                },
            }
        else:
            responses[status_code]["content"]["application/json"]["examples"][
                example_key
            ] = example_value

    return responses


def enumStr(enumClass) -> str:
    """
    Convert an Enum class into a comma-separated string of its members.

    Example:
        >>> enumStr(BusStatus)
        'ACTIVE: active, INACTIVE: inactive, MAINTENANCE: maintenance'
    """
    return ", ".join(f"{x.name}: {x.value}" for x in enumClass)


def updateIfChanged(targetObj, sourceObj, fields: List[str]) -> None:
    """
    Update attributes on a target object from a source object
    only if the values differ and the new value is not None.

    Designed for use with SQLAlchemy models, where `fields` are typically
    provided as `Model.field.key`.

    Example:
        >>> updateIfChanged(bus, fParam, [Bus.capacity.key, Bus.status.key])
        # bus will be updated where values differ; unchanged fields are skipped silently
    """
    for field in fields:
        new_value = getattr(sourceObj, field, None)
        if new_value is not None:
            old_value = getattr(targetObj, field)
            if old_value != new_value:
                setattr(targetObj, field, new_value)


# ---------------------------------------------------------------------------
# Geometry helpers
# ---------------------------------------------------------------------------
def toPoint(longitude: float, latitude: float) -> WKTElement:
    """Build a storable SRID 4326 point from a longitude/latitude pair."""
    return WKTElement(f"POINT({longitude} {latitude})", srid=EPSG_4326)


def pointToJSON(element) -> Optional[dict]:
    """
    Convert a stored point into the `{"type": "Point", "coordinates": [lon, lat]}` form.

    Accepts both the WKB values loaded from the database and WKT values
    that were assigned in the current session. Returns None for None.
    """
    if element is None:
        return None
    point = to_shape(element)
    return {"type": "Point", "coordinates": [point.x, point.y]}


def toJSON(instance, geometryFields: List[str] = ()) -> dict:
    """
    Encode an ORM instance with `jsonable_encoder`, rendering its geometry
    columns as GeoJSON-like points instead of raw WKB.
    """
    data = jsonable_encoder(instance, exclude=set(geometryFields))
    for field in geometryFields:
        data[field] = pointToJSON(getattr(instance, field))
    return data


# ---------------------------------------------------------------------------
# Pagination helpers
# ---------------------------------------------------------------------------
def pageCount(total: int, limit: int) -> int:
    """Number of pages needed to show `total` rows, `limit` per page."""
    return math.ceil(total / limit) if limit > 0 else 0


def paginate(total: int, page: int, limit: int, count: int) -> schemas.Pagination:
    return schemas.Pagination(
        total=total,
        total_pages=pageCount(total, limit),
        current_page=page,
        count=count,
    )


# ---------------------------------------------------------------------------
# Date helpers
# ---------------------------------------------------------------------------
def daysUntil(moment: datetime, now: Optional[datetime] = None) -> int:
    """
    Whole days from `now` until `moment`, rounded up.

    Negative once the moment has passed. Naive datetimes are treated as UTC.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return math.ceil((moment - now).total_seconds() / 86400)


# ---------------------------------------------------------------------------
# Bus code generation
# ---------------------------------------------------------------------------
def generateBusCode(
    isTaken: Callable[[str], bool],
    randomSource: random.Random = random,
    clock: Callable[[], float] = time.time,
    prefix: str = BUS_CODE_PREFIX,
    digits: int = BUS_CODE_DIGITS,
    maxAttempts: int = BUS_CODE_MAX_ATTEMPTS,
) -> str:
    """
    Generate a human readable bus code such as `BUS482913`.

    Up to `maxAttempts` random codes are drawn and checked with `isTaken`.
    If every attempt collides, the code falls back to the prefix followed by
    the current epoch time in milliseconds.

    Args:
        isTaken (Callable[[str], bool]): Returns True when a code is already stored.
        randomSource (random.Random): Source of the random suffix.
        clock (Callable[[], float]): Returns the current epoch time in seconds.
        prefix (str): Alphabetic prefix of the code.
        digits (int): Length of the random numeric suffix.
        maxAttempts (int): Number of random codes tried before falling back.

    Returns:
        str: A code not reported as taken, or the timestamp-derived fallback.
    """
    upperBound = 10**digits - 1
    for _ in range(maxAttempts):
        code = f"{prefix}{randomSource.randint(0, upperBound):0{digits}d}"
        if not isTaken(code):
            return code
    return f"{prefix}{int(clock() * 1000)}"
