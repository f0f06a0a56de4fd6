"""
Shared fixtures.

Tests that need the store use the `db` fixture. It talks to the PostGIS
database configured through the usual `PSQL_DB_*` environment variables,
creates the schema on first use, empties every table before each test and
skips the test when the database is unreachable.
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from bustrack.main import app
from bustrack.src import argon2, jwt, openobserve
from bustrack.src.db import (
    Bus,
    Operator,
    ORMbase,
    Route,
    User,
    engine,
    sessionMaker,
)
from bustrack.src.enums import BusStatus, BusType, UserRole
from bustrack.src.functions import toPoint

PASSWORD = "Password1"
_schemaReady = None


@pytest.fixture(autouse=True)
def audit_events(monkeypatch):
    """Capture audit events instead of shipping them to OpenObserve."""
    events = []
    monkeypatch.setattr(openobserve, "logEvent", events.append)
    return events


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db():
    global _schemaReady
    if _schemaReady is None:
        try:
            with engine.begin() as connection:
                connection.execute(text("CREATE EXTENSION IF NOT EXISTS postgis"))
            ORMbase.metadata.create_all(engine)
            _schemaReady = True
        except OperationalError:
            _schemaReady = False
    if not _schemaReady:
        pytest.skip("PostGIS database is not reachable")

    tables = ", ".join(table.name for table in ORMbase.metadata.sorted_tables)
    with engine.begin() as connection:
        connection.execute(text(f"TRUNCATE {tables} RESTART IDENTITY CASCADE"))

    session = sessionMaker()
    yield session
    session.close()


## Factories
def makeUser(session, username, role=UserRole.USER, **fields):
    user = User(
        username=username,
        email_id=f"{username}@example.lk",
        password=argon2.makePassword(PASSWORD),
        first_name=username.capitalize(),
        last_name="Tester",
        phone_number="+94771234567",
        role=role.value,
        **fields,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def makeOperator(session, name="Southern Express", **fields):
    now = datetime.now(timezone.utc)
    values = {
        "registration_number": f"REG-{name[:3].upper()}",
        "license_number": f"LIC-{name[:3].upper()}",
        "license_issue_date": now - timedelta(days=365),
        "license_expiry_date": now + timedelta(days=365),
        "phone_number": "+94112223344",
    }
    values.update(fields)
    operator = Operator(name=name, **values)
    session.add(operator)
    session.commit()
    session.refresh(operator)
    return operator


def makeRoute(session, route_number="87", **fields):
    values = {
        "origin": "Colombo",
        "destination": "Jaffna",
        "distance": 396.0,
        "estimated_duration": 480,
    }
    values.update(fields)
    route = Route(route_number=route_number, **values)
    session.add(route)
    session.commit()
    session.refresh(route)
    return route


def makeBus(session, route, bus_number="NB-0001", **fields):
    values = {
        "bus_code": f"BUS{bus_number[-4:]}00",
        "capacity": 54,
        "bus_type": BusType.LUXURY.value,
        "status": BusStatus.ACTIVE.value,
        "current_location": toPoint(79.8612, 6.9271),
    }
    values.update(fields)
    bus = Bus(bus_number=bus_number, route_id=route.id, **values)
    session.add(bus)
    session.commit()
    session.refresh(bus)
    return bus


def authHeader(user) -> dict:
    token = jwt.makeAccessToken(user.id, user.username, user.role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin(db):
    return makeUser(db, "admin", UserRole.ADMIN)
