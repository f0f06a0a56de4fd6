"""
Fleet and route directory behaviour against a PostGIS store.
"""

from datetime import datetime, timedelta, timezone

from conftest import authHeader, makeBus, makeOperator, makeRoute, makeUser
from bustrack.src.db import Bus, Location, Operator, Route, User
from bustrack.src.enums import BusStatus, UserRole

ROUTE_87 = {
    "route_number": "87",
    "origin": "Colombo",
    "destination": "Kandy",
    "distance": 116,
    "estimated_duration": 180,
    "waypoints": [
        {
            "name": "Kadawatha",
            "location": {"type": "Point", "coordinates": [79.9535, 7.0012]},
            "estimated_time": 30,
        },
        {
            "name": "Kegalle",
            "location": {"type": "Point", "coordinates": [80.3464, 7.2513]},
            "estimated_time": 110,
        },
    ],
}


def createRoute(client, admin, **fields):
    body = dict(ROUTE_87, **fields)
    return client.post("/api/v1/routes", json=body, headers=authHeader(admin))


def createBus(client, admin, route_id, bus_number="NB-0001", **fields):
    body = {
        "bus_number": bus_number,
        "route_id": route_id,
        "capacity": 45,
        "bus_type": "Luxury",
    }
    body.update(fields)
    return client.post("/api/v1/buses", json=body, headers=authHeader(admin))


def test_route_87_scenario(client, db, admin):
    route = createRoute(client, admin)
    assert route.status_code == 201
    routeData = route.json()["data"]
    assert [x["name"] for x in routeData["waypoints"]] == ["Kadawatha", "Kegalle"]

    bus = createBus(client, admin, routeData["id"])
    assert bus.status_code == 201
    busData = bus.json()["data"]
    assert busData["bus_type"] == "Luxury"
    assert busData["status"] == "active"
    assert busData["bus_code"].startswith("BUS")

    update = client.post(
        f"/api/v1/locations/bus/{busData['id']}/update",
        json={"longitude": 79.9935, "latitude": 7.0907, "speed": 45, "heading": 180},
        headers=authHeader(admin),
    )
    assert update.status_code == 201
    assert update.json()["data"]["location"]["coordinates"] == [79.9935, 7.0907]

    latest = client.get(
        f"/api/v1/locations/bus/{busData['id']}/latest", headers=authHeader(admin)
    )
    assert latest.json()["data"]["location"]["coordinates"] == [79.9935, 7.0907]
    assert latest.json()["data"]["speed"] == 45


def test_only_admins_create_buses(client, db):
    route = makeRoute(db)
    driver = makeUser(db, "driver", UserRole.DRIVER)
    response = createBus(client, driver, route.id)
    assert response.status_code == 403
    assert db.query(Bus).count() == 0


def test_duplicate_bus_number(client, db, admin):
    route = makeRoute(db)
    makeBus(db, route, "NB-0001")
    response = createBus(client, admin, route.id, "NB-0001")
    assert response.status_code == 409
    assert response.headers["X-Error"] == "DuplicateValue"


def test_bus_needs_active_route(client, db, admin):
    inactive = makeRoute(db, "99", is_active=False)
    assert createBus(client, admin, 9999).status_code == 400
    response = createBus(client, admin, inactive.id)
    assert response.status_code == 400
    assert response.headers["X-Error"] == "InactiveResource"


def test_bus_capacity_bounds(client, db, admin):
    route = makeRoute(db)
    assert createBus(client, admin, route.id, capacity=0).status_code == 400
    assert createBus(client, admin, route.id, capacity=101).status_code == 400


def test_operator_bus_count_follows_fleet(client, db, admin):
    route = makeRoute(db)
    operator = makeOperator(db)
    bus = createBus(client, admin, route.id, operator_id=operator.id).json()["data"]
    db.expire_all()
    assert db.query(Operator).one().total_buses == 1

    client.delete(f"/api/v1/buses/{bus['id']}", headers=authHeader(admin))
    db.expire_all()
    assert db.query(Operator).one().total_buses == 0


def test_deleting_bus_removes_history_and_assignments(client, db, admin):
    route = makeRoute(db)
    bus = makeBus(db, route)
    driver = makeUser(db, "driver", UserRole.DRIVER, assigned_bus_id=bus.id)
    client.post(
        f"/api/v1/locations/bus/{bus.id}/update",
        json={"latitude": 7, "longitude": 80},
        headers=authHeader(driver),
    )

    response = client.delete(f"/api/v1/buses/{bus.id}", headers=authHeader(admin))
    assert response.status_code == 200
    assert db.query(Location).count() == 0
    db.expire_all()
    assert db.query(User).filter(User.id == driver.id).one().assigned_bus_id is None


def test_route_deletion_conflict(client, db, admin):
    route = makeRoute(db)
    makeBus(db, route)
    response = client.delete(f"/api/v1/routes/{route.id}", headers=authHeader(admin))
    assert response.status_code == 409
    assert response.headers["X-Error"] == "DataInUse"
    assert db.query(Route).filter(Route.id == route.id).count() == 1

    missing = client.delete("/api/v1/routes/9999", headers=authHeader(admin))
    assert missing.status_code == 404


def test_route_validation(client, db, admin):
    assert createRoute(client, admin).status_code == 201
    assert createRoute(client, admin).status_code == 409
    response = createRoute(
        client,
        admin,
        route_number="88",
        waypoints=[
            {"name": "Nowhere", "location": {"type": "Point", "coordinates": [190, 95]}}
        ],
    )
    assert response.status_code == 400
    fields = [x["field"] for x in response.json()["errors"]]
    assert fields == ["waypoints.0.latitude", "waypoints.0.longitude"]


def test_route_update_replaces_waypoints(client, db, admin):
    routeId = createRoute(client, admin).json()["data"]["id"]
    response = client.put(
        f"/api/v1/routes/{routeId}",
        json={
            "waypoints": [
                {"name": "Warakapola", "location": {"type": "Point", "coordinates": [80.19, 7.22]}}
            ]
        },
        headers=authHeader(admin),
    )
    assert response.status_code == 200
    waypoints = response.json()["data"]["waypoints"]
    assert [(x["position"], x["name"]) for x in waypoints] == [(0, "Warakapola")]


def test_route_search_and_toggle(client, db, admin):
    makeRoute(db, "1", origin="Colombo", destination="Galle", distance=119)
    makeRoute(db, "2", origin="Colombo", destination="Matara", distance=160)
    closed = makeRoute(db, "3", origin="Colombo", destination="Galle", distance=100)
    client.patch(f"/api/v1/routes/{closed.id}/status", headers=authHeader(admin))

    response = client.get(
        "/api/v1/routes/search", params={"origin": "colombo", "max_distance": 150}
    )
    assert [x["route_number"] for x in response.json()["data"]] == ["1"]


def test_listing_is_scoped(client, db):
    route = makeRoute(db)
    operator = makeOperator(db, "Southern Express")
    rival = makeOperator(db, "Northern Line")
    own = makeBus(db, route, "NB-0001", operator_id=operator.id)
    makeBus(db, route, "NB-0002", operator_id=rival.id)
    account = makeUser(db, "southern", UserRole.OPERATOR, operator_id=operator.id)
    driver = makeUser(db, "driver", UserRole.DRIVER, assigned_bus_id=own.id)

    public = client.get("/api/v1/buses").json()["data"]
    assert public["pagination"]["total"] == 2

    for user in (account, driver):
        scoped = client.get("/api/v1/buses", headers=authHeader(user)).json()["data"]
        assert [x["bus_number"] for x in scoped["buses"]] == ["NB-0001"]


def test_operator_toggle_cascades(client, db, admin):
    route = makeRoute(db)
    operator = makeOperator(db)
    makeBus(db, route, "NB-0001", operator_id=operator.id)
    makeBus(db, route, "NB-0002", operator_id=operator.id, status="maintenance")
    makeUser(db, "southern", UserRole.OPERATOR, operator_id=operator.id)
    makeUser(db, "driver", UserRole.DRIVER, operator_id=operator.id)

    response = client.patch(
        f"/api/v1/operators/{operator.id}/status", headers=authHeader(admin)
    )
    data = response.json()["data"]
    assert data["operator"]["is_active"] is False
    assert data["deactivated_buses"] == 2
    assert data["deactivated_users"] == 2

    db.expire_all()
    statuses = {bus.status for bus in db.query(Bus).all()}
    assert statuses == {BusStatus.INACTIVE.value}
    assert not any(
        user.is_active for user in db.query(User).filter(User.operator_id == operator.id)
    )

    # Re-activation does not restore buses or users
    client.patch(f"/api/v1/operators/{operator.id}/status", headers=authHeader(admin))
    db.expire_all()
    assert {bus.status for bus in db.query(Bus).all()} == {BusStatus.INACTIVE.value}


def test_operator_license_checks(client, db, admin):
    now = datetime.now(timezone.utc)
    body = {
        "name": "Hill Country Travels",
        "registration_number": "REG-HCT",
        "license_number": "LIC-HCT",
        "license_issue_date": (now - timedelta(days=10)).isoformat(),
        "license_expiry_date": (now - timedelta(days=1)).isoformat(),
        "phone_number": "+94812223344",
    }
    expired = client.post("/api/v1/operators", json=body, headers=authHeader(admin))
    assert expired.status_code == 400
    assert expired.headers["X-Error"] == "ExpiredLicense"

    body["license_expiry_date"] = (now + timedelta(days=10)).isoformat()
    created = client.post("/api/v1/operators", json=body, headers=authHeader(admin))
    assert created.status_code == 201
    operatorId = created.json()["data"]["id"]

    license = client.get(
        f"/api/v1/operators/{operatorId}/license", headers=authHeader(admin)
    ).json()["data"]
    assert license["is_expired"] is False
    assert license["days_until_expiry"] == 10

    expiring = client.get(
        "/api/v1/operators/expiring-licenses", headers=authHeader(admin)
    ).json()["data"]
    assert [x["id"] for x in expiring] == [operatorId]


def test_operator_delete_conflict(client, db, admin):
    operator = makeOperator(db)
    makeUser(db, "southern", UserRole.OPERATOR, operator_id=operator.id)
    response = client.delete(
        f"/api/v1/operators/{operator.id}", headers=authHeader(admin)
    )
    assert response.status_code == 409


def test_operator_reads_only_own_record(client, db):
    operator = makeOperator(db, "Southern Express")
    rival = makeOperator(db, "Northern Line")
    account = makeUser(db, "southern", UserRole.OPERATOR, operator_id=operator.id)

    own = client.get(f"/api/v1/operators/{operator.id}", headers=authHeader(account))
    assert own.status_code == 200
    assert own.json()["data"]["license_status"]["is_valid"] is True
    other = client.get(f"/api/v1/operators/{rival.id}", headers=authHeader(account))
    assert other.status_code == 403


def test_operator_lists_own_fleet(client, db):
    route = makeRoute(db)
    operator = makeOperator(db, "Southern Express")
    rival = makeOperator(db, "Northern Line")
    makeBus(db, route, "NB-0001", operator_id=operator.id)
    makeBus(db, route, "NB-0002", operator_id=operator.id, status="maintenance")
    makeBus(db, route, "NB-0003", operator_id=rival.id)
    account = makeUser(db, "southern", UserRole.OPERATOR, operator_id=operator.id)

    fleet = client.get(
        f"/api/v1/operators/{operator.id}/buses",
        params={"status": "active"},
        headers=authHeader(account),
    )
    assert fleet.status_code == 200
    data = fleet.json()["data"]
    assert [x["bus_number"] for x in data["buses"]] == ["NB-0001"]
    assert data["pagination"]["total"] == 1

    other = client.get(
        f"/api/v1/operators/{rival.id}/buses", headers=authHeader(account)
    )
    assert other.status_code == 403
