"""
Envelope and error handling checks that never reach the database.
"""


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "OK"
    assert payload["version"] == "1.0.0"
    assert payload["uptime"] >= 0
    assert "timestamp" in payload


def test_missing_token(client):
    response = client.get("/api/v1/auth/me")
    assert response.status_code == 401
    assert response.headers["X-Error"] == "InvalidToken"
    assert response.json() == {"success": False, "message": "Invalid or expired token"}


def test_malformed_token(client):
    response = client.get(
        "/api/v1/buses/stats", headers={"Authorization": "Bearer not-a-jwt"}
    )
    assert response.status_code == 401
    assert response.json()["success"] is False


def test_request_validation_lists_every_field(client):
    response = client.post(
        "/api/v1/auth/register",
        json={"username": "a", "email_id": "not-an-email", "password": "weak"},
    )
    assert response.status_code == 400
    assert response.headers["X-Error"] == "RequestValidationError"
    payload = response.json()
    assert payload["success"] is False
    assert payload["message"] == "Validation failed"
    fields = {error["field"] for error in payload["errors"]}
    assert {"username", "email_id", "password", "first_name", "phone_number"} <= fields


def test_nearby_rejects_out_of_range_coordinates(client):
    response = client.get(
        "/api/v1/locations/nearby", params={"latitude": 95, "longitude": 200}
    )
    assert response.status_code == 400
    assert response.headers["X-Error"] == "InvalidCoordinates"
    fields = [error["field"] for error in response.json()["errors"]]
    assert fields == ["latitude", "longitude"]


def test_nearby_rejects_invalid_radius(client):
    for radius in (0, -1, 150):
        response = client.get(
            "/api/v1/locations/nearby",
            params={"latitude": 6.9, "longitude": 79.8, "radius": radius},
        )
        assert response.status_code == 400
        assert response.headers["X-Error"] == "InvalidRadius"


def test_history_rejects_bad_date(client):
    response = client.get(
        "/api/v1/locations/bus/1/date/2024-13-45",
        headers={"Authorization": "Bearer x"},
    )
    assert response.status_code == 400
    assert response.json()["errors"][0]["field"] == "date"


def test_unknown_path(client):
    response = client.get("/api/v1/nowhere")
    assert response.status_code == 404
    assert response.json()["success"] is False


def test_operator_fleet_route_is_registered(client):
    schema = client.get("/api/v1/openapi.json").json()
    operation = schema["paths"]["/operators/{operator_id}/buses"]["get"]
    locations = {(x["name"], x["in"]) for x in operation["parameters"]}
    assert ("operator_id", "path") in locations
    assert ("operator_id", "query") not in locations
    assert ("status", "query") in locations
