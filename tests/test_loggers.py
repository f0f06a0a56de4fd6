import requests

from bustrack.src import loggers, openobserve
from bustrack.src.db import User
from bustrack.src.schemas import RequestInfo

REQUEST = RequestInfo(method="POST", path="/api/v1/locations/bus/1/update")


def test_event_is_decorated(audit_events):
    user = User(id=3, role="driver", password="hash")
    loggers.logEvent(user, REQUEST, {"bus_id": 1, "password": "hash"})
    assert audit_events == [
        {
            "_method": "POST",
            "_path": "/api/v1/locations/bus/1/update",
            "_user_id": 3,
            "_role": "driver",
            "bus_id": 1,
        }
    ]


def test_delivery_failure_does_not_raise(monkeypatch, caplog):
    def unreachable(eventData):
        raise requests.ConnectionError("openobserve is down")

    monkeypatch.setattr(openobserve, "logEvent", unreachable)
    loggers.logEvent(None, REQUEST, {"bus_id": 1})
    assert "not delivered" in caplog.text
