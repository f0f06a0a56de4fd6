import random
from datetime import datetime, timedelta, timezone

from bustrack.src import exceptions
from bustrack.src.enums import BusStatus
from bustrack.src.functions import (
    daysUntil,
    enumStr,
    generateBusCode,
    makeExceptionResponses,
    pageCount,
    paginate,
    pointToJSON,
    toPoint,
)


class TestGenerateBusCode:
    def test_code_format(self):
        code = generateBusCode(lambda code: False, random.Random(1))
        assert code.startswith("BUS")
        assert len(code) == 9
        assert code[3:].isdigit()

    def test_retries_on_collision(self):
        taken = []

        def isTaken(code):
            taken.append(code)
            return len(taken) < 3

        code = generateBusCode(isTaken, random.Random(7))
        assert len(taken) == 3
        assert code == taken[-1]

    def test_falls_back_to_timestamp(self):
        attempts = []

        def isTaken(code):
            attempts.append(code)
            return True

        code = generateBusCode(isTaken, random.Random(3), clock=lambda: 1700000000.123)
        assert len(attempts) == 10
        assert code == "BUS1700000000123"


class TestPagination:
    def test_page_count(self):
        assert pageCount(0, 10) == 0
        assert pageCount(10, 10) == 1
        assert pageCount(11, 10) == 2

    def test_out_of_range_page(self):
        pagination = paginate(total=12, page=5, limit=5, count=0)
        assert pagination.total_pages == 3
        assert pagination.current_page == 5
        assert pagination.count == 0


class TestDaysUntil:
    def test_rounds_up(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert daysUntil(now + timedelta(days=2, hours=1), now) == 3
        assert daysUntil(now + timedelta(days=2), now) == 2

    def test_past_is_not_positive(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert daysUntil(now - timedelta(days=2), now) == -2

    def test_naive_moment_is_utc(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert daysUntil(datetime(2024, 1, 11), now) == 10


def test_point_conversion():
    point = pointToJSON(toPoint(79.8612, 6.9271))
    assert point == {"type": "Point", "coordinates": [79.8612, 6.9271]}
    assert pointToJSON(None) is None


def test_enum_description():
    assert enumStr(BusStatus) == (
        "ACTIVE: active, INACTIVE: inactive, MAINTENANCE: maintenance"
    )


def test_exception_responses_are_grouped_by_status():
    responses = makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.InactiveAccount, exceptions.NoPermission]
    )
    assert set(responses) == {401, 403}
    examples = responses[401]["content"]["application/json"]["examples"]
    assert set(examples) == {"InvalidToken", "InactiveAccount"}
    assert examples["InvalidToken"]["value"]["success"] is False
