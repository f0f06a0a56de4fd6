from datetime import datetime, timedelta, timezone

import pytest

from bustrack.src import exceptions, validators
from bustrack.src.enums import UserRole


class TestPing:
    def test_valid_ping(self):
        assert validators.ping(6.9271, 79.8612, 45.5, 180, 5)

    def test_bounds_are_inclusive(self):
        assert validators.ping(-90, -180, 0, 0)
        assert validators.ping(90, 180, 300, 360)

    def test_every_violation_is_reported(self):
        with pytest.raises(exceptions.InvalidCoordinates) as error:
            validators.ping(91, 79.8, 301, -1, -2)
        fields = [x["field"] for x in error.value.errors]
        assert fields == ["latitude", "speed", "heading", "accuracy"]
        assert error.value.status_code == 400

    def test_longitude_out_of_range(self):
        with pytest.raises(exceptions.InvalidCoordinates) as error:
            validators.coordinates(6.9, 180.5)
        assert [x["field"] for x in error.value.errors] == ["longitude"]


class TestPasswordStrength:
    def test_accepts_mixed_password(self):
        assert validators.passwordStrength("Password1") == "Password1"

    @pytest.mark.parametrize("password", ["password1", "PASSWORD1", "Password"])
    def test_rejects_weak_password(self, password):
        with pytest.raises(ValueError):
            validators.passwordStrength(password)


class TestRoleFields:
    def test_operator_requires_operator_id(self):
        with pytest.raises(exceptions.MissingParameter):
            validators.roleFields(UserRole.OPERATOR, None, None)
        assert validators.roleFields(UserRole.OPERATOR, 1, None)

    def test_operator_id_only_for_operator_and_driver(self):
        with pytest.raises(exceptions.UnexpectedParameter):
            validators.roleFields(UserRole.USER, 1, None)
        with pytest.raises(exceptions.UnexpectedParameter):
            validators.roleFields(UserRole.ADMIN, 1, None)
        assert validators.roleFields(UserRole.DRIVER, 1, 2)

    def test_assigned_bus_only_for_driver_and_user(self):
        with pytest.raises(exceptions.UnexpectedParameter):
            validators.roleFields(UserRole.OPERATOR, 1, 2)
        assert validators.roleFields(UserRole.USER, None, 2)


class TestLicensePeriod:
    def test_valid_period(self):
        now = datetime.now(timezone.utc)
        assert validators.licensePeriod(now - timedelta(days=1), now + timedelta(days=1))

    def test_expiry_must_follow_issue(self):
        now = datetime.now(timezone.utc)
        with pytest.raises(exceptions.InvalidLicensePeriod):
            validators.licensePeriod(now + timedelta(days=2), now + timedelta(days=1))

    def test_expired_license(self):
        now = datetime.now(timezone.utc)
        with pytest.raises(exceptions.ExpiredLicense):
            validators.licensePeriod(now - timedelta(days=10), now - timedelta(days=1))
        assert validators.licensePeriod(
            now - timedelta(days=10), now - timedelta(days=1), requireFuture=False
        )

    def test_naive_dates_are_utc(self):
        assert validators.licensePeriod(datetime(2020, 1, 1), datetime(2999, 1, 1))
