from types import SimpleNamespace

import pytest

from bustrack.src import exceptions, policy
from bustrack.src.enums import Action


def user(role, **fields):
    values = {"id": 7, "role": role, "operator_id": None, "assigned_bus_id": None}
    values.update(fields)
    return SimpleNamespace(**values)


ADMIN = policy.AdminActor(user_id=1)
OPERATOR = policy.OperatorActor(user_id=2, operator_id=10)
DRIVER = policy.DriverActor(user_id=3, operator_id=10, assigned_bus_id=100)
CONSUMER = policy.ConsumerActor(user_id=4)
BOUND_CONSUMER = policy.ConsumerActor(user_id=5, assigned_bus_id=100)

OWN_BUS = policy.BusScope(bus_id=100, operator_id=10)
OTHER_BUS = policy.BusScope(bus_id=200, operator_id=20)


class TestActorFromUser:
    def test_anonymous(self):
        assert policy.actorFromUser(None) is None

    def test_admin(self):
        actor = policy.actorFromUser(user("admin", operator_id=3))
        assert actor == policy.AdminActor(user_id=7)

    def test_operator_keeps_operator_only(self):
        actor = policy.actorFromUser(user("operator", operator_id=3, assigned_bus_id=9))
        assert actor == policy.OperatorActor(user_id=7, operator_id=3)

    def test_operator_without_operator_is_a_consumer(self):
        actor = policy.actorFromUser(user("operator"))
        assert isinstance(actor, policy.ConsumerActor)
        assert actor.assigned_bus_id is None

    def test_driver(self):
        actor = policy.actorFromUser(user("driver", operator_id=3, assigned_bus_id=9))
        assert actor == policy.DriverActor(user_id=7, operator_id=3, assigned_bus_id=9)

    def test_user_with_assigned_bus(self):
        actor = policy.actorFromUser(user("user", assigned_bus_id=9))
        assert actor == policy.ConsumerActor(user_id=7, assigned_bus_id=9)


class TestEvaluate:
    @pytest.mark.parametrize("action", list(Action))
    def test_admin_is_always_allowed(self, action):
        assert policy.evaluate(ADMIN, action, OTHER_BUS)

    def test_anonymous_may_only_list(self):
        assert policy.evaluate(None, Action.LIST, OTHER_BUS)
        assert not policy.evaluate(None, Action.READ, OTHER_BUS)
        assert not policy.evaluate(None, Action.UPDATE, OTHER_BUS)

    @pytest.mark.parametrize("actor", [OPERATOR, DRIVER, CONSUMER, BOUND_CONSUMER])
    def test_manage_is_reserved_for_admins(self, actor):
        assert not policy.evaluate(actor, Action.MANAGE, OWN_BUS)

    @pytest.mark.parametrize("actor", [OPERATOR, DRIVER, CONSUMER, BOUND_CONSUMER])
    def test_authenticated_actors_may_list(self, actor):
        assert policy.evaluate(actor, Action.LIST, OTHER_BUS)

    def test_driver_is_limited_to_assigned_bus(self):
        assert policy.evaluate(DRIVER, Action.UPDATE, OWN_BUS)
        assert policy.evaluate(DRIVER, Action.READ, OWN_BUS)
        assert not policy.evaluate(DRIVER, Action.UPDATE, OTHER_BUS)
        # Same operator, different bus
        sibling = policy.BusScope(bus_id=101, operator_id=10)
        assert not policy.evaluate(DRIVER, Action.READ, sibling)

    def test_driver_without_assignment_is_denied(self):
        driver = policy.DriverActor(user_id=3, operator_id=10)
        assert not policy.evaluate(driver, Action.READ, policy.BusScope(bus_id=None))

    def test_bound_consumer_is_limited_to_assigned_bus(self):
        assert policy.evaluate(BOUND_CONSUMER, Action.READ, OWN_BUS)
        assert not policy.evaluate(BOUND_CONSUMER, Action.READ, OTHER_BUS)

    def test_operator_is_limited_to_own_fleet(self):
        assert policy.evaluate(OPERATOR, Action.UPDATE, OWN_BUS)
        assert not policy.evaluate(OPERATOR, Action.UPDATE, OTHER_BUS)
        assert not policy.evaluate(OPERATOR, Action.READ, policy.BusScope(bus_id=5))

    def test_consumer_may_only_read(self):
        assert policy.evaluate(CONSUMER, Action.READ, OTHER_BUS)
        assert not policy.evaluate(CONSUMER, Action.UPDATE, OTHER_BUS)

    def test_enforce_raises_no_permission(self):
        with pytest.raises(exceptions.NoPermission):
            policy.enforce(DRIVER, Action.UPDATE, OTHER_BUS)
        assert policy.enforce(DRIVER, Action.UPDATE, OWN_BUS)


class TestListingScope:
    def test_unrestricted(self):
        assert policy.listingScope(None) is None
        assert policy.listingScope(ADMIN) is None
        assert policy.listingScope(CONSUMER) is None

    def test_operator_sees_own_fleet(self):
        assert policy.listingScope(OPERATOR) == policy.BusScope(operator_id=10)

    def test_bus_bound_actors_see_assigned_bus(self):
        assert policy.listingScope(DRIVER) == policy.BusScope(bus_id=100)
        assert policy.listingScope(BOUND_CONSUMER) == policy.BusScope(bus_id=100)


class TestOperatorAccess:
    def test_admin_and_own_operator(self):
        assert policy.evaluateOperator(ADMIN, 20)
        assert policy.evaluateOperator(OPERATOR, 10)

    def test_others_are_denied(self):
        assert not policy.evaluateOperator(OPERATOR, 20)
        assert not policy.evaluateOperator(DRIVER, 10)
        assert not policy.evaluateOperator(None, 10)
        with pytest.raises(exceptions.NoPermission):
            policy.enforceOperator(DRIVER, 10)
