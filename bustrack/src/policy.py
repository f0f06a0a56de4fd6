"""
Role based access decisions.

Every function here is pure: it takes an actor, an action and a target and
answers with a decision, without touching the database. Endpoint code builds
the actor from the live user record (`actorFromUser`) and the target from
the bus being accessed (`BusScope`), then calls `enforce`.

Precedence of the rules applied by `evaluate`:
    1. Admins are always allowed.
    2. Anonymous callers may only LIST.
    3. MANAGE is reserved for admins.
    4. Any authenticated actor may LIST, listings are scope filtered by the
       caller using `listingScope`.
    5. Drivers, and users bound to a bus, may act only on their assigned bus.
    6. Operators may act only on buses of their own operator.
    7. Other users (public consumers) may only READ.
"""

from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field

from bustrack.src import exceptions
from bustrack.src.enums import Action, UserRole


## Actors
class AdminActor(BaseModel):
    kind: Literal["admin"] = "admin"
    user_id: int


class OperatorActor(BaseModel):
    kind: Literal["operator"] = "operator"
    user_id: int
    operator_id: int


class DriverActor(BaseModel):
    kind: Literal["driver"] = "driver"
    user_id: int
    operator_id: Optional[int] = None
    assigned_bus_id: Optional[int] = None


class ConsumerActor(BaseModel):
    kind: Literal["user"] = "user"
    user_id: int
    assigned_bus_id: Optional[int] = None


Actor = Annotated[
    Union[AdminActor, OperatorActor, DriverActor, ConsumerActor],
    Field(discriminator="kind"),
]


## Targets
class BusScope(BaseModel):
    bus_id: Optional[int] = None
    operator_id: Optional[int] = None


def actorFromUser(user) -> Optional[Actor]:
    """
    Build the actor variant matching a user's role.

    Only the fields meaningful for the role are carried over. Returns None
    for anonymous requests. An operator account without an operator is
    demoted to a plain consumer so it can never match an unowned bus.
    """
    if user is None:
        return None
    role = UserRole(user.role)
    if role == UserRole.ADMIN:
        return AdminActor(user_id=user.id)
    if role == UserRole.OPERATOR and user.operator_id is not None:
        return OperatorActor(user_id=user.id, operator_id=user.operator_id)
    if role == UserRole.DRIVER:
        return DriverActor(
            user_id=user.id,
            operator_id=user.operator_id,
            assigned_bus_id=user.assigned_bus_id,
        )
    assigned_bus_id = user.assigned_bus_id if role == UserRole.USER else None
    return ConsumerActor(user_id=user.id, assigned_bus_id=assigned_bus_id)


def isBusBound(actor) -> bool:
    """True for actors whose scope is a single assigned bus."""
    if isinstance(actor, DriverActor):
        return True
    return isinstance(actor, ConsumerActor) and actor.assigned_bus_id is not None


def evaluate(actor: Optional[Actor], action: Action, target: BusScope) -> bool:
    if isinstance(actor, AdminActor):
        return True
    if actor is None:
        return action == Action.LIST
    if action == Action.MANAGE:
        return False
    if action == Action.LIST:
        return True
    if isBusBound(actor):
        return actor.assigned_bus_id is not None and target.bus_id == actor.assigned_bus_id
    if isinstance(actor, OperatorActor):
        return target.operator_id == actor.operator_id
    return action == Action.READ


def enforce(actor: Optional[Actor], action: Action, target: BusScope) -> bool:
    """
    Raise `NoPermission` unless `evaluate` allows the access.
    """
    if not evaluate(actor, action, target):
        raise exceptions.NoPermission()
    return True


def listingScope(actor: Optional[Actor]) -> Optional[BusScope]:
    """
    The subset of buses an actor may see in listings.

    Returns None when the listing is unrestricted. A bus-bound actor gets a
    scope on its assigned bus (empty when none is assigned), an operator a
    scope on its operator.
    """
    if actor is None or isinstance(actor, AdminActor):
        return None
    if isinstance(actor, OperatorActor):
        return BusScope(operator_id=actor.operator_id)
    if isBusBound(actor):
        return BusScope(bus_id=actor.assigned_bus_id)
    return None


def isAdmin(actor: Optional[Actor]) -> bool:
    return isinstance(actor, AdminActor)


def evaluateOperator(actor: Optional[Actor], operator_id: int) -> bool:
    """Admins may access any operator record, operator accounts only their own."""
    if isinstance(actor, AdminActor):
        return True
    return isinstance(actor, OperatorActor) and actor.operator_id == operator_id


def enforceOperator(actor: Optional[Actor], operator_id: int) -> bool:
    if not evaluateOperator(actor, operator_id):
        raise exceptions.NoPermission()
    return True
