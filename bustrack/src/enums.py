from enum import Enum, IntEnum


class OrderIn(IntEnum):
    ASC = 1
    DESC = 2


class UserRole(str, Enum):
    ADMIN = "admin"
    OPERATOR = "operator"
    DRIVER = "driver"
    USER = "user"


class BusStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"


class BusType(str, Enum):
    NORMAL = "Normal"
    SEMI_LUXURY = "Semi Luxury"
    LUXURY = "Luxury"
    SUPER_LUXURY = "Super Luxury"


class Action(IntEnum):
    LIST = 1
    READ = 2
    UPDATE = 3
    MANAGE = 4


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
