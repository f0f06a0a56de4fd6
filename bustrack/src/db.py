from geoalchemy2 import Geometry
from sqlalchemy import (
    TEXT,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    func,
)
from sqlalchemy.orm import declarative_base, sessionmaker

from bustrack.src.constants import (
    EPSG_4326,
    PSQL_DB_DRIVER,
    PSQL_DB_HOST,
    PSQL_DB_PASSWORD,
    PSQL_DB_NAME,
    PSQL_DB_PORT,
    PSQL_DB_USERNAME,
)
from bustrack.src.enums import BusStatus, UserRole


# Global DBMS variables
dbURL = f"{PSQL_DB_DRIVER}://{PSQL_DB_USERNAME}:{PSQL_DB_PASSWORD}@{PSQL_DB_HOST}:{PSQL_DB_PORT}/{PSQL_DB_NAME}"
engine = create_engine(url=dbURL, echo=False, pool_pre_ping=True)
sessionMaker = sessionmaker(bind=engine, expire_on_commit=False)
ORMbase = declarative_base()


# ----------------------------------- Directory DB Models -------------------------------------#
class Operator(ORMbase):
    """
    Represents a fleet-owning transport company.

    Buses and operator/driver accounts may belong to an operator. Deactivating
    an operator suspends its whole fleet and every account attached to it.

    Columns:
        id (Integer):
            Primary key. Unique identifier for the operator.

        name (String(100)):
            Display name of the operator. Must not be null.

        registration_number (String(32)):
            Business registration number. Must be unique and not null.

        license_number (String(32)):
            Route permit / license number. Must be unique and not null.

        license_issue_date (DateTime):
            Start of the license validity window.

        license_expiry_date (DateTime):
            End of the license validity window.
            Must be after `license_issue_date`.

        license_is_valid (Boolean):
            Administrative validity flag, independent of the expiry date.

        phone_number (TEXT):
            Contact number in the `+94xxxxxxxxx` format. Must not be null.

        email_id (TEXT):
            Optional contact email address, stored lower-cased.

        street, city, province, postal_code (TEXT):
            Optional postal address fields.

        is_active (Boolean):
            Whether the operator is allowed to run services.
            Defaults to True.

        total_buses (Integer):
            Denormalised count of buses owned by the operator.
            Maintained whenever a bus is created, moved or deleted.

        updated_on (DateTime):
            Timestamp automatically updated whenever the record is modified.

        created_on (DateTime):
            Timestamp indicating when the operator was created.
    """

    __tablename__ = "operator"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False, index=True)
    registration_number = Column(String(32), nullable=False, unique=True)
    license_number = Column(String(32), nullable=False, unique=True)
    license_issue_date = Column(DateTime(timezone=True), nullable=False)
    license_expiry_date = Column(DateTime(timezone=True), nullable=False)
    license_is_valid = Column(Boolean, nullable=False, default=True)
    # Contact details
    phone_number = Column(TEXT, nullable=False)
    email_id = Column(TEXT)
    street = Column(TEXT)
    city = Column(TEXT)
    province = Column(TEXT)
    postal_code = Column(TEXT)
    is_active = Column(Boolean, nullable=False, default=True)
    total_buses = Column(Integer, nullable=False, default=0)
    # Metadata
    updated_on = Column(DateTime(timezone=True), onupdate=func.now())
    created_on = Column(DateTime(timezone=True), nullable=False, default=func.now())


class Route(ORMbase):
    """
    Represents a fixed bus route between an origin and a destination.

    Columns:
        id (Integer):
            Primary key. Unique identifier for the route.

        route_number (String(16)):
            Public route number, ex:- "87". Must be unique and not null.

        origin (String(64)):
            Name of the starting town. Must not be null.

        destination (String(64)):
            Name of the terminating town. Must not be null.

        distance (Float):
            Route length in kilometers. Must be greater than zero.

        estimated_duration (Integer):
            Expected end-to-end travel time in minutes. Must be greater than zero.

        is_active (Boolean):
            Inactive routes cannot receive new buses.

        updated_on (DateTime):
            Timestamp automatically updated whenever the record is modified.

        created_on (DateTime):
            Timestamp indicating when the route was created.
    """

    __tablename__ = "route"

    id = Column(Integer, primary_key=True)
    route_number = Column(String(16), nullable=False, unique=True)
    origin = Column(String(64), nullable=False, index=True)
    destination = Column(String(64), nullable=False, index=True)
    distance = Column(Float, nullable=False)
    estimated_duration = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    # Metadata
    updated_on = Column(DateTime(timezone=True), onupdate=func.now())
    created_on = Column(DateTime(timezone=True), nullable=False, default=func.now())


class Waypoint(ORMbase):
    """
    Represents a named intermediate stop on a route.

    Columns:
        id (Integer):
            Primary key.

        route_id (Integer):
            Foreign key referencing the route.
            Deletion of the route cascades to its waypoints.

        position (Integer):
            Zero based order of the waypoint along the route.
            Unique per route.

        name (String(64)):
            Name of the stop.

        location (Geometry):
            `POINT` geometry with SRID 4326.

        estimated_time (Integer):
            Minutes from the route origin to this waypoint.

        created_on (DateTime):
            Timestamp indicating when the waypoint was stored.
    """

    __tablename__ = "waypoint"
    __table_args__ = (UniqueConstraint("route_id", "position"),)

    id = Column(Integer, primary_key=True)
    route_id = Column(
        Integer, ForeignKey("route.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False)
    name = Column(String(64), nullable=False)
    location = Column(
        Geometry(geometry_type="POINT", srid=EPSG_4326), nullable=False
    )
    estimated_time = Column(Integer)
    # Metadata
    created_on = Column(DateTime(timezone=True), nullable=False, default=func.now())


class Bus(ORMbase):
    """
    Represents a bus running on a route.

    Columns:
        id (Integer):
            Primary key. Unique identifier for the bus.

        bus_code (String(24)):
            Human readable identifier generated at creation, ex:- BUS482913.
            Unique when present.

        bus_number (String(20)):
            Registration plate or fleet number. Must be unique and not null.

        route_id (Integer):
            Foreign key referencing the route the bus runs on.
            Routes referenced by a bus cannot be removed.

        operator_id (Integer):
            Optional foreign key referencing the owning operator.

        capacity (Integer):
            Seating capacity, between 1 and 100.

        bus_type (String(16)):
            One of `BusType`.

        current_location (Geometry):
            Copy of the newest ping, `POINT` with SRID 4326.
            Overwritten on every location update, never merged.

        status (String(16)):
            One of `BusStatus`. Defaults to `BusStatus.ACTIVE`.

        last_updated (DateTime):
            Timestamp of the ping that produced `current_location`.

        updated_on (DateTime):
            Timestamp automatically updated whenever the record is modified.

        created_on (DateTime):
            Timestamp indicating when the bus was created.
    """

    __tablename__ = "bus"

    id = Column(Integer, primary_key=True)
    bus_code = Column(String(24), unique=True)
    bus_number = Column(String(20), nullable=False, unique=True)
    route_id = Column(
        Integer,
        ForeignKey("route.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    operator_id = Column(Integer, ForeignKey("operator.id"), index=True)
    capacity = Column(Integer, nullable=False)
    bus_type = Column(String(16), nullable=False)
    current_location = Column(Geometry(geometry_type="POINT", srid=EPSG_4326))
    status = Column(String(16), nullable=False, default=BusStatus.ACTIVE.value)
    last_updated = Column(DateTime(timezone=True), default=func.now())
    # Metadata
    updated_on = Column(DateTime(timezone=True), onupdate=func.now())
    created_on = Column(DateTime(timezone=True), nullable=False, default=func.now())


class Location(ORMbase):
    """
    Represents a single GPS ping of a bus.

    Pings are append-only. They are removed only by the retention cleaner or
    together with their bus.

    Columns:
        id (Integer):
            Primary key.

        bus_id (Integer):
            Foreign key referencing the bus. Deleting the bus cascades.

        location (Geometry):
            `POINT` geometry with SRID 4326, spatially indexed.

        speed (Float):
            Ground speed in km/h, between 0 and 300. Defaults to 0.

        heading (Float):
            Course over ground in degrees, between 0 and 360. Defaults to 0.

        accuracy (Float):
            Optional horizontal accuracy in meters.

        timestamp (DateTime):
            Time the ping was taken. Client supplied or the ingest time.

        is_active (Boolean):
            Defaults to True.

        created_on (DateTime):
            Timestamp indicating when the ping was stored.
    """

    __tablename__ = "location"

    id = Column(Integer, primary_key=True)
    bus_id = Column(
        Integer, ForeignKey("bus.id", ondelete="CASCADE"), nullable=False
    )
    location = Column(
        Geometry(geometry_type="POINT", srid=EPSG_4326, spatial_index=True),
        nullable=False,
    )
    speed = Column(Float, nullable=False, default=0)
    heading = Column(Float, nullable=False, default=0)
    accuracy = Column(Float)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=func.now())
    is_active = Column(Boolean, nullable=False, default=True)
    # Metadata
    created_on = Column(DateTime(timezone=True), nullable=False, default=func.now())


Index("ix_location_bus_id_timestamp", Location.bus_id, Location.timestamp.desc())


# ----------------------------------- Account DB Models ---------------------------------------#
class User(ORMbase):
    """
    Represents an account of any role.

    Columns:
        id (Integer):
            Primary key. Unique identifier for the user.

        username (String(30)):
            Unique login name, 3-30 characters of letters, digits and underscore.

        email_id (String(256)):
            Unique email address, stored lower-cased.

        password (TEXT):
            Argon2 hash of the password. Plaintext is never stored.

        first_name, last_name (String(50)):
            Display names.

        phone_number (TEXT):
            Contact number in the `+94xxxxxxxxx` format.

        role (String(16)):
            One of `UserRole`. Defaults to `UserRole.USER`.

        operator_id (Integer):
            Owning operator. Only set for operator and driver accounts.

        assigned_bus_id (Integer):
            The single bus a driver (or a scoped user) may act on.
            Cleared when the bus is deleted.

        is_active (Boolean):
            Inactive accounts cannot log in or use existing tokens.

        last_login (DateTime):
            Time of the last successful authentication.

        updated_on (DateTime):
            Timestamp automatically updated whenever the record is modified.

        created_on (DateTime):
            Timestamp indicating when the account was created.
    """

    __tablename__ = "user_account"

    id = Column(Integer, primary_key=True)
    username = Column(String(30), nullable=False, unique=True)
    email_id = Column(String(256), nullable=False, unique=True)
    password = Column(TEXT, nullable=False)
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    phone_number = Column(TEXT, nullable=False)
    role = Column(String(16), nullable=False, default=UserRole.USER.value, index=True)
    operator_id = Column(Integer, ForeignKey("operator.id"), index=True)
    assigned_bus_id = Column(Integer, ForeignKey("bus.id", ondelete="SET NULL"))
    is_active = Column(Boolean, nullable=False, default=True)
    last_login = Column(DateTime(timezone=True))
    # Metadata
    updated_on = Column(DateTime(timezone=True), onupdate=func.now())
    created_on = Column(DateTime(timezone=True), nullable=False, default=func.now())


class RefreshToken(ORMbase):
    """
    Represents a refresh token issued to a user.

    At most `MAX_REFRESH_TOKENS` are kept per user, the oldest being evicted
    first. A refresh token is valid only while its row exists.

    Columns:
        id (Integer):
            Primary key.

        user_id (Integer):
            Foreign key referencing the user. Cascades on delete.

        token (TEXT):
            The signed refresh JWT. Unique.

        expires_at (DateTime):
            Expiry copied from the JWT `exp` claim.

        created_on (DateTime):
            Timestamp indicating when this token was issued.
    """

    __tablename__ = "refresh_token"

    id = Column(Integer, primary_key=True)
    user_id = Column(
        Integer,
        ForeignKey("user_account.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    token = Column(TEXT, nullable=False, unique=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    # Metadata
    created_on = Column(DateTime(timezone=True), nullable=False, default=func.now())
