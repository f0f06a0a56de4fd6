"""
Application configuration and constants for the NTC Bus Tracking API Server.

This module centralizes environment-based configuration, resource limits,
regular expressions, geometry constraints and token lifetimes.

Configuration values can be overridden via environment variables.
"""

from os import environ


# ---------------------------------------------------------------------------
# Application metadata
# ---------------------------------------------------------------------------
API_TITLE = "NTC Bus Tracking API Server"
API_VERSION = "1.0.0"
API_PREFIX = "/api/v1"


# ---------------------------------------------------------------------------
# PostgreSQL configuration
# ---------------------------------------------------------------------------
PSQL_DB_DRIVER = environ.get("PSQL_DB_DRIVER", "postgresql")
PSQL_DB_USERNAME = environ.get("PSQL_DB_USERNAME", "postgres")
PSQL_DB_PORT = environ.get("PSQL_DB_PORT", "5432")
PSQL_DB_PASSWORD = environ.get("PSQL_DB_PASSWORD", "password")
PSQL_DB_HOST = environ.get("PSQL_DB_HOST", "localhost")
PSQL_DB_NAME = environ.get("PSQL_DB_NAME", "postgres")


# ---------------------------------------------------------------------------
# OpenObserve configuration
# ---------------------------------------------------------------------------
OPENOBSERVE_PROTOCOL = environ.get("OPENOBSERVE_PROTOCOL", "http")
OPENOBSERVE_HOST = environ.get("OPENOBSERVE_HOST", "localhost")
OPENOBSERVE_PORT = environ.get("OPENOBSERVE_PORT", "5080")
OPENOBSERVE_USERNAME = environ.get("OPENOBSERVE_USERNAME", "admin@ntc.lk")
OPENOBSERVE_PASSWORD = environ.get("OPENOBSERVE_PASSWORD", "password")
OPENOBSERVE_ORG = environ.get("OPENOBSERVE_ORG", "ntc")
OPENOBSERVE_STREAM = environ.get("OPENOBSERVE_STREAM", "bus-tracking-server")


# ---------------------------------------------------------------------------
# Redis configuration
# ---------------------------------------------------------------------------
REDIS_HOST = environ.get("REDIS_HOST", "localhost")
REDIS_PORT = environ.get("REDIS_PORT", "6379")
REDIS_PASSWORD = environ.get("REDIS_PASSWORD", "password")


# ---------------------------------------------------------------------------
# JWT configuration
# ---------------------------------------------------------------------------
JWT_SECRET = environ.get("JWT_SECRET", "change-me-access-secret")
JWT_REFRESH_SECRET = environ.get("JWT_REFRESH_SECRET", JWT_SECRET + "-refresh")
JWT_ALGORITHM = "HS256"
JWT_ACCESS_EXPIRE = int(environ.get("JWT_ACCESS_EXPIRE", 15 * 60))  # seconds
JWT_REFRESH_EXPIRE = int(environ.get("JWT_REFRESH_EXPIRE", 7 * 24 * 60 * 60))


# ---------------------------------------------------------------------------
# Resource upper limits
# ---------------------------------------------------------------------------
MAX_REFRESH_TOKENS = 5  # Refresh tokens kept per user
MAX_PAGE_LIMIT = 100  # Largest page size accepted by listings
MAX_HISTORY_LIMIT = 1000  # Largest page size for location history
MAX_NEARBY_RADIUS = 100  # km
DEFAULT_NEARBY_RADIUS = 5  # km
MAX_ACTIVE_LOCATIONS = 500  # Largest cap for the active bus feed


# ---------------------------------------------------------------------------
# Regex constants (input validation)
# ---------------------------------------------------------------------------
REGEX_USERNAME = r"^[a-zA-Z0-9_]+$"
REGEX_PASSWORD = r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d).+$"
REGEX_ROUTE_NUMBER = r"^[A-Za-z0-9/-]+$"


# ---------------------------------------------------------------------------
# Geometry constants
# ---------------------------------------------------------------------------
EPSG_4326 = 4326  # WGS 84
MIN_LATITUDE, MAX_LATITUDE = -90, 90
MIN_LONGITUDE, MAX_LONGITUDE = -180, 180


# ---------------------------------------------------------------------------
# Ping constraints
# ---------------------------------------------------------------------------
MIN_SPEED, MAX_SPEED = 0, 300  # km/h
MIN_HEADING, MAX_HEADING = 0, 360  # degrees


# ---------------------------------------------------------------------------
# Bus constraints
# ---------------------------------------------------------------------------
MIN_BUS_CAPACITY, MAX_BUS_CAPACITY = 1, 100
BUS_CODE_PREFIX = "BUS"
BUS_CODE_DIGITS = 6
BUS_CODE_MAX_ATTEMPTS = 10


# ---------------------------------------------------------------------------
# Location retention
# ---------------------------------------------------------------------------
LOCATION_RETENTION_DAYS = int(environ.get("LOCATION_RETENTION_DAYS", 90))
STATS_WINDOW_DAYS = 30  # Trailing window for daily statistics
LICENSE_EXPIRY_THRESHOLD_DAYS = 30


# ---------------------------------------------------------------------------
# Redis mutex lock constants
# ---------------------------------------------------------------------------
MUTEX_LOCK_TIMEOUT = 10  # Lock timeout (in seconds)
MUTEX_LOCK_MAX_WAIT_TIME = 60  # Max blocking wait time (in seconds)
CLEANER_INTERVAL = 60 * 60  # Seconds between cleaner runs
