"""Central configuration for the patrol tracking engine.

All values are constants imported by the rest of the package. Each can be
overridden through a ``PATROL_*`` environment variable (optionally via a local
`.env`). Per-deployment tuning can also be done by passing explicit
``TrackingConfig`` / ``GeofenceConfig`` instances to the service.
"""

from __future__ import annotations

import importlib
import os


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


# Load .env variables when python-dotenv is available.
_load_dotenv = None
try:
    _dotenv_mod = importlib.import_module("dotenv")
    _load_dotenv = getattr(_dotenv_mod, "load_dotenv", None)
except Exception:
    _load_dotenv = None

if callable(_load_dotenv):
    # Load .env from the current directory or any parent folder.
    _load_dotenv()


# ---------------------------------------------------------------------------
# Fix validation (anti-teleport filter)
# ---------------------------------------------------------------------------
# Fixes reporting a worse horizontal accuracy (metres) are rejected.
MAX_PRECISION_METERS = _env_float("PATROL_MAX_PRECISION_METERS", 50.0)

# Accuracy assumed for fixes that carry none.
MISSING_ACCURACY_METERS = 999.0

# Fixes closer in time than this to the last accepted one are dropped.
MIN_INTERVAL_MS = _env_float("PATROL_MIN_INTERVAL_MS", 100.0)

# Largest displacement (metres) allowed between consecutive accepted fixes.
MAX_JUMP_METERS = _env_float("PATROL_MAX_JUMP_METERS", 150.0)

# Implied speed above which a fix is a teleport (20 m/s ~ 72 km/h).
MAX_EXTREME_VELOCITY_MPS = _env_float("PATROL_MAX_EXTREME_VELOCITY_MPS", 20.0)

# Largest plausible change of speed between fixes.
MAX_ACCELERATION_MS2 = _env_float("PATROL_MAX_ACCELERATION_MS2", 5.0)

# Consecutive rejections after which the next candidate is force-accepted
# for display only. Set to 0 to disable the escape valve.
FORCE_ACCEPT_AFTER_REJECTIONS = _env_int("PATROL_FORCE_ACCEPT_AFTER_REJECTIONS", 10)

# Number of validation decisions kept in the per-session audit log.
FILTER_LOG_SIZE = _env_int("PATROL_FILTER_LOG_SIZE", 100)


# ---------------------------------------------------------------------------
# Trajectory and smoothing
# ---------------------------------------------------------------------------
# Minimum displacement (metres) before a new trajectory point is recorded.
MIN_RECORD_DISTANCE_METERS = _env_float("PATROL_MIN_RECORD_DISTANCE_METERS", 1.0)

# Moving-average window for the displayed position.
SMOOTHING_WINDOW_SIZE = _env_int("PATROL_SMOOTHING_WINDOW_SIZE", 3)

# Below this many samples the displayed position is a plain mean.
SMOOTHING_MIN_POINTS = _env_int("PATROL_SMOOTHING_MIN_POINTS", 2)

# Fraction of the angular gap closed per compass sample.
HEADING_SMOOTHING_FACTOR = _env_float("PATROL_HEADING_SMOOTHING_FACTOR", 0.15)


# ---------------------------------------------------------------------------
# Checkpoints / geofence
# ---------------------------------------------------------------------------
CHECKPOINT_RADIUS_DEFAULT_METERS = _env_float("PATROL_CHECKPOINT_RADIUS_DEFAULT", 30.0)
CHECKPOINT_RADIUS_MIN_METERS = 10.0
CHECKPOINT_RADIUS_MAX_METERS = 100.0

# Anti-fraud spacing between two checkpoint confirmations.
MIN_CHECKPOINT_SPACING_SECONDS = _env_float("PATROL_MIN_CHECKPOINT_SPACING_SECONDS", 30.0)

# Catalog cache (catalog is read-only and shared across sessions).
CATALOG_CACHE_TTL_SECONDS = _env_int("PATROL_CATALOG_CACHE_TTL_SECONDS", 300)
CATALOG_CACHE_SIZE = _env_int("PATROL_CATALOG_CACHE_SIZE", 64)


# ---------------------------------------------------------------------------
# Broadcasting
# ---------------------------------------------------------------------------
# Seconds between liveness re-sends of the latest smoothed position.
BROADCAST_TICK_SECONDS = _env_float("PATROL_BROADCAST_TICK_SECONDS", 3.0)

# Upper bound on undelivered position events per subscriber.
BROADCAST_POSITION_QUEUE_SIZE = _env_int("PATROL_BROADCAST_POSITION_QUEUE_SIZE", 32)

# Time allowed to flush discrete events when a session closes.
BROADCAST_DRAIN_TIMEOUT_SECONDS = _env_float("PATROL_BROADCAST_DRAIN_TIMEOUT_SECONDS", 5.0)

# Room name prefix shared with observers.
BROADCAST_ROOM_PREFIX = os.getenv("PATROL_BROADCAST_ROOM_PREFIX", "ronda")

# Optional HTTP relay used by the command line replay.
RELAY_URL = os.getenv("PATROL_RELAY_URL", "")
RELAY_TOKEN = os.getenv("PATROL_RELAY_TOKEN", "")
RELAY_TIMEOUT_SECONDS = _env_float("PATROL_RELAY_TIMEOUT_SECONDS", 10.0)
HTTP_POOL_CONNECTIONS = 10
HTTP_POOL_MAXSIZE = 10


# ---------------------------------------------------------------------------
# Retry / backoff
# ---------------------------------------------------------------------------
# Shared by transport reconnects and collaborator calls.
BACKOFF_INITIAL_SECONDS = _env_float("PATROL_BACKOFF_INITIAL_SECONDS", 1.0)
BACKOFF_MAX_SECONDS = _env_float("PATROL_BACKOFF_MAX_SECONDS", 30.0)
BACKOFF_FACTOR = _env_float("PATROL_BACKOFF_FACTOR", 2.0)
# BACKOFF_JITTER_RANGE adds random delay (seconds) to smooth reconnect bursts.
BACKOFF_JITTER_RANGE = (0.0, 0.25)

# Attempts for catalog loads and persistence writes before giving up.
COLLABORATOR_MAX_ATTEMPTS = _env_int("PATROL_COLLABORATOR_MAX_ATTEMPTS", 5)


# ---------------------------------------------------------------------------
# Persistence / registry
# ---------------------------------------------------------------------------
# Directory used by the JSON file persistence sink.
PERSISTENCE_DIR = os.getenv("PATROL_PERSISTENCE_DIR", "patrol_sessions")

# Overwrite previously written session records.
PERSISTENCE_OVERWRITE = _env_bool("PATROL_PERSISTENCE_OVERWRITE", True)

# Finished/cancelled sessions kept in memory for audit lookups.
ARCHIVE_MAX_SESSIONS = _env_int("PATROL_ARCHIVE_MAX_SESSIONS", 256)
ARCHIVE_TTL_SECONDS = _env_int("PATROL_ARCHIVE_TTL_SECONDS", 24 * 3600)

# Seconds a synchronous service call waits on the session worker.
COMMAND_TIMEOUT_SECONDS = _env_float("PATROL_COMMAND_TIMEOUT_SECONDS", 30.0)
