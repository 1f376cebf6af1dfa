"""
Engine event publishing.

Action-log entries written by the transcoding engine are mirrored onto a
redis pub/sub channel as JSON so dashboards can follow state transitions
without polling the database.

Each event has a verbosity level. The configured level (environment
variable TRANSCODARR_EVENT_LEVEL, then CoreSettings system_settings
``event_level``, then FULL) is cumulative: SYSTEM also publishes CRITICAL
events, FULL publishes everything.
"""
import json
import logging
import os
import threading
import time

from django.db import transaction
from django.utils import timezone

logger = logging.getLogger(__name__)

EVENTS_CHANNEL = "transcodarr:events"

EVENT_LEVEL_NONE = 0
EVENT_LEVEL_CRITICAL = 10
EVENT_LEVEL_SYSTEM = 20
EVENT_LEVEL_FULL = 30

EVENT_LEVELS = {
    "NONE": EVENT_LEVEL_NONE,
    "CRITICAL": EVENT_LEVEL_CRITICAL,
    "SYSTEM": EVENT_LEVEL_SYSTEM,
    "FULL": EVENT_LEVEL_FULL,
}

# Channel events carry channel id and name; fleet events carry only their context
CHANNEL_SCOPE = "channel"
FLEET_SCOPE = "fleet"

# event name -> (minimum level that publishes it, payload scope)
EVENT_CATALOG = {
    # Needs an operator
    "transcoding.failed": (EVENT_LEVEL_CRITICAL, CHANNEL_SCOPE),
    "transcoding.error": (EVENT_LEVEL_CRITICAL, CHANNEL_SCOPE),
    "transcoding.dead_source_detected": (EVENT_LEVEL_CRITICAL, CHANNEL_SCOPE),
    "transcoding.dead_source_permanent": (EVENT_LEVEL_CRITICAL, CHANNEL_SCOPE),
    "transcoding.cleanup_error": (EVENT_LEVEL_CRITICAL, CHANNEL_SCOPE),
    "resource.alert": (EVENT_LEVEL_CRITICAL, FLEET_SCOPE),
    # Fleet-wide operations
    "transcoding.emergency_stop_all": (EVENT_LEVEL_SYSTEM, FLEET_SCOPE),
    "transcoding.profile_migration_completed": (EVENT_LEVEL_SYSTEM, FLEET_SCOPE),
    "transcoding.profile_migration_failed": (EVENT_LEVEL_SYSTEM, FLEET_SCOPE),
    "transcoding.watchdog_kill": (EVENT_LEVEL_SYSTEM, CHANNEL_SCOPE),
    # Per-channel lifecycle
    "transcoding.started": (EVENT_LEVEL_FULL, CHANNEL_SCOPE),
    "transcoding.stopped": (EVENT_LEVEL_FULL, CHANNEL_SCOPE),
    "transcoding.completed": (EVENT_LEVEL_FULL, CHANNEL_SCOPE),
    "transcoding.fallback": (EVENT_LEVEL_FULL, CHANNEL_SCOPE),
    "transcoding.dead_source_recovery_attempt": (EVENT_LEVEL_FULL, CHANNEL_SCOPE),
    "transcoding.manual_dead_source_retry": (EVENT_LEVEL_FULL, CHANNEL_SCOPE),
    "transcoding.marked_offline": (EVENT_LEVEL_FULL, CHANNEL_SCOPE),
    "transcoding.periodic_cleanup": (EVENT_LEVEL_FULL, FLEET_SCOPE),
    "transcoding.cleanup_orphaned": (EVENT_LEVEL_FULL, CHANNEL_SCOPE),
}

EVENT_LEVEL_MAP = {name: level for name, (level, _scope) in EVENT_CATALOG.items()}

_level_cache = {"value": None, "read_at": 0.0}
_LEVEL_CACHE_TTL = 60  # seconds
_level_cache_lock = threading.Lock()


def _level_from_settings():
    try:
        from core.models import CoreSettings
        name = str(CoreSettings.get_system_settings().get("event_level", "")).upper()
    except Exception as e:
        # Settings table missing during migrate
        logger.debug(f"Event level unavailable from settings: {e}")
        return EVENT_LEVEL_FULL
    return EVENT_LEVELS.get(name, EVENT_LEVEL_FULL)


def get_event_level():
    env_name = os.environ.get("TRANSCODARR_EVENT_LEVEL", "").upper()
    if env_name in EVENT_LEVELS:
        return EVENT_LEVELS[env_name]

    with _level_cache_lock:
        now = time.time()
        if _level_cache["value"] is None or now - _level_cache["read_at"] >= _LEVEL_CACHE_TTL:
            _level_cache["value"] = _level_from_settings()
            _level_cache["read_at"] = now
        return _level_cache["value"]


def invalidate_event_level_cache():
    with _level_cache_lock:
        _level_cache["value"] = None
        _level_cache["read_at"] = 0.0


def should_emit_event(event_name: str) -> bool:
    entry = EVENT_CATALOG.get(event_name)
    if entry is None:
        logger.warning(f"Event '{event_name}' is not in the event catalog, dropping it")
        return False
    configured = get_event_level()
    return configured != EVENT_LEVEL_NONE and entry[0] <= configured


def validate_event_configuration():
    """Raise ValueError if any catalog entry has an unknown level or scope."""
    known_levels = set(EVENT_LEVELS.values()) - {EVENT_LEVEL_NONE}
    bad = sorted(
        name for name, (level, scope) in EVENT_CATALOG.items()
        if level not in known_levels or scope not in (CHANNEL_SCOPE, FLEET_SCOPE)
    )
    if bad:
        raise ValueError(f"Events with an invalid level or scope: {', '.join(bad)}")
    logger.debug(f"Event catalog validated: {len(EVENT_CATALOG)} events")


def build_payload(event_name, obj=None, **context):
    _level, scope = EVENT_CATALOG.get(event_name, (None, FLEET_SCOPE))
    data = {}
    if scope == CHANNEL_SCOPE:
        data["channel_id"] = getattr(obj, "id", None)
        data["channel_name"] = getattr(obj, "name", None)
    data.update(context)
    return data


def _publish(event_name, data):
    from core.utils import RedisClient

    message = json.dumps(
        {"event": event_name, "timestamp": timezone.now().isoformat(), "data": data},
        default=str,
    )
    if not RedisClient.publish(EVENTS_CHANNEL, message):
        logger.debug(f"Event {event_name} not published, redis unavailable")


def emit(event_name: str, obj=None, on_commit: bool = True, **context):
    """
    Publish ``event_name`` if the configured level allows it.

    ``obj`` is the channel for channel-scoped events. With ``on_commit``
    the message goes out only after the surrounding transaction commits.
    """
    if not should_emit_event(event_name):
        return

    try:
        data = build_payload(event_name, obj, **context)
        if on_commit:
            transaction.on_commit(lambda: _publish(event_name, data))
        else:
            _publish(event_name, data)
    except Exception as e:
        logger.warning(f"Failed to emit {event_name}: {e}")
