import re


class JobStatus:
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    LIVE = (STARTING, RUNNING)
    FINISHED = (COMPLETED, FAILED, STOPPED)


class HealthLevel:
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"

    ORDER = (HEALTHY, WARNING, CRITICAL)


class Availability:
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    ERROR = "error"


class ActionType:
    TRANSCODING_STARTED = "started"
    TRANSCODING_STOPPED = "stopped"
    TRANSCODING_COMPLETED = "completed"
    TRANSCODING_FAILED = "failed"
    TRANSCODING_ERROR = "error"
    FALLBACK = "fallback"
    DEAD_SOURCE_DETECTED = "dead_source_detected"
    DEAD_SOURCE_RECOVERY_ATTEMPT = "dead_source_recovery_attempt"
    DEAD_SOURCE_PERMANENT = "dead_source_permanent"
    MANUAL_DEAD_SOURCE_RETRY = "manual_dead_source_retry"
    MARKED_OFFLINE = "marked_offline"
    EMERGENCY_STOP_ALL = "emergency_stop_all"
    PROFILE_MIGRATION_COMPLETED = "profile_migration_completed"
    PROFILE_MIGRATION_FAILED = "profile_migration_failed"
    PERIODIC_CLEANUP = "periodic_cleanup"
    CLEANUP_ORPHANED = "cleanup_orphaned"
    CLEANUP_ERROR = "cleanup_error"
    RESOURCE_ALERT = "resource_alert"
    WATCHDOG_KILL = "watchdog_kill"


# Fallback ladder, highest cost first. Level numbers start at 1.
LADDER = ("high", "medium", "low", "copy")
COPY_LEVEL = len(LADDER)

# Encoder stderr signatures. The first matching category wins.
ERROR_PATTERNS = (
    ("STREAM_DECODE", re.compile(r"non-existing PPS|SPS unavailable|decode_slice_header error|no frame|Header missing")),
    ("INVALID_DATA", re.compile(r"Invalid data found when processing input")),
    ("CONNECTION_LOST", re.compile(r"Connection refused|No route to host|End of file")),
    ("TIMEOUT", re.compile(r"Operation timed out|Read timeout")),
    ("RESOURCE_ERROR", re.compile(r"Cannot allocate memory|Out of memory")),
)

MANDATORY_HLS_FLAGS = (
    "delete_segments",
    "program_date_time",
    "independent_segments",
    "split_by_time",
)

SCALE_FILTERS = {
    "1080p": "scale=1920:1080",
    "720p": "scale=1280:720",
    "480p": "scale=854:480",
}

MIN_HLS_LIST_SIZE = 6
SEGMENT_EXTENSIONS = (".ts", ".m4s")
CHANNEL_DIR_PREFIX = "channel_"
