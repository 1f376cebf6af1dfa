"""
Transcoding engine configuration.

Values resolve in this order:
1. CoreSettings ``transcoding_settings`` group (editable at runtime)
2. ``settings.TRANSCODING`` (deployment, usually from environment)
3. ``TranscodingConfig`` defaults below
"""

import logging
import threading
import time

from django.conf import settings

logger = logging.getLogger(__name__)


class TranscodingConfig:
    """Default values for the transcoding engine."""

    # Paths
    HLS_OUTPUT_BASE = "/var/www/html/hls_stream"
    HLS_BASE_URL = "http://localhost"
    FFMPEG_PATH = "ffmpeg"
    FFPROBE_PATH = "ffprobe"
    AUTOSTART_SERVICES = True

    # Supervisor
    CONFIRM_DELAY = 2.0  # seconds before a running job is promoted to active
    RESTART_DELAY = 1.0  # seconds between stop and start
    STOP_TIMEOUT = 5  # seconds to wait after SIGTERM before SIGKILL
    ERROR_THRESHOLD = 5  # matched errors per job before falling back
    ERROR_LOG_WINDOW = 30  # seconds
    ERROR_LOG_MAX_PER_WINDOW = 5
    FINISHED_JOB_RETENTION_DAYS = 7

    # Admission (concurrent jobs per quality tier)
    MAX_CONCURRENT_HIGH = 15
    MAX_CONCURRENT_MEDIUM = 25
    MAX_CONCURRENT_LOW = 35
    MAX_CONCURRENT_COPY = 45

    # Staggering (milliseconds)
    STARTUP_STAGGER_DELAY = 2000
    PROFILE_MIGRATION_STAGGER = 3000
    BULK_OPERATION_STAGGER = 1500
    MIGRATION_BATCH_SIZE = 6
    MIGRATION_BATCH_COOLDOWN = 5000

    # Dead source detection
    DEAD_SOURCE_ERROR_WINDOW = 30  # seconds
    DEAD_SOURCE_MAX_ERRORS = 5
    OFFLINE_COOLDOWN = 300  # seconds
    MAX_DEAD_SOURCE_RETRIES = 3
    DEAD_SOURCE_STABLE_PERIOD = 600  # seconds a recovered job must hold before its episode closes

    # Resource monitor
    RESOURCE_MONITOR_INTERVAL = 5  # seconds
    CPU_SAMPLES = 5
    CPU_SCOPE = "host"  # or "process": this process plus its encoder children
    CPU_THRESHOLD_WARNING = 70
    CPU_THRESHOLD_CRITICAL = 85
    MEMORY_THRESHOLD_WARNING = 75
    MEMORY_THRESHOLD_CRITICAL = 90
    DISK_THRESHOLD_WARNING = 80
    DISK_THRESHOLD_CRITICAL = 95
    ALERT_COOLDOWN = 300  # seconds between alerts of the same type
    HISTORY_SAMPLE_PROBABILITY = 0.2
    HISTORY_RETENTION_HOURS = 24

    # Process watchdog
    WATCHDOG_INTERVAL = 30  # seconds
    WATCHDOG_MAX_RUNTIME_MINUTES = 1440
    WATCHDOG_MAX_MEMORY_MB = 500

    # Stream health monitor
    HEALTH_CHECK_INTERVAL = 30  # seconds
    HEALTH_CHECK_TIMEOUT = 10  # seconds, HTTP probe
    FFPROBE_TIMEOUT = 15  # seconds
    HEALTH_CHECK_WORKERS = 8
    UPTIME_WINDOW_HOURS = 24
    HEALTH_HISTORY_RETENTION_DAYS = 7
    HEALTH_USER_AGENT = "Transcodarr-HealthMonitor/1.0"

    # Cleanup scheduler
    CLEANUP_INTERVAL = 300  # seconds
    CLEANUP_INITIAL_DELAY = 10  # seconds
    SEGMENT_KEEP_BUFFER = 2  # segments kept on top of the playlist size
    MAX_SEGMENT_AGE = 60  # seconds
    ORPHANED_DIR_CLEANUP_AGE = 3600  # seconds
    MAX_CHANNEL_DIR_SIZE = 100 * 1024 * 1024  # bytes


_settings_cache = None
_settings_cache_time = 0
_SETTINGS_CACHE_TTL = 60  # seconds
_settings_cache_lock = threading.Lock()


def _get_runtime_overrides():
    global _settings_cache, _settings_cache_time

    with _settings_cache_lock:
        now = time.time()
        if _settings_cache is not None and (now - _settings_cache_time) < _SETTINGS_CACHE_TTL:
            return _settings_cache

        overrides = {}
        try:
            from core.models import CoreSettings
            overrides = CoreSettings.get_transcoding_settings() or {}
        except Exception as e:
            # Database may not be ready yet (migrations, etc.)
            logger.debug(f"Could not read transcoding settings overrides: {e}")

        _settings_cache = overrides
        _settings_cache_time = now
        return overrides


def invalidate_settings_cache():
    global _settings_cache, _settings_cache_time
    with _settings_cache_lock:
        _settings_cache = None
        _settings_cache_time = 0


def get_transcoding_setting(name):
    """
    Resolve a setting by its lowercase name, e.g. ``"max_concurrent_high"``.
    """
    key = name.lower()
    overrides = _get_runtime_overrides()
    if key in overrides:
        return overrides[key]

    deployment = getattr(settings, "TRANSCODING", {}) or {}
    if key in deployment:
        return deployment[key]

    try:
        return getattr(TranscodingConfig, key.upper())
    except AttributeError:
        raise KeyError(f"Unknown transcoding setting: {name}")


def get_tier_limits():
    return {
        "high": int(get_transcoding_setting("max_concurrent_high")),
        "medium": int(get_transcoding_setting("max_concurrent_medium")),
        "low": int(get_transcoding_setting("max_concurrent_low")),
        "copy": int(get_transcoding_setting("max_concurrent_copy")),
    }
