"""
Pure decision layer for the transcoding engine.

Nothing in here touches the database, the filesystem or a process. The
supervisor, fallback machine and monitors gather facts, call into these
functions and then apply the effects themselves.
"""

from dataclasses import dataclass

from .constants import COPY_LEVEL, ERROR_PATTERNS, LADDER, HealthLevel

STABLE_PERSISTED_STATES = ("active", "offline_temporary", "offline_permanent")
TRANSIENT_STATES = ("starting", "stopping")


# ---------------------------------------------------------------------------
# Fallback ladder
# ---------------------------------------------------------------------------

def ladder_level(tier: str) -> int:
    """1 for high quality through 4 for pass-through copy."""
    try:
        return LADDER.index(tier) + 1
    except ValueError:
        raise ValueError(f"Unknown quality tier: {tier!r}")


def lower_tiers(tier: str) -> tuple:
    """Tiers below ``tier``, nearest first."""
    return LADDER[ladder_level(tier):]


def is_bottom_of_ladder(tier: str) -> bool:
    return ladder_level(tier) == COPY_LEVEL


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    tier: str
    current: int
    max: int

    def as_dict(self):
        return {"available": self.allowed, "profile_type": self.tier, "current": self.current, "max": self.max}


def count_by_tier(tiers) -> dict:
    counts = {tier: 0 for tier in LADDER}
    for tier in tiers:
        if tier in counts:
            counts[tier] += 1
    return counts


def admission_decision(tier: str, counts: dict, limits: dict) -> AdmissionDecision:
    current = counts.get(tier, 0)
    maximum = limits.get(tier, 0)
    return AdmissionDecision(allowed=current < maximum, tier=tier, current=current, max=maximum)


# ---------------------------------------------------------------------------
# Error classification and dead-source window
# ---------------------------------------------------------------------------

def classify_error_line(line: str):
    """Return the error category for an encoder output line, or None."""
    for category, pattern in ERROR_PATTERNS:
        if pattern.search(line):
            return category
    return None


def prune_window(timestamps, now: float, window: float) -> list:
    return [ts for ts in timestamps if now - ts < window]


def dead_source_reached(tier: str, recent_errors: int, max_errors: int) -> bool:
    """
    The dead-source verdict only applies at the bottom of the ladder; a
    source that struggles at a higher tier gets a cheaper profile first.
    """
    return is_bottom_of_ladder(tier) and recent_errors >= max_errors


def should_fall_back(error_count: int, threshold: int, already_triggered: bool) -> bool:
    return not already_triggered and error_count >= threshold


def recovery_exhausted(retry_count: int, max_retries: int) -> bool:
    return retry_count > max_retries


def persisted_state(status: str):
    """
    State remembered across restarts for ``status``, or None when the
    status is transient and should not overwrite the remembered one.
    """
    if status in TRANSIENT_STATES:
        return None
    return status if status in STABLE_PERSISTED_STATES else "inactive"


# ---------------------------------------------------------------------------
# Health classification
# ---------------------------------------------------------------------------

def classify_health(value: float, warning: float, critical: float) -> str:
    if value > critical:
        return HealthLevel.CRITICAL
    if value > warning:
        return HealthLevel.WARNING
    return HealthLevel.HEALTHY


def worst_health(levels) -> str:
    levels = list(levels)
    if HealthLevel.CRITICAL in levels:
        return HealthLevel.CRITICAL
    if HealthLevel.WARNING in levels:
        return HealthLevel.WARNING
    return HealthLevel.HEALTHY


def alert_due(last_alert_at, now: float, cooldown: float) -> bool:
    return last_alert_at is None or (now - last_alert_at) > cooldown


def compute_uptime(available_checks: int, total_checks: int) -> float:
    if total_checks <= 0:
        return 0.0
    return round(available_checks / total_checks * 100, 2)


# ---------------------------------------------------------------------------
# Staggering
# ---------------------------------------------------------------------------

def stagger_offsets(count: int, delay_ms: int) -> list:
    """Start offsets in seconds for ``count`` items spaced ``delay_ms`` apart."""
    return [i * delay_ms / 1000.0 for i in range(count)]


def make_batches(items, size: int) -> list:
    items = list(items)
    if size <= 0:
        return [items] if items else []
    return [items[i:i + size] for i in range(0, len(items), size)]


# ---------------------------------------------------------------------------
# Segment retention
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SegmentFile:
    path: str
    age: float  # seconds
    size: int


def select_segments_to_delete(segments, keep_count: int, max_age: float) -> list:
    """
    Segments beyond the newest ``keep_count`` or older than ``max_age``.
    """
    newest_first = sorted(segments, key=lambda s: s.age)
    beyond_keep = newest_first[keep_count:]
    too_old = [s for s in newest_first[:keep_count] if s.age > max_age]
    return beyond_keep + too_old


def select_segments_over_size(segments, min_keep: int, max_bytes: int) -> list:
    """
    Oldest segments to drop until the total fits in ``max_bytes``, never
    leaving fewer than ``min_keep`` segments.
    """
    total = sum(s.size for s in segments)
    oldest_first = sorted(segments, key=lambda s: s.age, reverse=True)
    doomed = []
    while total > max_bytes and len(oldest_first) - len(doomed) > min_keep:
        segment = oldest_first[len(doomed)]
        doomed.append(segment)
        total -= segment.size
    return doomed


def segment_keep_count(hls_list_size: int, buffer: int, min_list_size: int) -> int:
    return max(int(hls_list_size or 0), min_list_size) + buffer
