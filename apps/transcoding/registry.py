import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class JobEntry:
    """Live state for one running encoder."""

    channel_id: int
    job_id: int
    profile_id: Optional[int]
    tier: str
    handler: Any
    output_dir: str
    output_url: str = ''
    is_retry: bool = False
    started_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    error_count: int = 0
    fallback_triggered: bool = False

    @property
    def pid(self):
        return getattr(self.handler, 'pid', None)

    def as_dict(self):
        return {
            'channel_id': self.channel_id,
            'job_id': self.job_id,
            'profile_id': self.profile_id,
            'tier': self.tier,
            'pid': self.pid,
            'error_count': self.error_count,
            'is_retry': self.is_retry,
            'started_at': self.started_at,
            'last_activity': self.last_activity,
            'uptime_seconds': int(time.time() - self.started_at),
        }


class JobRegistry:
    """
    The live job map, keyed by channel id.

    ``_lock`` guards the map itself. Each channel additionally has an RLock
    that callers hold across start/stop/restart/recovery for that channel.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: Dict[int, JobEntry] = {}
        self._channel_locks: Dict[int, threading.RLock] = {}

    def channel_lock(self, channel_id) -> threading.RLock:
        with self._lock:
            lock = self._channel_locks.get(channel_id)
            if lock is None:
                lock = threading.RLock()
                self._channel_locks[channel_id] = lock
            return lock

    def add(self, entry: JobEntry):
        with self._lock:
            self._jobs[entry.channel_id] = entry

    def get(self, channel_id) -> Optional[JobEntry]:
        with self._lock:
            return self._jobs.get(channel_id)

    def remove(self, channel_id, job_id=None) -> Optional[JobEntry]:
        """Remove and return the entry. With ``job_id``, only if it is still that job."""
        with self._lock:
            entry = self._jobs.get(channel_id)
            if entry is None or (job_id is not None and entry.job_id != job_id):
                return None
            return self._jobs.pop(channel_id)

    def is_current(self, channel_id, job_id) -> bool:
        with self._lock:
            entry = self._jobs.get(channel_id)
            return entry is not None and entry.job_id == job_id

    def snapshot(self) -> List[JobEntry]:
        with self._lock:
            return list(self._jobs.values())

    def channel_ids(self):
        with self._lock:
            return set(self._jobs.keys())

    def tiers(self) -> List[str]:
        return [entry.tier for entry in self.snapshot()]

    def increment_error(self, channel_id, job_id) -> Optional[int]:
        with self._lock:
            entry = self._jobs.get(channel_id)
            if entry is None or entry.job_id != job_id:
                return None
            entry.error_count += 1
            return entry.error_count

    def touch(self, channel_id, job_id):
        with self._lock:
            entry = self._jobs.get(channel_id)
            if entry is not None and entry.job_id == job_id:
                entry.last_activity = time.time()

    def claim_fallback(self, channel_id, job_id) -> bool:
        """Mark the job's fallback as triggered. True only for the first caller."""
        with self._lock:
            entry = self._jobs.get(channel_id)
            if entry is None or entry.job_id != job_id or entry.fallback_triggered:
                return False
            entry.fallback_triggered = True
            return True

    def __len__(self):
        with self._lock:
            return len(self._jobs)

    def __contains__(self, channel_id):
        with self._lock:
            return channel_id in self._jobs
