"""
Host resource monitoring and the encoder process watchdog.
"""

import logging
import random
import threading
import time
from collections import deque
from datetime import timedelta

import psutil
from django.utils import timezone

from apps.channels.models import Channel
from .audit import log_action
from .config import get_tier_limits, get_transcoding_setting
from .constants import ActionType, HealthLevel
from .models import ResourceAlert, ResourceSnapshot
from .policy import alert_due, classify_health, count_by_tier, worst_health
from .utils import BackgroundLoop

logger = logging.getLogger(__name__)

METRICS = ('cpu', 'memory', 'disk')

# Sampling window for a single psutil.cpu_percent reading
CPU_SAMPLE_WINDOW = 0.5


def _thresholds(metric):
    return (
        get_transcoding_setting(f"{metric}_threshold_warning"),
        get_transcoding_setting(f"{metric}_threshold_critical"),
    )


class ResourceMonitor(BackgroundLoop):
    name = "ResourceMonitor"

    def __init__(self, rng=None):
        super().__init__()
        self._cpu_samples = deque(maxlen=int(get_transcoding_setting("cpu_samples")))
        self._current = None
        self._current_lock = threading.Lock()
        self._last_alerts = {}
        self.rng = rng or random.random
        self._clock = time.time
        self._sleep = time.sleep

    def interval(self):
        return get_transcoding_setting("resource_monitor_interval")

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def sample_cpu(self):
        """
        CPU percent averaged over the last few samples.

        ``cpu_scope`` "host" reads the whole machine; "process" reads only this
        process and its encoder children, as a share of all cores.
        """
        if get_transcoding_setting("cpu_scope") == "process":
            reading = self._engine_cpu_percent()
        else:
            reading = psutil.cpu_percent(interval=CPU_SAMPLE_WINDOW)
        self._cpu_samples.append(reading)
        return round(sum(self._cpu_samples) / len(self._cpu_samples), 2)

    def _engine_cpu_percent(self):
        engine = psutil.Process()
        processes = [engine] + engine.children(recursive=True)
        for process in processes:
            try:
                process.cpu_percent(None)
            except psutil.Error:
                pass
        self._sleep(CPU_SAMPLE_WINDOW)

        total = 0.0
        for process in processes:
            try:
                total += process.cpu_percent(None)
            except psutil.Error:
                # Encoder exited during the window
                continue
        return min(100.0, total / (psutil.cpu_count() or 1))

    @staticmethod
    def _disk_usage():
        path = get_transcoding_setting("hls_output_base")
        try:
            return path, psutil.disk_usage(path)
        except OSError:
            # Output root not created yet
            return '/', psutil.disk_usage('/')

    def collect(self):
        cpu = self.sample_cpu()
        memory = psutil.virtual_memory()
        swap = psutil.swap_memory()
        disk_path, disk = self._disk_usage()

        stats = {
            'timestamp': timezone.now(),
            'cpu': {
                'usage': cpu,
                'cores': psutil.cpu_count(),
                'samples': len(self._cpu_samples),
                'scope': get_transcoding_setting("cpu_scope"),
            },
            'memory': {
                'usage': memory.percent,
                'total': memory.total,
                'used': memory.used,
                'available': memory.available,
                'swap_total': swap.total,
                'swap_used': swap.used,
                'swap_percent': swap.percent,
            },
            'disk': {
                'usage': disk.percent,
                'total': disk.total,
                'used': disk.used,
                'free': disk.free,
                'path': disk_path,
            },
        }
        for metric in METRICS:
            warning, critical = _thresholds(metric)
            stats[metric]['health'] = classify_health(stats[metric]['usage'], warning, critical)
        stats['overall_health'] = worst_health(stats[metric]['health'] for metric in METRICS)
        return stats

    def run_once(self):
        stats = self.collect()
        with self._current_lock:
            self._current = stats
        self.check_alerts(stats)
        if self.rng() < get_transcoding_setting("history_sample_probability"):
            self.record_snapshot(stats)
        return stats

    # ------------------------------------------------------------------
    # Alerts and history
    # ------------------------------------------------------------------

    def check_alerts(self, stats):
        now = self._clock()
        cooldown = get_transcoding_setting("alert_cooldown")
        raised = []
        for metric in METRICS:
            level = stats[metric]['health']
            if level == HealthLevel.HEALTHY:
                continue

            alert_type = f"{metric}_{level}"
            if not alert_due(self._last_alerts.get(alert_type), now, cooldown):
                continue
            self._last_alerts[alert_type] = now

            warning, critical = _thresholds(metric)
            threshold = critical if level == HealthLevel.CRITICAL else warning
            value = stats[metric]['usage']
            message = f"{metric.upper()} usage {level}: {value:.1f}% (threshold {threshold}%)"

            alert = ResourceAlert.objects.create(
                alert_type=alert_type, message=message, value=value, threshold=threshold
            )
            log_action(
                ActionType.RESOURCE_ALERT,
                message,
                alert_type=alert_type,
                value=value,
                threshold=threshold,
            )
            logger.warning(message)
            raised.append(alert)
        return raised

    @staticmethod
    def record_snapshot(stats):
        return ResourceSnapshot.objects.create(
            timestamp=stats['timestamp'],
            cpu_usage=stats['cpu']['usage'],
            memory_usage=stats['memory']['usage'],
            disk_usage=stats['disk']['usage'],
            memory_total=stats['memory']['total'],
            memory_used=stats['memory']['used'],
            disk_total=stats['disk']['total'],
            disk_used=stats['disk']['used'],
            cpu_health=stats['cpu']['health'],
            memory_health=stats['memory']['health'],
            disk_health=stats['disk']['health'],
            overall_health=stats['overall_health'],
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_current_stats(self):
        with self._current_lock:
            current = self._current
        if current is None:
            current = self.collect()
            with self._current_lock:
                self._current = current
        return current

    def get_history(self, hours=1):
        since = timezone.now() - timedelta(hours=hours)
        return list(
            ResourceSnapshot.objects.filter(timestamp__gte=since).order_by('timestamp').values(
                'timestamp', 'cpu_usage', 'memory_usage', 'disk_usage',
                'cpu_health', 'memory_health', 'disk_health', 'overall_health',
            )
        )

    def get_recent_alerts(self, hours=24):
        since = timezone.now() - timedelta(hours=hours)
        return list(
            ResourceAlert.objects.filter(created_at__gte=since).order_by('-created_at').values(
                'id', 'alert_type', 'message', 'value', 'threshold', 'created_at',
            )
        )

    def get_status(self):
        return {
            'running': self.is_running,
            'interval': self.interval(),
            'cpu_samples': len(self._cpu_samples),
            'last_alerts': dict(self._last_alerts),
            'thresholds': {metric: dict(zip(('warning', 'critical'), _thresholds(metric))) for metric in METRICS},
        }


def get_system_health(monitor, registry):
    stats = monitor.get_current_stats()
    usage = count_by_tier(registry.tiers())
    limits = get_tier_limits()
    return {
        'resources': stats,
        'jobs': {'by_tier': usage, 'total': sum(usage.values())},
        'limits': limits,
        'capacity': {
            tier: {'current': usage[tier], 'max': limits[tier], 'available': usage[tier] < limits[tier]}
            for tier in limits
        },
        'overall_health': stats['overall_health'],
    }


class ProcessWatchdog(BackgroundLoop):
    """Terminates encoders that run too long or grow too large."""

    name = "ProcessWatchdog"

    def __init__(self, registry):
        super().__init__()
        self.registry = registry

    def interval(self):
        return get_transcoding_setting("watchdog_interval")

    def run_once(self):
        max_minutes = get_transcoding_setting("watchdog_max_runtime_minutes")
        max_mb = get_transcoding_setting("watchdog_max_memory_mb")
        now = time.time()
        killed = []

        for entry in self.registry.snapshot():
            if entry.pid is None:
                continue
            try:
                rss = psutil.Process(entry.pid).memory_info().rss
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

            runtime = now - entry.started_at
            reason = None
            if runtime > max_minutes * 60:
                reason = f"runtime {runtime / 60:.0f} min exceeds {max_minutes} min"
            elif rss > max_mb * 1024 * 1024:
                reason = f"memory {rss / (1024 * 1024):.0f} MB exceeds {max_mb} MB"
            if reason is None:
                continue

            logger.warning(f"Watchdog terminating encoder for channel {entry.channel_id} (PID {entry.pid}): {reason}")
            entry.handler.terminate(get_transcoding_setting("stop_timeout"))
            log_action(
                ActionType.WATCHDOG_KILL,
                f"Watchdog terminated encoder for channel {entry.channel_id}: {reason}",
                channel=Channel.objects.filter(id=entry.channel_id).first(),
                pid=entry.pid,
                reason=reason,
                runtime_seconds=int(runtime),
                rss_bytes=rss,
            )
            killed.append({'channel_id': entry.channel_id, 'pid': entry.pid, 'reason': reason})

        return killed
