import subprocess
import time
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import psutil
import requests
from django.test import TestCase
from django.utils import timezone

from apps.transcoding.config import invalidate_settings_cache
from apps.transcoding.models import ActionLog, ResourceAlert, ResourceSnapshot, StreamHealthRecord
from apps.transcoding.registry import JobEntry, JobRegistry
from apps.transcoding.resource_monitor import ProcessWatchdog, ResourceMonitor, get_system_health
from apps.transcoding.stream_health import StreamHealthMonitor
from apps.transcoding.tests.helpers import make_channel


def _stats(cpu=10.0, memory=20.0, disk=30.0):
    return {
        'timestamp': timezone.now(),
        'cpu': {'usage': cpu, 'health': 'healthy'},
        'memory': {'usage': memory, 'health': 'healthy', 'total': 100, 'used': 20},
        'disk': {'usage': disk, 'health': 'healthy', 'total': 1000, 'used': 300},
        'overall_health': 'healthy',
    }


@patch('apps.transcoding.resource_monitor.psutil')
class ResourceMonitorTests(TestCase):
    def setUp(self):
        invalidate_settings_cache()

    def _configure(self, mock_psutil, cpu=10.0, memory=20.0, disk=30.0):
        mock_psutil.cpu_percent.return_value = cpu
        mock_psutil.cpu_count.return_value = 4
        mock_psutil.virtual_memory.return_value = SimpleNamespace(
            percent=memory, total=8 * 1024 ** 3, used=2 * 1024 ** 3, available=6 * 1024 ** 3
        )
        mock_psutil.swap_memory.return_value = SimpleNamespace(total=0, used=0, percent=0.0)
        mock_psutil.disk_usage.return_value = SimpleNamespace(
            percent=disk, total=100 * 1024 ** 3, used=30 * 1024 ** 3, free=70 * 1024 ** 3
        )

    def test_cpu_is_averaged_over_samples(self, mock_psutil):
        """CPU usage is the mean of the last five samples."""
        monitor = ResourceMonitor()
        mock_psutil.cpu_percent.side_effect = [10, 20, 30, 40, 50, 60]
        results = [monitor.sample_cpu() for _ in range(6)]
        self.assertEqual(results[0], 10)
        self.assertEqual(results[4], 30)
        self.assertEqual(results[5], 40)
        mock_psutil.cpu_percent.assert_called_with(interval=0.5)

    def test_process_scope_reads_engine_and_encoders(self, mock_psutil):
        """The process scope sums this process and its encoder children over all cores."""
        engine, encoder, audio_encoder, vanished = MagicMock(), MagicMock(), MagicMock(), MagicMock()
        engine.cpu_percent.return_value = 20.0
        encoder.cpu_percent.return_value = 150.0
        audio_encoder.cpu_percent.return_value = 30.0
        vanished.cpu_percent.side_effect = [0.0, psutil.NoSuchProcess(99)]
        engine.children.return_value = [encoder, audio_encoder, vanished]
        mock_psutil.Process.return_value = engine
        mock_psutil.cpu_count.return_value = 4
        mock_psutil.Error = psutil.Error

        with self.settings(TRANSCODING={'cpu_scope': 'process'}):
            monitor = ResourceMonitor()
            monitor._sleep = MagicMock()
            self.assertEqual(monitor.sample_cpu(), 50.0)

        monitor._sleep.assert_called_once_with(0.5)
        engine.children.assert_called_once_with(recursive=True)
        mock_psutil.cpu_percent.assert_not_called()

    def test_collect_classifies_each_metric(self, mock_psutil):
        self._configure(mock_psutil, cpu=72.0, memory=95.0, disk=10.0)
        stats = ResourceMonitor().collect()
        self.assertEqual(stats['cpu']['health'], 'warning')
        self.assertEqual(stats['memory']['health'], 'critical')
        self.assertEqual(stats['disk']['health'], 'healthy')
        self.assertEqual(stats['overall_health'], 'critical')

    def test_alert_respects_cooldown(self, mock_psutil):
        """The same alert type is raised at most once per cooldown."""
        self._configure(mock_psutil, cpu=90.0)
        monitor = ResourceMonitor(rng=lambda: 1.0)
        clock = iter([1000.0, 1100.0, 1301.0])
        monitor._clock = lambda: next(clock)

        monitor.run_once()
        monitor.run_once()
        self.assertEqual(ResourceAlert.objects.filter(alert_type='cpu_critical').count(), 1)

        monitor.run_once()
        self.assertEqual(ResourceAlert.objects.filter(alert_type='cpu_critical').count(), 2)
        alert = ResourceAlert.objects.first()
        self.assertEqual(alert.threshold, 85)
        self.assertEqual(ActionLog.objects.filter(action_type='resource_alert').count(), 2)

    def test_healthy_stats_raise_nothing(self, mock_psutil):
        self._configure(mock_psutil)
        monitor = ResourceMonitor(rng=lambda: 1.0)
        monitor.run_once()
        self.assertFalse(ResourceAlert.objects.exists())

    def test_history_is_sampled(self, mock_psutil):
        """A snapshot is stored only when the sampler draws below the probability."""
        self._configure(mock_psutil)
        ResourceMonitor(rng=lambda: 0.5).run_once()
        self.assertFalse(ResourceSnapshot.objects.exists())
        ResourceMonitor(rng=lambda: 0.1).run_once()
        self.assertEqual(ResourceSnapshot.objects.count(), 1)

    def test_history_window(self, mock_psutil):
        monitor = ResourceMonitor()
        ResourceMonitor.record_snapshot(_stats())
        old = ResourceMonitor.record_snapshot(_stats())
        ResourceSnapshot.objects.filter(id=old.id).update(timestamp=timezone.now() - timedelta(hours=3))

        self.assertEqual(len(monitor.get_history(hours=1)), 1)
        self.assertEqual(len(monitor.get_history(hours=6)), 2)

    def test_system_health_reports_capacity(self, mock_psutil):
        self._configure(mock_psutil)
        registry = JobRegistry()
        registry.add(JobEntry(channel_id=1, job_id=1, profile_id=1, tier='copy', handler=MagicMock(), output_dir='/x'))

        health = get_system_health(ResourceMonitor(), registry)

        self.assertEqual(health['jobs']['by_tier']['copy'], 1)
        self.assertEqual(health['jobs']['total'], 1)
        self.assertEqual(health['capacity']['copy'], {'current': 1, 'max': 45, 'available': True})
        self.assertEqual(health['overall_health'], 'healthy')


class ProcessWatchdogTests(TestCase):
    def setUp(self):
        invalidate_settings_cache()
        self.registry = JobRegistry()
        self.channel = make_channel("Watched")

    def _entry(self, started_at):
        handler = MagicMock(pid=4242)
        entry = JobEntry(
            channel_id=self.channel.id, job_id=1, profile_id=None, tier='high',
            handler=handler, output_dir='/x', started_at=started_at,
        )
        self.registry.add(entry)
        return entry

    @patch('apps.transcoding.resource_monitor.psutil.Process')
    def test_terminates_oversized_encoder(self, mock_process):
        """An encoder above the memory ceiling is terminated and logged."""
        entry = self._entry(time.time())
        mock_process.return_value.memory_info.return_value = SimpleNamespace(rss=600 * 1024 * 1024)

        killed = ProcessWatchdog(self.registry).run_once()

        self.assertEqual(len(killed), 1)
        self.assertIn("memory", killed[0]['reason'])
        entry.handler.terminate.assert_called_once()
        self.assertTrue(ActionLog.objects.filter(action_type='watchdog_kill', channel=self.channel).exists())

    @patch('apps.transcoding.resource_monitor.psutil.Process')
    def test_terminates_long_running_encoder(self, mock_process):
        entry = self._entry(time.time() - 25 * 3600)
        mock_process.return_value.memory_info.return_value = SimpleNamespace(rss=10 * 1024 * 1024)

        killed = ProcessWatchdog(self.registry).run_once()

        self.assertIn("runtime", killed[0]['reason'])
        entry.handler.terminate.assert_called_once()

    @patch('apps.transcoding.resource_monitor.psutil.Process', side_effect=psutil.NoSuchProcess(4242))
    def test_vanished_process_is_skipped(self, mock_process):
        entry = self._entry(time.time() - 25 * 3600)
        self.assertEqual(ProcessWatchdog(self.registry).run_once(), [])
        entry.handler.terminate.assert_not_called()


class StreamHealthTests(TestCase):
    def setUp(self):
        invalidate_settings_cache()
        self.monitor = StreamHealthMonitor()
        self.channel = make_channel("Probe Me")

    @patch('apps.transcoding.stream_health.requests.head')
    def test_head_success(self, mock_head):
        mock_head.return_value = MagicMock(status_code=200, headers={'content-type': 'application/vnd.apple.mpegurl'})
        result = self.monitor.probe(self.channel.url)
        self.assertEqual(result['availability_status'], 'available')
        self.assertEqual(result['detection_method'], 'http_head')
        self.assertEqual(result['http_status_code'], 200)

    @patch('apps.transcoding.stream_health.subprocess.run')
    @patch('apps.transcoding.stream_health.requests.head')
    def test_ffprobe_used_when_head_fails(self, mock_head, mock_run):
        """Sources that reject HEAD are probed with ffprobe."""
        mock_head.side_effect = requests.exceptions.ConnectionError("refused")
        mock_run.return_value = MagicMock(
            returncode=0,
            stdout='{"streams": [{"codec_type": "video"}, {"codec_type": "audio"}]}',
            stderr='',
        )

        result = self.monitor.probe(self.channel.url)

        self.assertEqual(result['availability_status'], 'available')
        self.assertEqual(result['detection_method'], 'ffprobe')
        self.assertTrue(result['additional_data']['has_video'])
        self.assertEqual(mock_run.call_args[1]['timeout'], 15)

    @patch('apps.transcoding.stream_health.subprocess.run', side_effect=subprocess.TimeoutExpired('ffprobe', 15))
    @patch('apps.transcoding.stream_health.requests.head', side_effect=requests.exceptions.Timeout())
    def test_timeout_is_reported(self, mock_head, mock_run):
        result = self.monitor.probe(self.channel.url)
        self.assertEqual(result['availability_status'], 'timeout')

    def test_uptime_over_window(self):
        """Eight available checks out of ten give 80% uptime on the channel."""
        now = timezone.now()
        for i in range(9):
            StreamHealthRecord.objects.create(
                channel=self.channel,
                checked_at=now - timedelta(minutes=10 * (i + 1)),
                availability_status='available' if i < 7 else 'unavailable',
                response_time_ms=100,
            )
        # Outside the 24h window
        StreamHealthRecord.objects.create(
            channel=self.channel,
            checked_at=now - timedelta(hours=30),
            availability_status='unavailable',
        )

        summary = self.monitor.record_result(
            self.channel,
            {'availability_status': 'available', 'response_time_ms': 200, 'detection_method': 'http_head'},
            checked_at=now,
        )

        self.assertEqual(summary['uptime_percentage'], 80.0)
        self.channel.refresh_from_db()
        self.assertEqual(self.channel.uptime_percentage, 80.0)
        self.assertEqual(self.channel.stream_health_status, 'available')
        self.assertEqual(self.channel.avg_response_time, 110)
        self.assertEqual(self.monitor.get_channel_health(self.channel.id)['availability_status'], 'available')

    @patch.object(StreamHealthMonitor, 'probe')
    def test_check_channel_now(self, mock_probe):
        mock_probe.return_value = {
            'availability_status': 'unavailable',
            'http_status_code': 503,
            'error_message': 'HTTP 503',
            'detection_method': 'ffprobe',
            'response_time_ms': 50,
            'additional_data': {},
        }
        result = self.monitor.check_channel_now(self.channel.id)
        self.assertEqual(result['availability_status'], 'unavailable')
        self.assertEqual(len(self.monitor.get_channel_history(self.channel.id)), 1)

    def test_unchecked_channel_reports_unknown(self):
        self.assertEqual(self.monitor.get_channel_health(self.channel.id)['availability_status'], 'unknown')

    def test_overview_counts(self):
        make_channel("Disabled", enabled=False)
        overview = self.monitor.get_overview()
        self.assertEqual(overview['total_channels'], 1)
        self.assertEqual(overview['unchecked'], 1)
        self.assertFalse(overview['monitoring'])
