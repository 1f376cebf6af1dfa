"""Shared fixtures for transcoding engine tests."""

import shutil
import tempfile
from concurrent.futures import Future
from unittest.mock import MagicMock, patch

from django.test import override_settings

from apps.channels.models import Channel, TranscodingProfile
from apps.transcoding.admission import AdmissionController
from apps.transcoding.config import invalidate_settings_cache
from apps.transcoding.fallback import FallbackController
from apps.transcoding.registry import JobRegistry
from apps.transcoding.supervisor import ProcessSupervisor


class FakeHandler:
    """Stands in for EncoderProcessHandler without spawning anything."""

    next_pid = 4000
    fail_with = None

    def __init__(self, channel_id, job_id, command, on_event):
        self.channel_id = channel_id
        self.job_id = job_id
        self.command = command
        self.on_event = on_event
        self.alive = False
        self.pid = None
        self.terminated = False
        self.killed = False

    def start(self):
        if FakeHandler.fail_with is not None:
            raise FakeHandler.fail_with
        FakeHandler.next_pid += 1
        self.pid = FakeHandler.next_pid
        self.alive = True
        return self.pid

    def is_alive(self):
        return self.alive

    def terminate(self, timeout=None):
        self.terminated = True
        self.alive = False

    def kill(self):
        self.killed = True
        self.alive = False


class InlineExecutor:
    """ThreadPoolExecutor replacement that runs work on the calling thread."""

    def __init__(self, max_workers=None):
        self.max_workers = max_workers

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def map(self, fn, *iterables):
        return [fn(*args) for args in zip(*iterables)]


def make_profile(name, tier, is_default=False, **overrides):
    fields = {
        'video_codec': 'copy' if tier == 'copy' else 'libx264',
        'audio_codec': 'copy' if tier == 'copy' else 'aac',
        'resolution': {'high': '1080p', 'medium': '720p', 'low': '480p'}.get(tier, 'original'),
        'quality_tier': tier,
        'is_default': is_default,
    }
    fields.update(overrides)
    return TranscodingProfile.objects.create(name=name, **fields)


def make_channel(name="Channel", profile=None, enabled=True, **overrides):
    return Channel.objects.create(
        name=name,
        url=overrides.pop('url', f"http://source.example.com/{name.replace(' ', '_')}.m3u8"),
        transcoding_enabled=enabled,
        profile=profile,
        **overrides,
    )


class EngineTestMixin:
    """
    Builds a registry/supervisor/fallback trio on a temporary output root
    with timers and background threads replaced by mocks.
    """

    def setUp(self):
        super().setUp()
        FakeHandler.fail_with = None
        self.output_root = tempfile.mkdtemp(prefix="transcodarr-test-")
        self.addCleanup(shutil.rmtree, self.output_root, ignore_errors=True)

        settings_override = override_settings(TRANSCODING={
            'hls_output_base': self.output_root,
            'hls_base_url': 'http://test.local',
            'ffmpeg_path': 'ffmpeg',
            'ffprobe_path': 'ffprobe',
            'autostart_services': False,
        })
        settings_override.enable()
        self.addCleanup(settings_override.disable)
        invalidate_settings_cache()
        self.addCleanup(invalidate_settings_cache)

        self.timer_patch = patch('apps.transcoding.supervisor.start_timer')
        self.mock_start_timer = self.timer_patch.start()
        self.addCleanup(self.timer_patch.stop)

        self.fallback_timer_patch = patch('apps.transcoding.fallback.start_timer', side_effect=lambda *a, **k: MagicMock())
        self.mock_fallback_timer = self.fallback_timer_patch.start()
        self.addCleanup(self.fallback_timer_patch.stop)

        self.background_patch = patch('apps.transcoding.supervisor.run_in_background')
        self.mock_run_in_background = self.background_patch.start()
        self.addCleanup(self.background_patch.stop)

        self.registry = JobRegistry()
        self.admission = AdmissionController(self.registry)
        self.supervisor = ProcessSupervisor(self.registry, self.admission, handler_factory=FakeHandler)
        self.supervisor._sleep = MagicMock()
        self.fallback = FallbackController(self.supervisor, self.registry)
        self.fallback._sleep = MagicMock()
        self.supervisor.fallback = self.fallback

    def handler_for(self, channel_id):
        return self.registry.get(channel_id).handler
