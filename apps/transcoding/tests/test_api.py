from unittest.mock import MagicMock, patch

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient

from apps.channels.models import Channel
from apps.transcoding.api_views import status_for_error
from apps.transcoding.bulk import BulkOperations, ProfileMigrationService
from apps.transcoding.engine import TranscodingEngine
from apps.transcoding.exceptions import (
    ChannelNotFound,
    EngineUnavailable,
    InvalidChannelState,
    MigrationInProgress,
    ResourceExhausted,
    SpawnFailure,
)
from apps.transcoding.models import ActionLog, TranscodingJob
from apps.transcoding.tests.helpers import EngineTestMixin, FakeHandler, InlineExecutor, make_channel, make_profile

User = get_user_model()
Status = Channel.TranscodingStatus


class StatusMappingTests(TestCase):
    def test_engine_errors_map_to_http_statuses(self):
        self.assertEqual(status_for_error(ResourceExhausted("high", 15, 15)), 429)
        self.assertEqual(status_for_error(ChannelNotFound("x")), 404)
        self.assertEqual(status_for_error(InvalidChannelState("x")), 400)
        self.assertEqual(status_for_error(MigrationInProgress("x")), 409)
        self.assertEqual(status_for_error(SpawnFailure("x")), 500)
        self.assertEqual(status_for_error(EngineUnavailable("x")), 503)


class TranscodingAPITests(EngineTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.user = User.objects.create_user(username="operator", password="secret")
        self.client = APIClient()
        self.client.force_authenticate(user=self.user)

        self.engine = MagicMock(spec=TranscodingEngine)
        self.engine.is_started = True
        self.engine.registry = self.registry
        self.engine.supervisor = self.supervisor
        self.engine.fallback = self.fallback
        self.engine.bulk = BulkOperations(self.supervisor)
        self.engine.bulk._sleep = MagicMock()
        self.engine.migrations = ProfileMigrationService(self.supervisor)
        self.engine.migrations._sleep = MagicMock()
        self.engine.resource_monitor = MagicMock()
        self.engine.health_monitor = MagicMock()
        self.engine.cleanup = MagicMock()

        engine_patch = patch.object(TranscodingEngine, 'get_instance', return_value=self.engine)
        engine_patch.start()
        self.addCleanup(engine_patch.stop)

        self.profile = make_profile("HD", "high", is_default=True)
        self.channel = make_channel("News", profile=self.profile)

    def _action_url(self, action, channel_id=None):
        return reverse('transcoding_api:channel_action', args=[channel_id or self.channel.id, action])

    def test_requires_authentication(self):
        response = APIClient().post(self._action_url('start'))
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))
        self.assertNotIn(self.channel.id, self.registry)

    def test_engine_not_running_in_this_process(self):
        """A process without the running engine refuses commands instead of spawning encoders."""
        self.engine.is_started = False

        response = self.client.post(self._action_url('start'))

        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertNotIn(self.channel.id, self.registry)
        self.assertFalse(TranscodingJob.objects.exists())
        # Database-backed reads still work
        self.assertEqual(self.client.get(reverse('transcoding_api:actions')).status_code, status.HTTP_200_OK)

    def test_start_returns_job(self):
        """Starting a channel returns the job record."""
        response = self.client.post(self._action_url('start'))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['channel'], self.channel.id)
        self.assertEqual(response.data['status'], 'running')
        self.assertEqual(response.data['profile_name'], "HD")
        self.assertIn(self.channel.id, self.registry)

    def test_stop(self):
        self.supervisor.start(self.channel.id)
        response = self.client.post(self._action_url('stop'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data, {'channel_id': self.channel.id, 'stopped': True})

    def test_restart_and_toggle(self):
        self.supervisor.start(self.channel.id)
        response = self.client.post(self._action_url('restart'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(TranscodingJob.objects.filter(channel=self.channel).count(), 2)

        response = self.client.post(self._action_url('toggle'))
        self.assertEqual(response.data['action'], 'stopped')
        self.channel.refresh_from_db()
        self.assertFalse(self.channel.transcoding_enabled)

    def test_invalid_action(self):
        response = self.client.post(self._action_url('pause'))
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("Invalid action", response.data['error'])

    def test_unknown_channel_is_404(self):
        response = self.client.post(self._action_url('start', channel_id=999999))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertIn("error", response.data)

    def test_capacity_is_429_with_details(self):
        """A full tier answers 429 with the tier, usage and limit."""
        with self.settings(TRANSCODING={'hls_output_base': self.output_root, 'max_concurrent_high': 0}):
            response = self.client.post(self._action_url('start'))

        self.assertEqual(response.status_code, status.HTTP_429_TOO_MANY_REQUESTS)
        self.assertEqual(response.data['profile_type'], 'high')
        self.assertEqual(response.data['current'], 0)
        self.assertEqual(response.data['max'], 0)

    def test_spawn_failure_is_500(self):
        FakeHandler.fail_with = OSError("ffmpeg missing")
        response = self.client.post(self._action_url('start'))
        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.channel.refresh_from_db()
        self.assertEqual(self.channel.transcoding_status, Status.FAILED)

    def test_bulk_start(self):
        other = make_channel("Sports", profile=self.profile)
        response = self.client.post(
            reverse('transcoding_api:bulk_start'),
            {'channel_ids': [self.channel.id, other.id, self.channel.id], 'stagger_delay_ms': 0},
            format='json',
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([r['channel_id'] for r in response.data['results']], [self.channel.id, other.id])
        self.engine.bulk._sleep.assert_not_called()

    def test_bulk_start_validates_payload(self):
        response = self.client.post(reverse('transcoding_api:bulk_start'), {'channel_ids': []}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    @patch('apps.transcoding.bulk.ThreadPoolExecutor', InlineExecutor)
    def test_bulk_stop(self):
        self.supervisor.start(self.channel.id)

        response = self.client.post(
            reverse('transcoding_api:bulk_stop'), {'channel_ids': [self.channel.id]}, format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['results'][0]['stopped'], True)

    def test_emergency_stop(self):
        self.supervisor.start(self.channel.id)
        response = self.client.post(reverse('transcoding_api:emergency_stop'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['stopped_count'], 1)
        self.assertEqual(len(self.registry), 0)

    def test_active_jobs(self):
        self.supervisor.start(self.channel.id)
        response = self.client.get(reverse('transcoding_api:active_jobs'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]['channel_name'], "News")
        self.assertIsNotNone(response.data[0]['live'])

    def test_system_health(self):
        self.engine.get_system_health.return_value = {'overall_health': 'healthy'}
        response = self.client.get(reverse('transcoding_api:system_health'))
        self.assertEqual(response.data, {'overall_health': 'healthy'})

    def test_resource_history_hours(self):
        self.engine.resource_monitor.get_history.return_value = []
        response = self.client.get(reverse('transcoding_api:resource_history'), {'hours': 6})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.engine.resource_monitor.get_history.assert_called_once_with(6)

        response = self.client.get(reverse('transcoding_api:resource_history'), {'hours': 'lots'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_resource_alerts_default_window(self):
        self.engine.resource_monitor.get_recent_alerts.return_value = []
        self.client.get(reverse('transcoding_api:resource_alerts'))
        self.engine.resource_monitor.get_recent_alerts.assert_called_once_with(24)

    def test_mark_offline_and_retry(self):
        """An operator can quarantine a channel and bring it back."""
        url = reverse('transcoding_api:mark_offline', args=[self.channel.id])
        response = self.client.post(url, {'reason': "Provider down"}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.channel.refresh_from_db()
        self.assertEqual(self.channel.transcoding_status, Status.OFFLINE_PERMANENT)

        response = self.client.get(reverse('transcoding_api:dead_sources'))
        self.assertEqual([s['channel_id'] for s in response.data], [self.channel.id])

        response = self.client.post(reverse('transcoding_api:dead_source_retry', args=[self.channel.id]))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['success'])
        self.assertIn(self.channel.id, self.registry)

    def test_retry_of_online_channel_is_400(self):
        response = self.client.post(reverse('transcoding_api:dead_source_retry', args=[self.channel.id]))
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_profile_migrate(self):
        new_profile = make_profile("SD", "medium")
        response = self.client.post(
            reverse('transcoding_api:profile_migrate'), {'profile_id': new_profile.id}, format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['total_channels'], 0)

        response = self.client.get(reverse('transcoding_api:profile_migrations'))
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]['status'], 'completed')

    def test_profile_migrate_conflict(self):
        self.engine.migrations._in_progress = True
        response = self.client.post(
            reverse('transcoding_api:profile_migrate'), {'profile_id': self.profile.id}, format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_profile_migrate_unknown_profile(self):
        response = self.client.post(reverse('transcoding_api:profile_migrate'), {'profile_id': 999}, format='json')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_channel_health(self):
        self.engine.health_monitor.get_channel_health.return_value = {'availability_status': 'unknown'}
        self.engine.health_monitor.get_channel_history.return_value = []

        response = self.client.get(reverse('transcoding_api:channel_health', args=[self.channel.id]))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['channel_name'], "News")

        response = self.client.get(reverse('transcoding_api:channel_health', args=[999999]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_channel_health_check(self):
        self.engine.health_monitor.check_channel_now.side_effect = ChannelNotFound("Channel 5 not found")
        response = self.client.post(reverse('transcoding_api:channel_health_check', args=[5]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_job_history_and_action_log(self):
        self.supervisor.start(self.channel.id)
        self.supervisor.stop(self.channel.id)

        response = self.client.get(reverse('transcoding_api:channel_jobs', args=[self.channel.id]))
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]['status'], 'stopped')

        response = self.client.get(reverse('transcoding_api:actions'), {'action_type': 'stopped'})
        self.assertEqual(len(response.data), ActionLog.objects.filter(action_type='stopped').count())
        self.assertTrue(all(a['action_type'] == 'stopped' for a in response.data))

    def test_cleanup_now(self):
        self.engine.cleanup.run_once.return_value = {'items_cleaned': 0}
        response = self.client.post(reverse('transcoding_api:cleanup'))
        self.assertEqual(response.data, {'items_cleaned': 0})
