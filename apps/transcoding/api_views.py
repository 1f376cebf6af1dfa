import logging

from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.channels.models import Channel
from .engine import TranscodingEngine
from .exceptions import (
    ChannelNotFound,
    EngineUnavailable,
    InvalidChannelState,
    InvalidProfile,
    MigrationInProgress,
    ProfileNotFound,
    ResourceExhausted,
    SpawnFailure,
    TranscodingError,
)
from .models import ActionLog, ProfileMigration, TranscodingJob
from .serializers import (
    ActionLogSerializer,
    BulkStartSerializer,
    ChannelIdsSerializer,
    HoursQuerySerializer,
    MarkOfflineSerializer,
    ProfileMigrateSerializer,
    ProfileMigrationSerializer,
    TranscodingJobSerializer,
)

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100

ERROR_STATUS = (
    (ResourceExhausted, status.HTTP_429_TOO_MANY_REQUESTS),
    ((ChannelNotFound, ProfileNotFound), status.HTTP_404_NOT_FOUND),
    ((InvalidProfile, InvalidChannelState), status.HTTP_400_BAD_REQUEST),
    (MigrationInProgress, status.HTTP_409_CONFLICT),
    (SpawnFailure, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (EngineUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for_error(exc):
    for error_types, code in ERROR_STATUS:
        if isinstance(exc, error_types):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


class EngineAPIView(APIView):
    """Base view: authenticated, with engine errors mapped onto HTTP statuses."""

    permission_classes = [IsAuthenticated]

    @property
    def engine(self):
        """
        The engine that owns the encoders. Processes where it never started
        (prefork workers, management commands) must not spawn their own.
        """
        engine = TranscodingEngine.get_instance()
        if not engine.is_started:
            raise EngineUnavailable("Transcoding engine is not running in this process")
        return engine

    def handle_exception(self, exc):
        if isinstance(exc, TranscodingError):
            code = status_for_error(exc)
            if code >= 500:
                logger.error(f"{self.__class__.__name__} failed: {exc}", exc_info=True)
            else:
                logger.info(f"{self.__class__.__name__} rejected request: {exc}")
            payload = {"error": str(exc)}
            if isinstance(exc, ResourceExhausted):
                payload.update(profile_type=exc.tier, current=exc.current, max=exc.maximum)
            return Response(payload, status=code)
        return super().handle_exception(exc)


class ChannelActionView(EngineAPIView):
    ACTIONS = ("start", "stop", "restart", "toggle")

    def post(self, request, channel_id, action):
        action = action.lower()
        if action not in self.ACTIONS:
            return Response(
                {"error": f"Invalid action: {action}. Must be one of {', '.join(self.ACTIONS)}."},
                status=status.HTTP_400_BAD_REQUEST,
            )

        supervisor = self.engine.supervisor
        logger.info(f"API request to {action.upper()} transcoding for channel {channel_id}")

        if action == "start":
            job = supervisor.start(channel_id)
            return Response(TranscodingJobSerializer(job).data, status=status.HTTP_200_OK)
        if action == "stop":
            return Response(supervisor.stop(channel_id), status=status.HTTP_200_OK)
        if action == "restart":
            job = supervisor.restart(channel_id)
            return Response(TranscodingJobSerializer(job).data, status=status.HTTP_200_OK)
        return Response(supervisor.toggle(channel_id), status=status.HTTP_200_OK)


class BulkStartView(EngineAPIView):
    def post(self, request):
        serializer = BulkStartSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        results = self.engine.bulk.bulk_start(
            serializer.validated_data['channel_ids'],
            serializer.validated_data.get('stagger_delay_ms'),
        )
        return Response({"results": results}, status=status.HTTP_200_OK)


class BulkStopView(EngineAPIView):
    def post(self, request):
        serializer = ChannelIdsSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        results = self.engine.bulk.bulk_stop(serializer.validated_data['channel_ids'])
        return Response({"results": results}, status=status.HTTP_200_OK)


class EmergencyStopView(EngineAPIView):
    def post(self, request):
        logger.warning(f"Emergency stop requested by {request.user}")
        return Response(self.engine.supervisor.emergency_stop_all(), status=status.HTTP_200_OK)


class ActiveJobsView(EngineAPIView):
    def get(self, request):
        return Response(self.engine.supervisor.get_active_jobs())


class SystemHealthView(EngineAPIView):
    def get(self, request):
        return Response(self.engine.get_system_health())


class StorageStatsView(EngineAPIView):
    def get(self, request):
        return Response(self.engine.cleanup.get_storage_stats())


class ResourceHistoryView(EngineAPIView):
    def get(self, request):
        query = HoursQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        return Response(self.engine.resource_monitor.get_history(query.validated_data.get('hours', 1)))


class ResourceAlertsView(EngineAPIView):
    def get(self, request):
        query = HoursQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        return Response(self.engine.resource_monitor.get_recent_alerts(query.validated_data.get('hours', 24)))


class DeadSourceListView(EngineAPIView):
    def get(self, request):
        return Response(self.engine.fallback.list_dead_sources())


class DeadSourceRetryView(EngineAPIView):
    def post(self, request, channel_id):
        return Response(self.engine.fallback.retry_dead_source(channel_id))


class MarkOfflineView(EngineAPIView):
    def post(self, request, channel_id):
        serializer = MarkOfflineSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        return Response(
            self.engine.fallback.mark_permanently_offline(channel_id, serializer.validated_data['reason'])
        )


class ProfileMigrateView(EngineAPIView):
    def post(self, request):
        serializer = ProfileMigrateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = self.engine.migrations.migrate_to_new_default_profile(serializer.validated_data['profile_id'])
        return Response(result, status=status.HTTP_200_OK)


class HealthOverviewView(EngineAPIView):
    def get(self, request):
        return Response(self.engine.health_monitor.get_overview())


class ChannelHealthView(EngineAPIView):
    def get(self, request, channel_id):
        channel = Channel.objects.filter(id=channel_id).first()
        if channel is None:
            raise ChannelNotFound(f"Channel {channel_id} not found")

        monitor = self.engine.health_monitor
        return Response({
            'channel_id': channel.id,
            'channel_name': channel.name,
            'current': monitor.get_channel_health(channel.id),
            'stream_health_status': channel.stream_health_status,
            'uptime_percentage': channel.uptime_percentage,
            'avg_response_time': channel.avg_response_time,
            'last_health_check': channel.last_health_check,
            'history': monitor.get_channel_history(channel.id),
        })


class ChannelHealthCheckView(EngineAPIView):
    def post(self, request, channel_id):
        return Response(self.engine.health_monitor.check_channel_now(channel_id))


class ChannelJobHistoryView(EngineAPIView):
    def get(self, request, channel_id):
        if not Channel.objects.filter(id=channel_id).exists():
            raise ChannelNotFound(f"Channel {channel_id} not found")
        jobs = TranscodingJob.objects.filter(channel_id=channel_id).select_related('channel', 'profile')[:HISTORY_LIMIT]
        return Response(TranscodingJobSerializer(jobs, many=True).data)


class ActionLogView(EngineAPIView):
    def get(self, request):
        actions = ActionLog.objects.all()
        channel_id = request.query_params.get('channel_id')
        if channel_id:
            actions = actions.filter(channel_id=channel_id)
        action_type = request.query_params.get('action_type')
        if action_type:
            actions = actions.filter(action_type=action_type)
        return Response(ActionLogSerializer(actions[:HISTORY_LIMIT], many=True).data)


class ProfileMigrationListView(EngineAPIView):
    def get(self, request):
        migrations = ProfileMigration.objects.select_related('to_profile')[:HISTORY_LIMIT]
        return Response(ProfileMigrationSerializer(migrations, many=True).data)


class CleanupNowView(EngineAPIView):
    def post(self, request):
        return Response(self.engine.cleanup.run_once())
