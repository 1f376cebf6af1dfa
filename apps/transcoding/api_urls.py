from django.urls import path

from .api_views import (
    ActionLogView,
    ActiveJobsView,
    BulkStartView,
    BulkStopView,
    ChannelActionView,
    ChannelHealthCheckView,
    ChannelHealthView,
    ChannelJobHistoryView,
    CleanupNowView,
    DeadSourceListView,
    DeadSourceRetryView,
    EmergencyStopView,
    HealthOverviewView,
    MarkOfflineView,
    ProfileMigrateView,
    ProfileMigrationListView,
    ResourceAlertsView,
    ResourceHistoryView,
    StorageStatsView,
    SystemHealthView,
)

app_name = "transcoding_api"

urlpatterns = [
    path('channels/<int:channel_id>/jobs', ChannelJobHistoryView.as_view(), name='channel_jobs'),
    path('channels/<int:channel_id>/mark-offline', MarkOfflineView.as_view(), name='mark_offline'),
    path('channels/<int:channel_id>/<str:action>', ChannelActionView.as_view(), name='channel_action'),
    path('bulk/start', BulkStartView.as_view(), name='bulk_start'),
    path('bulk/stop', BulkStopView.as_view(), name='bulk_stop'),
    path('emergency-stop', EmergencyStopView.as_view(), name='emergency_stop'),
    path('jobs/active', ActiveJobsView.as_view(), name='active_jobs'),
    path('system/health', SystemHealthView.as_view(), name='system_health'),
    path('system/storage', StorageStatsView.as_view(), name='storage_stats'),
    path('resources/history', ResourceHistoryView.as_view(), name='resource_history'),
    path('resources/alerts', ResourceAlertsView.as_view(), name='resource_alerts'),
    path('dead-sources', DeadSourceListView.as_view(), name='dead_sources'),
    path('dead-sources/<int:channel_id>/retry', DeadSourceRetryView.as_view(), name='dead_source_retry'),
    path('profiles/migrate', ProfileMigrateView.as_view(), name='profile_migrate'),
    path('profiles/migrations', ProfileMigrationListView.as_view(), name='profile_migrations'),
    path('actions', ActionLogView.as_view(), name='actions'),
    path('cleanup', CleanupNowView.as_view(), name='cleanup'),
    path('health/overview', HealthOverviewView.as_view(), name='health_overview'),
    path('health/channels/<int:channel_id>', ChannelHealthView.as_view(), name='channel_health'),
    path('health/channels/<int:channel_id>/check', ChannelHealthCheckView.as_view(), name='channel_health_check'),
]
