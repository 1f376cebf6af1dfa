"""
Transcoding Admin Interface

Everything here is written by the engine, so the history tables are
read-only in the admin.
"""

from django.contrib import admin

from .models import (
    ActionLog,
    DeadSourceEvent,
    ProfileMigration,
    ResourceAlert,
    ResourceSnapshot,
    StreamHealthRecord,
    TranscodingJob,
)


class ReadOnlyAdmin(admin.ModelAdmin):
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(TranscodingJob)
class TranscodingJobAdmin(ReadOnlyAdmin):
    list_display = ['id', 'channel', 'profile', 'status', 'ffmpeg_pid', 'error_count', 'is_retry', 'created_at']
    list_filter = ['status', 'is_retry']
    search_fields = ['channel__name', 'error_message']
    raw_id_fields = ['channel']


@admin.register(DeadSourceEvent)
class DeadSourceEventAdmin(ReadOnlyAdmin):
    list_display = ['id', 'channel', 'error_count', 'retry_count', 'cooldown_until', 'resolved_at', 'created_at']
    list_filter = ['resolved_at']
    search_fields = ['channel__name', 'error_patterns']


@admin.register(ProfileMigration)
class ProfileMigrationAdmin(ReadOnlyAdmin):
    list_display = [
        'id',
        'to_profile',
        'status',
        'affected_channels',
        'successful_channels',
        'failed_channels',
        'started_at',
        'completed_at',
    ]
    list_filter = ['status']


@admin.register(ResourceSnapshot)
class ResourceSnapshotAdmin(ReadOnlyAdmin):
    list_display = ['timestamp', 'cpu_usage', 'memory_usage', 'disk_usage', 'overall_health']
    list_filter = ['overall_health']


@admin.register(ResourceAlert)
class ResourceAlertAdmin(ReadOnlyAdmin):
    list_display = ['created_at', 'alert_type', 'value', 'threshold', 'message']
    list_filter = ['alert_type']


@admin.register(StreamHealthRecord)
class StreamHealthRecordAdmin(ReadOnlyAdmin):
    list_display = ['checked_at', 'channel', 'availability_status', 'response_time_ms', 'detection_method']
    list_filter = ['availability_status', 'detection_method']
    search_fields = ['channel__name']


@admin.register(ActionLog)
class ActionLogAdmin(ReadOnlyAdmin):
    list_display = ['created_at', 'action_type', 'channel', 'description']
    list_filter = ['action_type']
    search_fields = ['description', 'channel__name']
