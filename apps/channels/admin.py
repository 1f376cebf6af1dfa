from django.contrib import admin

from .models import Channel, TranscodingProfile


@admin.register(TranscodingProfile)
class TranscodingProfileAdmin(admin.ModelAdmin):
    list_display = (
        "name",
        "quality_tier",
        "video_codec",
        "resolution",
        "video_bitrate",
        "is_default",
    )
    list_filter = ("quality_tier", "is_default")
    search_fields = ("name",)
    readonly_fields = ("created_at", "updated_at")


@admin.register(Channel)
class ChannelAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "name",
        "transcoding_enabled",
        "transcoding_status",
        "stream_health_status",
        "uptime_percentage",
        "profile",
    )
    list_filter = ("transcoding_enabled", "transcoding_status", "stream_health_status")
    search_fields = ("name", "url")
    readonly_fields = (
        "transcoding_status",
        "transcoded_url",
        "last_transcoding_state",
        "offline_reason",
        "dead_source_count",
        "last_dead_source_event",
        "stream_health_status",
        "last_health_check",
        "avg_response_time",
        "uptime_percentage",
    )
