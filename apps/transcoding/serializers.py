"""
Transcoding Serializers
"""

from rest_framework import serializers

from .models import ActionLog, ProfileMigration, TranscodingJob


class TranscodingJobSerializer(serializers.ModelSerializer):
    channel_name = serializers.CharField(source='channel.name', read_only=True)
    profile_name = serializers.CharField(source='profile.name', read_only=True, default=None)

    class Meta:
        model = TranscodingJob
        fields = [
            'id',
            'channel',
            'channel_name',
            'profile',
            'profile_name',
            'status',
            'ffmpeg_pid',
            'output_path',
            'error_message',
            'error_count',
            'is_retry',
            'created_at',
            'updated_at',
        ]


class ProfileMigrationSerializer(serializers.ModelSerializer):
    class Meta:
        model = ProfileMigration
        fields = '__all__'


class ActionLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = ActionLog
        fields = ['id', 'action_type', 'description', 'channel', 'additional_data', 'created_at']


class ChannelIdsSerializer(serializers.Serializer):
    channel_ids = serializers.ListField(child=serializers.IntegerField(min_value=1), allow_empty=False)

    def validate_channel_ids(self, value):
        # Keep the caller's order, drop repeats
        return list(dict.fromkeys(value))


class BulkStartSerializer(ChannelIdsSerializer):
    stagger_delay_ms = serializers.IntegerField(min_value=0, max_value=60000, required=False, allow_null=True)


class ProfileMigrateSerializer(serializers.Serializer):
    profile_id = serializers.IntegerField(min_value=1)


class MarkOfflineSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=False, default="Manually marked offline")


class HoursQuerySerializer(serializers.Serializer):
    hours = serializers.IntegerField(min_value=1, max_value=24 * 30, required=False)
