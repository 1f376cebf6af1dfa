"""
Transcoding Engine Models

Job records, dead-source episodes, monitoring history and the action log.
"""

from django.db import models

from apps.channels.models import Channel, TranscodingProfile
from .constants import JobStatus


class TranscodingJob(models.Model):
    """One record per encoder invocation"""

    STATUS_CHOICES = [
        (JobStatus.STARTING, 'Starting'),
        (JobStatus.RUNNING, 'Running'),
        (JobStatus.COMPLETED, 'Completed'),
        (JobStatus.FAILED, 'Failed'),
        (JobStatus.STOPPED, 'Stopped'),
    ]

    channel = models.ForeignKey(Channel, on_delete=models.CASCADE, related_name='transcoding_jobs')
    profile = models.ForeignKey(
        TranscodingProfile,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='jobs',
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=JobStatus.STARTING)
    ffmpeg_pid = models.IntegerField(null=True, blank=True)
    output_path = models.CharField(max_length=1024)
    ffmpeg_command = models.TextField(blank=True)
    error_message = models.TextField(null=True, blank=True)
    error_count = models.IntegerField(default=0)
    is_retry = models.BooleanField(default=False, help_text="Started with reconnect/timeout robustness flags")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'transcoding_jobs'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['channel', 'status'], name='transcoding_channel_0a1b2c_idx'),
            models.Index(fields=['status', 'created_at'], name='transcoding_status_3d4e5f_idx'),
        ]

    def __str__(self):
        return f"Job {self.id} for channel {self.channel_id} ({self.status})"


class DeadSourceEvent(models.Model):
    """A quarantine episode for a source that failed at the lowest profile tier"""

    channel = models.ForeignKey(Channel, on_delete=models.CASCADE, related_name='dead_source_events')
    error_count = models.IntegerField(default=0)
    error_patterns = models.TextField(blank=True)
    profile_level = models.IntegerField(default=4)
    cooldown_until = models.DateTimeField()
    retry_count = models.IntegerField(default=0)
    resolved_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'dead_source_events'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['channel', '-created_at'], name='dead_source_channel_6a7b8c_idx'),
        ]

    def __str__(self):
        return f"Dead source on channel {self.channel_id} (retry {self.retry_count})"

    @property
    def is_open(self):
        return self.resolved_at is None


class ProfileMigration(models.Model):
    STATUS_CHOICES = [
        ('running', 'Running'),
        ('completed', 'Completed'),
        ('failed', 'Failed'),
    ]

    to_profile = models.ForeignKey(
        TranscodingProfile,
        on_delete=models.SET_NULL,
        null=True,
        related_name='migrations',
    )
    affected_channels = models.IntegerField(default=0)
    successful_channels = models.IntegerField(default=0)
    failed_channels = models.IntegerField(default=0)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='running')
    error_message = models.TextField(null=True, blank=True)
    started_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'profile_migrations'
        ordering = ['-started_at']

    def __str__(self):
        return f"Migration {self.id} to profile {self.to_profile_id} ({self.status})"


class ResourceSnapshot(models.Model):
    """Sampled host health"""

    timestamp = models.DateTimeField(db_index=True)
    cpu_usage = models.FloatField()
    memory_usage = models.FloatField()
    disk_usage = models.FloatField()
    memory_total = models.BigIntegerField(default=0)
    memory_used = models.BigIntegerField(default=0)
    disk_total = models.BigIntegerField(default=0)
    disk_used = models.BigIntegerField(default=0)
    cpu_health = models.CharField(max_length=10)
    memory_health = models.CharField(max_length=10)
    disk_health = models.CharField(max_length=10)
    overall_health = models.CharField(max_length=10)

    class Meta:
        db_table = 'resource_history'
        ordering = ['timestamp']

    def __str__(self):
        return f"{self.timestamp:%Y-%m-%d %H:%M:%S} {self.overall_health}"


class ResourceAlert(models.Model):
    alert_type = models.CharField(max_length=50, db_index=True)
    message = models.TextField()
    value = models.FloatField()
    threshold = models.FloatField()
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        db_table = 'resource_alerts'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.alert_type}: {self.message}"


class StreamHealthRecord(models.Model):
    """Result of one source availability probe"""

    AVAILABILITY_CHOICES = [
        ('available', 'Available'),
        ('unavailable', 'Unavailable'),
        ('timeout', 'Timeout'),
        ('error', 'Error'),
    ]

    channel = models.ForeignKey(Channel, on_delete=models.CASCADE, related_name='health_records')
    checked_at = models.DateTimeField(db_index=True)
    availability_status = models.CharField(max_length=20, choices=AVAILABILITY_CHOICES)
    response_time_ms = models.IntegerField(null=True, blank=True)
    http_status_code = models.IntegerField(null=True, blank=True)
    error_message = models.TextField(null=True, blank=True)
    detection_method = models.CharField(max_length=20, default='http_head')
    additional_data = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = 'stream_health_history'
        ordering = ['-checked_at']
        indexes = [
            models.Index(fields=['channel', '-checked_at'], name='stream_heal_channel_9d0e1f_idx'),
        ]

    def __str__(self):
        return f"Channel {self.channel_id} {self.availability_status} @ {self.checked_at}"


class ActionLog(models.Model):
    """Append-only audit trail of engine state transitions"""

    action_type = models.CharField(max_length=50, db_index=True)
    description = models.TextField()
    channel = models.ForeignKey(
        Channel,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='transcoding_actions',
    )
    additional_data = models.JSONField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        db_table = 'transcoding_actions'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.action_type}: {self.description}"
