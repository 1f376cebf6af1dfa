"""
Channel catalog models.

The transcoding engine reads identity, source URL and profile from these
records and writes back only status and stream-health fields.
"""

import re

from django.db import models, transaction

RESOLUTION_HEIGHTS = {
    "1080p": 1080,
    "720p": 720,
    "480p": 480,
}


class QualityTier(models.TextChoices):
    HIGH = "high", "High quality"
    MEDIUM = "medium", "Medium quality (<=720p)"
    LOW = "low", "Low quality (<=480p)"
    COPY = "copy", "Pass-through copy"


def classify_quality_tier(video_codec, resolution):
    """Bucket a codec/resolution pair into a quality tier."""
    if (video_codec or "").strip().lower() == "copy":
        return QualityTier.COPY

    resolution = (resolution or "original").strip().lower()
    height = RESOLUTION_HEIGHTS.get(resolution)
    if height is None:
        match = re.fullmatch(r"(\d+)x(\d+)", resolution)
        if match:
            height = int(match.group(2))

    if height is None:
        return QualityTier.HIGH
    if height <= 480:
        return QualityTier.LOW
    if height <= 720:
        return QualityTier.MEDIUM
    return QualityTier.HIGH


class TranscodingProfile(models.Model):
    """Named bundle of encoder parameters."""

    name = models.CharField(max_length=255, unique=True)
    description = models.TextField(blank=True)

    # Video
    video_codec = models.CharField(max_length=50, default="libx264")
    video_bitrate = models.CharField(
        max_length=20,
        default="2000k",
        help_text="Target video bitrate, e.g. 2000k, or 'original' to leave unset",
    )
    resolution = models.CharField(
        max_length=20,
        default="original",
        help_text="original, 1080p, 720p, 480p or WIDTHxHEIGHT",
    )
    preset = models.CharField(max_length=20, default="veryfast")
    tune = models.CharField(max_length=20, blank=True)
    gop_size = models.IntegerField(default=50)
    keyint_min = models.IntegerField(default=50)

    # Audio
    audio_codec = models.CharField(max_length=50, default="aac")
    audio_bitrate = models.CharField(max_length=20, default="128k")

    # HLS
    hls_time = models.IntegerField(default=4, help_text="Target segment duration in seconds")
    hls_list_size = models.IntegerField(default=6, help_text="Number of segments in the live playlist")
    hls_flags = models.CharField(max_length=255, blank=True)
    manifest_filename = models.CharField(max_length=100, default="output.m3u8")
    hls_segment_filename = models.CharField(max_length=100, default="output_%d.ts")
    additional_params = models.TextField(
        blank=True,
        help_text="Extra encoder arguments inserted before the output path",
    )

    quality_tier = models.CharField(
        max_length=10,
        choices=QualityTier.choices,
        blank=True,
        help_text="Concurrency tier; assigned from codec/resolution when the profile is created",
    )
    is_default = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "transcoding_profiles"
        verbose_name = "Transcoding Profile"
        verbose_name_plural = "Transcoding Profiles"
        ordering = ["name"]

    def __str__(self):
        return f"{self.name} ({self.quality_tier})"

    @property
    def is_copy(self):
        return self.quality_tier == QualityTier.COPY

    def save(self, *args, **kwargs):
        if not self.quality_tier:
            self.quality_tier = classify_quality_tier(self.video_codec, self.resolution)
        with transaction.atomic():
            if self.is_default:
                TranscodingProfile.objects.filter(is_default=True).exclude(pk=self.pk).update(is_default=False)
            super().save(*args, **kwargs)

    @classmethod
    def get_default(cls):
        return cls.objects.filter(is_default=True).first()


class Channel(models.Model):
    class TranscodingStatus(models.TextChoices):
        INACTIVE = "inactive", "Inactive"
        STARTING = "starting", "Starting"
        ACTIVE = "active", "Active"
        STOPPING = "stopping", "Stopping"
        FAILED = "failed", "Failed"
        OFFLINE_TEMPORARY = "offline_temporary", "Offline (temporary)"
        OFFLINE_PERMANENT = "offline_permanent", "Offline (permanent)"

    name = models.CharField(max_length=255)
    url = models.CharField(max_length=2048, help_text="Source stream URL")
    transcoding_enabled = models.BooleanField(default=False)
    profile = models.ForeignKey(
        TranscodingProfile,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="channels",
    )

    # Written by the transcoding engine
    transcoding_status = models.CharField(
        max_length=20,
        choices=TranscodingStatus.choices,
        default=TranscodingStatus.INACTIVE,
        db_index=True,
    )
    transcoded_url = models.CharField(max_length=2048, null=True, blank=True)
    last_transcoding_state = models.CharField(
        max_length=20,
        choices=TranscodingStatus.choices,
        default=TranscodingStatus.INACTIVE,
        help_text="Last stable state, used to resume channels after a restart",
    )
    offline_reason = models.TextField(null=True, blank=True)
    dead_source_count = models.IntegerField(default=0)
    last_dead_source_event = models.DateTimeField(null=True, blank=True)

    # Written by the stream health monitor
    stream_health_status = models.CharField(max_length=20, default="unknown")
    last_health_check = models.DateTimeField(null=True, blank=True)
    avg_response_time = models.IntegerField(default=0, help_text="Milliseconds")
    uptime_percentage = models.FloatField(default=0.0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "channels"
        ordering = ["id"]

    def __str__(self):
        return self.name
