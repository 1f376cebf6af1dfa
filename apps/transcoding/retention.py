"""Database retention for engine history tables."""

import logging
from datetime import timedelta

from django.utils import timezone

from .config import get_transcoding_setting
from .constants import JobStatus
from .models import ResourceAlert, ResourceSnapshot, StreamHealthRecord, TranscodingJob

logger = logging.getLogger(__name__)


def prune_finished_jobs(retention_days=None):
    days = retention_days if retention_days is not None else get_transcoding_setting("finished_job_retention_days")
    cutoff = timezone.now() - timedelta(days=days)
    deleted, _ = TranscodingJob.objects.filter(status__in=JobStatus.FINISHED, updated_at__lt=cutoff).delete()
    if deleted:
        logger.info(f"Deleted {deleted} finished transcoding jobs older than {days} days")
    return deleted


def prune_resource_history(retention_hours=None):
    hours = retention_hours if retention_hours is not None else get_transcoding_setting("history_retention_hours")
    cutoff = timezone.now() - timedelta(hours=hours)
    snapshots, _ = ResourceSnapshot.objects.filter(timestamp__lt=cutoff).delete()
    alerts, _ = ResourceAlert.objects.filter(created_at__lt=cutoff).delete()
    logger.debug(f"Pruned {snapshots} resource snapshots and {alerts} alerts older than {hours}h")
    return {'snapshots_deleted': snapshots, 'alerts_deleted': alerts}


def prune_stream_health_history(retention_days=None):
    days = retention_days if retention_days is not None else get_transcoding_setting("health_history_retention_days")
    cutoff = timezone.now() - timedelta(days=days)
    deleted, _ = StreamHealthRecord.objects.filter(checked_at__lt=cutoff).delete()
    if deleted:
        logger.info(f"Deleted {deleted} stream health records older than {days} days")
    return deleted
