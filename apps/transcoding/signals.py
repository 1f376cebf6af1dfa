import logging

from django.db.models.signals import post_delete, post_migrate
from django.dispatch import receiver
from django_celery_beat.models import IntervalSchedule, PeriodicTask

from apps.channels.models import Channel

logger = logging.getLogger(__name__)

# (periodic task name, celery task, every, period)
MAINTENANCE_TASKS = (
    ("transcoding-prune-resource-history", "transcoding.prune_resource_history", 1, IntervalSchedule.HOURS),
    ("transcoding-prune-stream-health-history", "transcoding.prune_stream_health_history", 1, IntervalSchedule.DAYS),
    ("transcoding-prune-finished-jobs", "transcoding.prune_finished_jobs", 1, IntervalSchedule.DAYS),
)


def register_maintenance_tasks():
    for name, task, every, period in MAINTENANCE_TASKS:
        interval, _ = IntervalSchedule.objects.get_or_create(every=every, period=period)
        periodic, created = PeriodicTask.objects.get_or_create(
            name=name,
            defaults={'interval': interval, 'task': task, 'enabled': True},
        )
        if created:
            logger.info(f"Registered periodic task {name}")
            continue

        updated_fields = []
        if periodic.interval_id != interval.id:
            periodic.interval = interval
            updated_fields.append("interval")
        if periodic.task != task:
            periodic.task = task
            updated_fields.append("task")
        if updated_fields:
            periodic.save(update_fields=updated_fields)


@receiver(post_migrate)
def create_maintenance_tasks(sender, **kwargs):
    if getattr(sender, 'label', None) != 'transcoding':
        return
    try:
        register_maintenance_tasks()
    except Exception as e:
        logger.warning(f"Could not register transcoding maintenance tasks: {e}")


@receiver(post_delete, sender=Channel)
def stop_encoder_on_channel_delete(sender, instance, **kwargs):
    from .engine import TranscodingEngine

    engine = TranscodingEngine._instance
    if engine is None:
        return
    try:
        engine.supervisor.discard(instance.id)
    except Exception as e:
        logger.error(f"Error discarding encoder for deleted channel {instance.id}: {e}", exc_info=True)
