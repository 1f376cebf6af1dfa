"""
Transcoding Celery Tasks

Periodic database maintenance. Encoder supervision itself runs in the
engine process, not in Celery workers.
"""

import logging

from celery import shared_task

from core.utils import acquire_task_lock, release_task_lock
from .retention import prune_finished_jobs, prune_resource_history, prune_stream_health_history

logger = logging.getLogger(__name__)


def _run_locked(task_name, func):
    if not acquire_task_lock(task_name, 'global'):
        logger.info(f"{task_name} is already running, skipping")
        return {'skipped': True}
    try:
        return func()
    except Exception as e:
        logger.error(f"Error in {task_name} task: {e}", exc_info=True)
        return {'error': str(e)}
    finally:
        release_task_lock(task_name, 'global')


@shared_task(name='transcoding.prune_resource_history')
def prune_resource_history_task():
    """Drop resource snapshots and alerts past the history retention. Runs hourly."""
    return _run_locked('prune_resource_history', prune_resource_history)


@shared_task(name='transcoding.prune_stream_health_history')
def prune_stream_health_history_task():
    """Runs daily."""
    return _run_locked(
        'prune_stream_health_history',
        lambda: {'records_deleted': prune_stream_health_history()},
    )


@shared_task(name='transcoding.prune_finished_jobs')
def prune_finished_jobs_task():
    """Runs daily."""
    return _run_locked(
        'prune_finished_jobs',
        lambda: {'jobs_deleted': prune_finished_jobs()},
    )
