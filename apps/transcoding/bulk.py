"""
Bulk channel operations and default-profile migration.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from django.db import transaction
from django.utils import timezone

from apps.channels.models import Channel, TranscodingProfile
from .audit import log_action
from .config import get_transcoding_setting
from .constants import ActionType
from .exceptions import MigrationInProgress, ProfileNotFound, TranscodingError
from .models import ProfileMigration
from .policy import make_batches, stagger_offsets
from .utils import close_thread_connection

logger = logging.getLogger(__name__)

Status = Channel.TranscodingStatus

BULK_STOP_WORKERS = 16


class BulkOperations:
    def __init__(self, supervisor):
        self.supervisor = supervisor
        self._sleep = time.sleep

    def bulk_start(self, channel_ids, stagger_delay_ms=None):
        """Start channels one after another, ``stagger_delay_ms`` apart."""
        if stagger_delay_ms is None:
            stagger_delay_ms = get_transcoding_setting("bulk_operation_stagger")

        channels = Channel.objects.in_bulk(channel_ids)
        results = []
        for i, channel_id in enumerate(channel_ids):
            channel = channels.get(channel_id)
            if channel is None:
                results.append({'channel_id': channel_id, 'success': False, 'error': "Channel not found"})
                continue
            if not channel.transcoding_enabled:
                results.append({'channel_id': channel_id, 'success': False, 'error': "Transcoding not enabled"})
                continue

            try:
                job = self.supervisor.start(channel_id)
                results.append({'channel_id': channel_id, 'success': True, 'job_id': job.id})
            except TranscodingError as e:
                logger.error(f"Bulk start failed for channel {channel_id}: {e}")
                results.append({'channel_id': channel_id, 'success': False, 'error': str(e)})
                continue

            if i < len(channel_ids) - 1 and stagger_delay_ms:
                self._sleep(stagger_delay_ms / 1000.0)

        started = sum(1 for r in results if r['success'])
        logger.info(f"Bulk start finished: {started}/{len(channel_ids)} channels started")
        return results

    def _stop_one(self, channel_id):
        try:
            result = self.supervisor.stop(channel_id, reason="Bulk stop")
            return {'channel_id': channel_id, 'success': True, 'stopped': result['stopped']}
        except TranscodingError as e:
            return {'channel_id': channel_id, 'success': False, 'error': str(e)}
        except Exception as e:
            logger.error(f"Bulk stop failed for channel {channel_id}: {e}", exc_info=True)
            return {'channel_id': channel_id, 'success': False, 'error': str(e)}
        finally:
            close_thread_connection()

    def bulk_stop(self, channel_ids):
        """Stop channels in parallel."""
        if not channel_ids:
            return []
        workers = min(BULK_STOP_WORKERS, len(channel_ids))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(self._stop_one, channel_ids))

        stopped = sum(1 for r in results if r['success'])
        logger.info(f"Bulk stop finished: {stopped}/{len(channel_ids)} channels stopped")
        return results


class ProfileMigrationService:
    """
    Moves every active channel onto a new default profile.

    Channels are restarted in batches. Inside a batch the restarts are
    spread out by the migration stagger and run concurrently; batches are
    separated by a cooldown so the host never restarts the whole fleet at
    once.
    """

    def __init__(self, supervisor):
        self.supervisor = supervisor
        self._lock = threading.Lock()
        self._in_progress = False
        self.current_migration_id = None
        self._sleep = time.sleep

    @property
    def in_progress(self):
        return self._in_progress

    def migrate_to_new_default_profile(self, profile_id):
        with self._lock:
            if self._in_progress:
                raise MigrationInProgress("Profile migration already in progress")
            self._in_progress = True

        migration = None
        try:
            try:
                profile = TranscodingProfile.objects.get(id=profile_id)
            except TranscodingProfile.DoesNotExist:
                raise ProfileNotFound(f"Transcoding profile {profile_id} not found")

            channel_ids = list(
                Channel.objects
                .filter(transcoding_enabled=True, transcoding_status=Status.ACTIVE)
                .order_by('id')
                .values_list('id', flat=True)
            )

            with transaction.atomic():
                profile.is_default = True
                profile.save()

            migration = ProfileMigration.objects.create(
                to_profile=profile,
                affected_channels=len(channel_ids),
                status='running',
            )
            self.current_migration_id = migration.id
            logger.info(
                f"Profile migration {migration.id}: moving {len(channel_ids)} channels to '{profile.name}'"
            )

            results = self._staggered_restart(channel_ids, profile.id)

            successful = sum(1 for r in results if r['success'])
            failed = len(results) - successful
            ProfileMigration.objects.filter(id=migration.id).update(
                status='completed',
                successful_channels=successful,
                failed_channels=failed,
                completed_at=timezone.now(),
            )
            log_action(
                ActionType.PROFILE_MIGRATION_COMPLETED,
                f"Profile migration to '{profile.name}' completed: {successful} succeeded, {failed} failed",
                migration_id=migration.id,
                profile_id=profile.id,
                total_channels=len(channel_ids),
                successful_channels=successful,
                failed_channels=failed,
            )
            return {
                'success': True,
                'migration_id': migration.id,
                'total_channels': len(channel_ids),
                'results': results,
            }
        except Exception as e:
            if migration is not None:
                logger.error(f"Profile migration {migration.id} failed: {e}", exc_info=True)
                ProfileMigration.objects.filter(id=migration.id).update(
                    status='failed', error_message=str(e), completed_at=timezone.now()
                )
                log_action(
                    ActionType.PROFILE_MIGRATION_FAILED,
                    f"Profile migration {migration.id} failed: {e}",
                    migration_id=migration.id,
                    profile_id=profile_id,
                    error=str(e),
                )
            raise
        finally:
            self.current_migration_id = None
            with self._lock:
                self._in_progress = False

    def _staggered_restart(self, channel_ids, profile_id):
        batch_size = get_transcoding_setting("migration_batch_size")
        stagger = get_transcoding_setting("profile_migration_stagger")
        cooldown = get_transcoding_setting("migration_batch_cooldown")

        batches = make_batches(channel_ids, batch_size)
        results = []
        for index, batch in enumerate(batches):
            offsets = stagger_offsets(len(batch), stagger)
            with ThreadPoolExecutor(max_workers=len(batch)) as executor:
                futures = [
                    executor.submit(self._restart_after, channel_id, profile_id, offset)
                    for channel_id, offset in zip(batch, offsets)
                ]
                results.extend(future.result() for future in futures)

            if index < len(batches) - 1:
                logger.debug(f"Migration batch {index + 1}/{len(batches)} done, cooling down")
                self._sleep(cooldown / 1000.0)
        return results

    def _restart_after(self, channel_id, profile_id, delay):
        try:
            if delay:
                self._sleep(delay)
            return self.restart_with_profile(channel_id, profile_id)
        finally:
            close_thread_connection()

    def restart_with_profile(self, channel_id, profile_id):
        try:
            self.supervisor.stop(channel_id, reason="Profile migration")
            Channel.objects.filter(id=channel_id).update(profile_id=profile_id)
            job = self.supervisor.start(channel_id, profile_id=profile_id)
            return {'channel_id': channel_id, 'success': True, 'job_id': job.id}
        except Exception as e:
            logger.error(f"Migration restart failed for channel {channel_id}: {e}")
            return {'channel_id': channel_id, 'success': False, 'error': str(e)}
