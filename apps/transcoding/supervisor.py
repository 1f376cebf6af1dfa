"""
Process Supervisor

Owns the encoder lifecycle for every channel: start, confirm, stop,
restart, exit handling and the per-job error counter that drives the
fallback ladder.
"""

import logging
import os
import shutil
import time

from django.db.models import F
from django.utils import timezone

from apps.channels.models import Channel, TranscodingProfile
from .audit import log_action
from .command_builder import build_encoder_command, get_output_dir, get_output_url
from .config import get_transcoding_setting
from .constants import LADDER, ActionType, JobStatus
from .exceptions import (
    ChannelNotFound,
    InvalidProfile,
    ProfileNotFound,
    ResourceExhausted,
    SpawnFailure,
)
from .models import TranscodingJob
from .policy import dead_source_reached, is_bottom_of_ladder, persisted_state, should_fall_back, stagger_offsets
from .process_handler import EncoderProcessHandler, ErrorMatched, Exited, Output
from .registry import JobEntry
from .retention import prune_finished_jobs
from .utils import run_in_background, start_timer

logger = logging.getLogger(__name__)

Status = Channel.TranscodingStatus

PROGRESS_MARKERS = ('frame=', 'time=')


class ProcessSupervisor:
    def __init__(self, registry, admission, handler_factory=EncoderProcessHandler):
        self.registry = registry
        self.admission = admission
        self.handler_factory = handler_factory
        self.fallback = None
        self._sleep = time.sleep

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_channel(self, channel_id):
        try:
            return Channel.objects.select_related('profile').get(id=channel_id)
        except Channel.DoesNotExist:
            raise ChannelNotFound(f"Channel {channel_id} not found")

    def _resolve_profile(self, channel, profile_id=None):
        if profile_id is not None:
            try:
                return TranscodingProfile.objects.get(id=profile_id)
            except TranscodingProfile.DoesNotExist:
                raise ProfileNotFound(f"Transcoding profile {profile_id} not found")
        if channel.profile_id:
            return channel.profile
        profile = TranscodingProfile.get_default()
        if profile is None:
            raise ProfileNotFound(f"Channel {channel.id} has no profile and no default profile is configured")
        return profile

    @staticmethod
    def _validate(channel, profile):
        if not (channel.url or '').strip():
            raise InvalidProfile(f"Channel {channel.id} has no source URL")
        if profile.quality_tier not in LADDER:
            raise InvalidProfile(f"Profile '{profile.name}' has no valid quality tier")
        if not profile.video_codec or not profile.audio_codec or not profile.manifest_filename:
            raise InvalidProfile(f"Profile '{profile.name}' is missing codec or output settings")

    @staticmethod
    def set_channel_status(channel_id, status, persist=True, **fields):
        """Write the channel status and, when persisting, the state remembered across restarts."""
        updates = {'transcoding_status': status, 'updated_at': timezone.now()}
        updates.update(fields)
        if persist:
            remembered = persisted_state(status)
            if remembered is not None:
                updates['last_transcoding_state'] = remembered
        Channel.objects.filter(id=channel_id).update(**updates)

    @staticmethod
    def finish_job(job_id, status, error_message=None):
        TranscodingJob.objects.filter(id=job_id).update(
            status=status, error_message=error_message, updated_at=timezone.now()
        )

    @staticmethod
    def _remove_output_dir(output_dir):
        if not os.path.isdir(output_dir):
            return
        try:
            shutil.rmtree(output_dir)
            logger.debug(f"Removed output directory {output_dir}")
        except OSError as e:
            logger.error(f"Failed to remove output directory {output_dir}: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, channel_id, profile_id=None, is_retry=False):
        """
        Start encoding a channel and return its TranscodingJob.

        Returns the existing job unchanged if the channel is already live.

        Raises:
            ChannelNotFound, ProfileNotFound, InvalidProfile: bad input
            ResourceExhausted: the profile's tier is at its cap
            SpawnFailure: the OS refused to start the encoder
        """
        with self.registry.channel_lock(channel_id):
            existing = self.registry.get(channel_id)
            if existing is not None:
                logger.info(f"Channel {channel_id} already has a live job {existing.job_id}")
                return TranscodingJob.objects.get(id=existing.job_id)

            channel = self._get_channel(channel_id)
            profile = self._resolve_profile(channel, profile_id)
            self._validate(channel, profile)

            decision = self.admission.check_availability(profile)
            if not decision.allowed:
                raise ResourceExhausted(decision.tier, decision.current, decision.max)

            self.set_channel_status(channel_id, Status.STARTING)

            output_dir = get_output_dir(channel_id)
            command = build_encoder_command(profile, channel.url, output_dir, is_retry=is_retry)
            job = TranscodingJob.objects.create(
                channel=channel,
                profile=profile,
                status=JobStatus.STARTING,
                output_path=output_dir,
                ffmpeg_command=' '.join(command),
                is_retry=is_retry,
            )

            handler = self.handler_factory(channel_id, job.id, command, self._handle_event)
            try:
                os.makedirs(output_dir, exist_ok=True)
                pid = handler.start()
            except OSError as e:
                logger.error(f"Failed to spawn encoder for channel {channel_id}: {e}", exc_info=True)
                self.finish_job(job.id, JobStatus.FAILED, str(e))
                self.set_channel_status(channel_id, Status.FAILED)
                log_action(
                    ActionType.TRANSCODING_FAILED,
                    f"Failed to start transcoding for {channel.name}: {e}",
                    channel=channel,
                    job_id=job.id,
                    error=str(e),
                )
                raise SpawnFailure(f"Could not start encoder for channel {channel_id}: {e}") from e

            self.registry.add(JobEntry(
                channel_id=channel_id,
                job_id=job.id,
                profile_id=profile.id,
                tier=profile.quality_tier,
                handler=handler,
                output_dir=output_dir,
                output_url=get_output_url(channel_id, profile.manifest_filename),
                is_retry=is_retry,
            ))

            job.status = JobStatus.RUNNING
            job.ffmpeg_pid = pid
            job.save(update_fields=['status', 'ffmpeg_pid', 'updated_at'])

            start_timer(
                get_transcoding_setting("confirm_delay"),
                self._confirm_active,
                channel_id,
                job.id,
                name=f"ConfirmActive-{channel_id}",
            )

            logger.info(
                f"Started job {job.id} for channel {channel_id} with profile '{profile.name}' "
                f"({profile.quality_tier}, PID {pid}{', retry' if is_retry else ''})"
            )
            return job

    def _confirm_active(self, channel_id, job_id):
        """Promote a job that survived the confirm delay to active."""
        with self.registry.channel_lock(channel_id):
            entry = self.registry.get(channel_id)
            if entry is None or entry.job_id != job_id or not entry.handler.is_alive():
                logger.debug(f"Skipping confirm for channel {channel_id} job {job_id}: no longer current")
                return False

            self.set_channel_status(channel_id, Status.ACTIVE, transcoded_url=entry.output_url)
            if self.fallback is not None:
                self.fallback.schedule_episode_close(channel_id, job_id)

            channel = Channel.objects.filter(id=channel_id).first()
            log_action(
                ActionType.TRANSCODING_STARTED,
                f"Transcoding started for {channel.name if channel else channel_id}",
                channel=channel,
                job_id=job_id,
                profile_id=entry.profile_id,
                tier=entry.tier,
                pid=entry.pid,
                is_retry=entry.is_retry,
                url=entry.output_url,
            )
            logger.info(f"Channel {channel_id} is active at {entry.output_url}")
            return True

    def stop(self, channel_id, reason="Stopped by user"):
        """
        Stop a channel's encoder and clean its output. Safe to call when
        nothing is running; the directory and status are normalised anyway.
        """
        with self.registry.channel_lock(channel_id):
            channel = self._get_channel(channel_id)

            if self.fallback is not None:
                self.fallback.cancel_recovery(channel_id)

            self.set_channel_status(channel_id, Status.STOPPING)

            entry = self.registry.remove(channel_id)
            if entry is not None:
                try:
                    entry.handler.terminate(get_transcoding_setting("stop_timeout"))
                finally:
                    self.finish_job(entry.job_id, JobStatus.STOPPED, reason)

            # Rows left live without a process, e.g. after a crash
            TranscodingJob.objects.filter(channel_id=channel_id, status__in=JobStatus.LIVE).update(
                status=JobStatus.STOPPED, error_message=reason, updated_at=timezone.now()
            )

            self._remove_output_dir(get_output_dir(channel_id))
            self.set_channel_status(channel_id, Status.INACTIVE, transcoded_url=None)

            log_action(
                ActionType.TRANSCODING_STOPPED,
                f"Transcoding stopped for {channel.name}",
                channel=channel,
                job_id=entry.job_id if entry else None,
                reason=reason,
            )
            logger.info(f"Stopped transcoding for channel {channel_id} ({reason})")
            return {'channel_id': channel_id, 'stopped': entry is not None}

    def restart(self, channel_id):
        self.stop(channel_id, reason="Restart")
        self._sleep(get_transcoding_setting("restart_delay"))
        return self.start(channel_id)

    def toggle(self, channel_id):
        """Stop a live channel or start an idle one, keeping transcoding_enabled in step."""
        if channel_id in self.registry:
            self.stop(channel_id)
            Channel.objects.filter(id=channel_id).update(transcoding_enabled=False)
            return {'channel_id': channel_id, 'action': 'stopped'}

        self._get_channel(channel_id)
        Channel.objects.filter(id=channel_id).update(transcoding_enabled=True)
        job = self.start(channel_id)
        return {'channel_id': channel_id, 'action': 'started', 'job_id': job.id}

    def discard(self, channel_id):
        """Kill and forget a channel's encoder after the channel row is gone."""
        with self.registry.channel_lock(channel_id):
            if self.fallback is not None:
                self.fallback.cancel_recovery(channel_id)
            entry = self.registry.remove(channel_id)
            if entry is not None:
                entry.handler.kill()
            self._remove_output_dir(get_output_dir(channel_id))

    def _halt(self, entry, reason, persist):
        with self.registry.channel_lock(entry.channel_id):
            if self.fallback is not None:
                self.fallback.cancel_recovery(entry.channel_id)
            if self.registry.remove(entry.channel_id, entry.job_id) is None:
                return False
            entry.handler.kill()
            self.finish_job(entry.job_id, JobStatus.STOPPED, reason)
            self.set_channel_status(entry.channel_id, Status.INACTIVE, persist=persist, transcoded_url=None)
            return True

    def emergency_stop_all(self):
        results = []
        for entry in self.registry.snapshot():
            try:
                if self._halt(entry, "Emergency stop", persist=True):
                    results.append({'channel_id': entry.channel_id, 'success': True})
            except Exception as e:
                logger.error(f"Emergency stop failed for channel {entry.channel_id}: {e}", exc_info=True)
                results.append({'channel_id': entry.channel_id, 'success': False, 'error': str(e)})

        stopped = sum(1 for r in results if r['success'])
        failed = len(results) - stopped
        log_action(
            ActionType.EMERGENCY_STOP_ALL,
            f"Emergency stop: {stopped} processes stopped, {failed} failed",
            stopped_count=stopped,
            failed_count=failed,
        )
        logger.warning(f"Emergency stop completed: {stopped} stopped, {failed} failed")
        return {'success': failed == 0, 'stopped_count': stopped, 'failed_count': failed, 'results': results}

    def shutdown(self):
        """Kill every encoder without overwriting the state used to resume after restart."""
        for entry in self.registry.snapshot():
            try:
                self._halt(entry, "Server shutdown", persist=False)
            except Exception as e:
                logger.error(f"Error stopping channel {entry.channel_id} during shutdown: {e}", exc_info=True)

    def get_active_jobs(self):
        jobs = (
            TranscodingJob.objects
            .filter(status__in=JobStatus.LIVE)
            .select_related('channel', 'profile')
            .order_by('created_at')
        )
        result = []
        for job in jobs:
            entry = self.registry.get(job.channel_id)
            live = entry.as_dict() if entry is not None and entry.job_id == job.id else None
            result.append({
                'id': job.id,
                'channel_id': job.channel_id,
                'channel_name': job.channel.name,
                'channel_url': job.channel.url,
                'profile_id': job.profile_id,
                'profile_name': job.profile.name if job.profile else None,
                'status': job.status,
                'ffmpeg_pid': job.ffmpeg_pid,
                'output_path': job.output_path,
                'error_count': job.error_count,
                'is_retry': job.is_retry,
                'created_at': job.created_at,
                'live': live,
            })
        return result

    # ------------------------------------------------------------------
    # Per-job events
    # ------------------------------------------------------------------

    def _handle_event(self, handler, event):
        if isinstance(event, Output):
            if any(marker in event.line for marker in PROGRESS_MARKERS):
                self.registry.touch(handler.channel_id, handler.job_id)
        elif isinstance(event, ErrorMatched):
            self._handle_error(handler.channel_id, handler.job_id, event)
        elif isinstance(event, Exited):
            self._handle_exit(handler.channel_id, handler.job_id, event)

    def _handle_error(self, channel_id, job_id, event):
        count = self.registry.increment_error(channel_id, job_id)
        if count is None:
            return
        TranscodingJob.objects.filter(id=job_id).update(error_count=F('error_count') + 1)

        entry = self.registry.get(channel_id)
        if entry is None or entry.job_id != job_id:
            return

        if self.fallback is None:
            return

        if is_bottom_of_ladder(entry.tier):
            recent = self.fallback.detector.record(channel_id)
            if dead_source_reached(entry.tier, recent, get_transcoding_setting("dead_source_max_errors")):
                self.fallback.declare_dead_source(channel_id, job_id, event.category)
                return

        threshold = get_transcoding_setting("error_threshold")
        if should_fall_back(count, threshold, entry.fallback_triggered) and self.registry.claim_fallback(channel_id, job_id):
            channel = Channel.objects.filter(id=channel_id).first()
            log_action(
                ActionType.TRANSCODING_ERROR,
                f"Error threshold reached on {channel.name if channel else channel_id}: {event.category}",
                channel=channel,
                job_id=job_id,
                error_count=count,
                category=event.category,
                line=event.line,
            )
            run_in_background(
                self.fallback.attempt_fallback,
                channel_id,
                entry.profile_id,
                event.category,
                name=f"Fallback-{channel_id}",
            )

    def _handle_exit(self, channel_id, job_id, event):
        with self.registry.channel_lock(channel_id):
            if self.registry.remove(channel_id, job_id) is None:
                logger.debug(f"Exit of job {job_id} on channel {channel_id} already handled")
                return

            channel = Channel.objects.filter(id=channel_id).first()
            name = channel.name if channel else channel_id

            if event.error:
                message = event.error
                action = ActionType.TRANSCODING_FAILED
                job_status, channel_status = JobStatus.FAILED, Status.FAILED
            elif event.code == 0:
                message = None
                action = ActionType.TRANSCODING_COMPLETED
                job_status, channel_status = JobStatus.COMPLETED, Status.INACTIVE
            else:
                message = f"Process exited with code {event.code}"
                action = ActionType.TRANSCODING_FAILED
                job_status, channel_status = JobStatus.FAILED, Status.FAILED

            # A recovery job that dies goes back to cooldown instead of failed
            if action == ActionType.TRANSCODING_FAILED and self.fallback is not None:
                if self.fallback.quarantine_failed_recovery(channel_id, job_id, message) is not None:
                    logger.warning(f"Recovery job {job_id} on channel {channel_id} exited: {message}")
                    return

            self.finish_job(job_id, job_status, message)
            self.set_channel_status(channel_id, channel_status, transcoded_url=None)

            if action == ActionType.TRANSCODING_COMPLETED:
                logger.info(f"Encoder for channel {channel_id} finished cleanly")
                log_action(action, f"Transcoding completed for {name}", channel=channel, job_id=job_id)
            else:
                logger.error(f"Encoder for channel {channel_id} failed: {message}")
                log_action(
                    action,
                    f"Transcoding failed for {name}: {message}",
                    channel=channel,
                    job_id=job_id,
                    exit_code=event.code,
                    error=message,
                )

    # ------------------------------------------------------------------
    # Process start-up
    # ------------------------------------------------------------------

    def startup_recovery(self):
        """Reconcile DB state left by the previous process and resume channels."""
        stale = TranscodingJob.objects.filter(status__in=JobStatus.LIVE).update(
            status=JobStatus.FAILED, error_message="Server restart cleanup", updated_at=timezone.now()
        )
        if stale:
            logger.info(f"Marked {stale} stale transcoding jobs as failed")

        prune_finished_jobs()

        reset = Channel.objects.filter(
            transcoding_status__in=[Status.STARTING, Status.ACTIVE, Status.STOPPING]
        ).update(transcoding_status=Status.INACTIVE, transcoded_url=None)
        if reset:
            logger.info(f"Reset {reset} channels left in a live status")

        to_resume = list(
            Channel.objects
            .filter(transcoding_enabled=True, last_transcoding_state=Status.ACTIVE)
            .exclude(transcoding_status__in=[Status.OFFLINE_TEMPORARY, Status.OFFLINE_PERMANENT])
            .order_by('id')
            .values_list('id', flat=True)
        )
        if to_resume:
            logger.info(f"Resuming {len(to_resume)} channels that were active before restart")
            run_in_background(self._resume_channels, to_resume, name="StartupResume")

        if self.fallback is not None:
            self.fallback.rearm_pending_recoveries()

        return {'stale_jobs': stale, 'reset_channels': reset, 'resuming': to_resume}

    def _resume_channels(self, channel_ids):
        offsets = stagger_offsets(len(channel_ids), get_transcoding_setting("startup_stagger_delay"))
        previous = 0.0
        for channel_id, offset in zip(channel_ids, offsets):
            self._sleep(offset - previous)
            previous = offset
            try:
                self.start(channel_id)
            except Exception as e:
                logger.error(f"Failed to resume channel {channel_id}: {e}")
