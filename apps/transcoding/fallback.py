"""
Fallback ladder and dead-source handling.

A job that keeps hitting stream errors is restarted on a cheaper profile
(high -> medium -> low -> copy). A source that still fails at copy is
quarantined as a dead source and retried on a cooldown timer until it
recovers or runs out of retries.
"""

import logging
import threading
import time
from datetime import timedelta

from django.db.models import F
from django.utils import timezone

from apps.channels.models import Channel, TranscodingProfile
from .audit import log_action
from .config import get_transcoding_setting
from .constants import COPY_LEVEL, ActionType, JobStatus
from .exceptions import ChannelNotFound, InvalidChannelState, TranscodingError
from .models import DeadSourceEvent
from .policy import ladder_level, lower_tiers, prune_window, recovery_exhausted
from .utils import start_timer

logger = logging.getLogger(__name__)

Status = Channel.TranscodingStatus
OFFLINE_STATES = (Status.OFFLINE_TEMPORARY, Status.OFFLINE_PERMANENT)
RECOVERY_EXIT_CATEGORY = "PROCESS_EXIT"


class DeadSourceDetector:
    """Per-channel rolling window of matched error timestamps."""

    def __init__(self):
        self._lock = threading.Lock()
        self._errors = {}

    def record(self, channel_id, now=None):
        """Add one error and return how many fall inside the window."""
        now = now if now is not None else time.time()
        window = get_transcoding_setting("dead_source_error_window")
        with self._lock:
            recent = prune_window(self._errors.get(channel_id, []), now, window)
            recent.append(now)
            self._errors[channel_id] = recent
            return len(recent)

    def count(self, channel_id):
        with self._lock:
            return len(self._errors.get(channel_id, []))

    def reset(self, channel_id):
        with self._lock:
            self._errors.pop(channel_id, None)


class FallbackController:
    def __init__(self, supervisor, registry):
        self.supervisor = supervisor
        self.registry = registry
        self.detector = DeadSourceDetector()
        self._timers = {}
        self._stability_timers = {}
        self._timers_lock = threading.Lock()
        self._sleep = time.sleep

    # ------------------------------------------------------------------
    # Ladder
    # ------------------------------------------------------------------

    @staticmethod
    def find_lower_profile(from_tier):
        """Nearest profile below ``from_tier``; the default wins within a tier, then the lowest id."""
        for tier in lower_tiers(from_tier):
            candidates = TranscodingProfile.objects.filter(quality_tier=tier)
            profile = candidates.filter(is_default=True).first() or candidates.order_by('id').first()
            if profile is not None:
                return profile
        return None

    def attempt_fallback(self, channel_id, from_profile_id, category):
        from_profile = TranscodingProfile.objects.filter(id=from_profile_id).first()
        if from_profile is None:
            logger.warning(f"Fallback for channel {channel_id}: profile {from_profile_id} no longer exists")
            return False

        target = self.find_lower_profile(from_profile.quality_tier)
        if target is None:
            logger.warning(
                f"No fallback profile below '{from_profile.name}' ({from_profile.quality_tier}) "
                f"for channel {channel_id}"
            )
            return False

        logger.info(
            f"Falling back channel {channel_id} from '{from_profile.name}' to '{target.name}' ({category})"
        )
        try:
            self.supervisor.stop(channel_id, reason=f"Fallback after {category} errors")
            self._sleep(get_transcoding_setting("restart_delay"))
            job = self.supervisor.start(channel_id, profile_id=target.id, is_retry=True)
        except TranscodingError as e:
            logger.error(f"Fallback restart failed for channel {channel_id}: {e}")
            return False

        channel = Channel.objects.filter(id=channel_id).first()
        log_action(
            ActionType.FALLBACK,
            f"Fallback on {channel.name if channel else channel_id}: '{from_profile.name}' -> '{target.name}'",
            channel=channel,
            from_profile_id=from_profile.id,
            from_profile=from_profile.name,
            to_profile_id=target.id,
            to_profile=target.name,
            category=category,
            level=ladder_level(target.quality_tier),
            job_id=job.id,
        )
        return True

    # ------------------------------------------------------------------
    # Dead source
    # ------------------------------------------------------------------

    def _open_episode(self, channel_id):
        return (
            DeadSourceEvent.objects
            .filter(channel_id=channel_id, resolved_at__isnull=True)
            .order_by('-created_at')
            .first()
        )

    def declare_dead_source(self, channel_id, job_id, category):
        """
        Quarantine a channel whose source fails at the bottom of the ladder.

        Returns the DeadSourceEvent, or None when the job was no longer current.
        """
        with self.registry.channel_lock(channel_id):
            entry = self.registry.remove(channel_id, job_id)
            if entry is None:
                return None
            entry.handler.kill()

            error_count = self.detector.count(channel_id)
            window = get_transcoding_setting("dead_source_error_window")
            reason = f"Dead source detected: {error_count} errors within {window}s ({category})"
            return self._quarantine(channel_id, job_id, category, reason, "Dead source detected")

    def quarantine_failed_recovery(self, channel_id, job_id, message):
        """
        Send a channel back to cooldown when its job dies while a dead-source
        episode is still open. The caller has already dropped the job from
        the registry.

        Returns the DeadSourceEvent, or None when no episode is open.
        """
        with self.registry.channel_lock(channel_id):
            if self._open_episode(channel_id) is None:
                return None
            reason = f"Recovery attempt failed: {message}"
            return self._quarantine(channel_id, job_id, RECOVERY_EXIT_CATEGORY, reason, message)

    def _quarantine(self, channel_id, job_id, category, reason, job_message):
        now = timezone.now()
        cooldown = get_transcoding_setting("offline_cooldown")
        error_count = self.detector.count(channel_id)

        self.supervisor.finish_job(job_id, JobStatus.FAILED, job_message)
        self.supervisor.set_channel_status(
            channel_id,
            Status.OFFLINE_TEMPORARY,
            transcoded_url=None,
            offline_reason=reason,
            dead_source_count=F('dead_source_count') + 1,
            last_dead_source_event=now,
        )

        cooldown_until = now + timedelta(seconds=cooldown)
        episode = self._open_episode(channel_id)
        if episode is not None:
            episode.error_count = error_count
            episode.error_patterns = category
            episode.cooldown_until = cooldown_until
            episode.save(update_fields=['error_count', 'error_patterns', 'cooldown_until'])
        else:
            episode = DeadSourceEvent.objects.create(
                channel_id=channel_id,
                error_count=error_count,
                error_patterns=category,
                profile_level=COPY_LEVEL,
                cooldown_until=cooldown_until,
                retry_count=0,
            )

        self.schedule_recovery(channel_id, cooldown)

        channel = Channel.objects.filter(id=channel_id).first()
        log_action(
            ActionType.DEAD_SOURCE_DETECTED,
            f"Dead source on {channel.name if channel else channel_id}: {reason}",
            channel=channel,
            job_id=job_id,
            error_count=error_count,
            category=category,
            retry_count=episode.retry_count,
            cooldown_seconds=cooldown,
        )
        logger.warning(f"Channel {channel_id} marked offline for {cooldown}s: {reason}")
        return episode

    def resolve_open_episode(self, channel_id):
        resolved = DeadSourceEvent.objects.filter(channel_id=channel_id, resolved_at__isnull=True).update(
            resolved_at=timezone.now()
        )
        if resolved:
            self.detector.reset(channel_id)
            Channel.objects.filter(id=channel_id).update(offline_reason=None)
            logger.info(f"Dead source episode resolved for channel {channel_id}")
        return resolved

    def schedule_episode_close(self, channel_id, job_id):
        """
        After a recovered job goes active, close the open episode once that
        job has stayed up for the stable period. Relapses before then keep
        counting against the same episode.
        """
        if self._open_episode(channel_id) is None:
            return None
        self.cancel_episode_close(channel_id)
        delay = get_transcoding_setting("dead_source_stable_period")
        timer = start_timer(
            delay, self.close_episode_if_stable, channel_id, job_id, name=f"DeadSourceStable-{channel_id}"
        )
        with self._timers_lock:
            self._stability_timers[channel_id] = timer
        logger.debug(f"Dead source episode for channel {channel_id} closes in {delay:.0f}s if job {job_id} holds")
        return timer

    def cancel_episode_close(self, channel_id):
        with self._timers_lock:
            timer = self._stability_timers.pop(channel_id, None)
        if timer is not None:
            timer.cancel()

    def close_episode_if_stable(self, channel_id, job_id):
        """Timer callback: resolve the episode if the recovered job is still the live one."""
        with self._timers_lock:
            self._stability_timers.pop(channel_id, None)

        with self.registry.channel_lock(channel_id):
            entry = self.registry.get(channel_id)
            if entry is None or entry.job_id != job_id or not entry.handler.is_alive():
                logger.debug(f"Channel {channel_id} job {job_id} did not hold, episode stays open")
                return False
            return bool(self.resolve_open_episode(channel_id))

    # ------------------------------------------------------------------
    # Recovery timers
    # ------------------------------------------------------------------

    def schedule_recovery(self, channel_id, delay):
        self.cancel_recovery(channel_id)
        timer = start_timer(delay, self.attempt_recovery, channel_id, name=f"DeadSourceRecovery-{channel_id}")
        with self._timers_lock:
            self._timers[channel_id] = timer
        logger.debug(f"Recovery for channel {channel_id} scheduled in {delay:.0f}s")
        return timer

    def cancel_recovery(self, channel_id):
        """Cancel the cooldown timer and any pending episode close for the channel."""
        self.cancel_episode_close(channel_id)
        with self._timers_lock:
            timer = self._timers.pop(channel_id, None)
        if timer is not None:
            timer.cancel()
            logger.debug(f"Cancelled pending recovery for channel {channel_id}")
            return True
        return False

    def cancel_all(self):
        with self._timers_lock:
            timers = list(self._timers.values()) + list(self._stability_timers.values())
            self._timers.clear()
            self._stability_timers.clear()
        for timer in timers:
            timer.cancel()

    def has_pending_recovery(self, channel_id):
        with self._timers_lock:
            return channel_id in self._timers

    def attempt_recovery(self, channel_id):
        """Timer callback: retry a quarantined channel or give up on it."""
        with self._timers_lock:
            self._timers.pop(channel_id, None)

        with self.registry.channel_lock(channel_id):
            channel = Channel.objects.filter(id=channel_id).first()
            if channel is None or channel.transcoding_status != Status.OFFLINE_TEMPORARY:
                logger.debug(f"Skipping recovery for channel {channel_id}: no longer temporarily offline")
                return False

            episode = self._open_episode(channel_id)
            if episode is None:
                logger.debug(f"Skipping recovery for channel {channel_id}: no open dead source episode")
                return False

            episode.retry_count += 1
            episode.save(update_fields=['retry_count'])
            max_retries = get_transcoding_setting("max_dead_source_retries")

            if recovery_exhausted(episode.retry_count, max_retries):
                reason = f"Source failed {max_retries} recovery attempts"
                self.supervisor.set_channel_status(
                    channel_id, Status.OFFLINE_PERMANENT, offline_reason=reason
                )
                log_action(
                    ActionType.DEAD_SOURCE_PERMANENT,
                    f"{channel.name} permanently offline: {reason}",
                    channel=channel,
                    retry_count=episode.retry_count,
                )
                logger.warning(f"Channel {channel_id} permanently offline after {episode.retry_count - 1} retries")
                return False

            if not channel.transcoding_enabled:
                logger.info(f"Skipping recovery for channel {channel_id}: transcoding disabled")
                return False

            self.detector.reset(channel_id)
            log_action(
                ActionType.DEAD_SOURCE_RECOVERY_ATTEMPT,
                f"Recovery attempt {episode.retry_count}/{max_retries} for {channel.name}",
                channel=channel,
                retry_count=episode.retry_count,
                max_retries=max_retries,
            )

            try:
                self.supervisor.start(channel_id)
                return True
            except TranscodingError as e:
                cooldown = get_transcoding_setting("offline_cooldown")
                logger.warning(f"Recovery start failed for channel {channel_id}: {e}; retrying in {cooldown}s")
                self.supervisor.set_channel_status(channel_id, Status.OFFLINE_TEMPORARY)
                episode.cooldown_until = timezone.now() + timedelta(seconds=cooldown)
                episode.save(update_fields=['cooldown_until'])
                self.schedule_recovery(channel_id, cooldown)
                return False

    def rearm_pending_recoveries(self):
        """After a restart, resume cooldown timers for temporarily offline channels."""
        now = timezone.now()
        cooldown = get_transcoding_setting("offline_cooldown")
        count = 0
        for channel_id in Channel.objects.filter(transcoding_status=Status.OFFLINE_TEMPORARY).values_list('id', flat=True):
            episode = self._open_episode(channel_id)
            remaining = (episode.cooldown_until - now).total_seconds() if episode else cooldown
            self.schedule_recovery(channel_id, max(0.0, remaining))
            count += 1
        if count:
            logger.info(f"Re-armed recovery timers for {count} offline channels")
        return count

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def list_dead_sources(self):
        channels = Channel.objects.filter(transcoding_status__in=OFFLINE_STATES).order_by('-last_dead_source_event', 'id')
        result = []
        for channel in channels:
            latest = channel.dead_source_events.order_by('-created_at').first()
            result.append({
                'channel_id': channel.id,
                'channel_name': channel.name,
                'url': channel.url,
                'status': channel.transcoding_status,
                'offline_reason': channel.offline_reason,
                'dead_source_count': channel.dead_source_count,
                'last_dead_source_event': channel.last_dead_source_event,
                'recovery_scheduled': self.has_pending_recovery(channel.id),
                'latest_event': {
                    'id': latest.id,
                    'error_count': latest.error_count,
                    'error_patterns': latest.error_patterns,
                    'profile_level': latest.profile_level,
                    'cooldown_until': latest.cooldown_until,
                    'retry_count': latest.retry_count,
                    'resolved_at': latest.resolved_at,
                    'created_at': latest.created_at,
                } if latest else None,
            })
        return result

    def retry_dead_source(self, channel_id):
        with self.registry.channel_lock(channel_id):
            channel = Channel.objects.filter(id=channel_id).first()
            if channel is None:
                raise ChannelNotFound(f"Channel {channel_id} not found")
            if not channel.transcoding_enabled:
                raise InvalidChannelState(f"Transcoding is not enabled for channel {channel_id}")
            if channel.transcoding_status not in OFFLINE_STATES:
                raise InvalidChannelState(f"Channel {channel_id} is not offline")

            self.cancel_recovery(channel_id)
            DeadSourceEvent.objects.filter(channel_id=channel_id, resolved_at__isnull=True).update(
                resolved_at=timezone.now()
            )
            self.detector.reset(channel_id)
            Channel.objects.filter(id=channel_id).update(offline_reason=None)

            log_action(
                ActionType.MANUAL_DEAD_SOURCE_RETRY,
                f"Manual retry requested for {channel.name}",
                channel=channel,
                previous_status=channel.transcoding_status,
            )
            job = self.supervisor.start(channel_id)
            return {'success': True, 'channel_id': channel_id, 'job_id': job.id}

    def mark_permanently_offline(self, channel_id, reason="Manually marked offline"):
        with self.registry.channel_lock(channel_id):
            channel = Channel.objects.filter(id=channel_id).first()
            if channel is None:
                raise ChannelNotFound(f"Channel {channel_id} not found")

            self.cancel_recovery(channel_id)
            entry = self.registry.remove(channel_id)
            if entry is not None:
                entry.handler.kill()
                self.supervisor.finish_job(entry.job_id, JobStatus.STOPPED, "Marked offline")

            self.supervisor.set_channel_status(
                channel_id, Status.OFFLINE_PERMANENT, transcoded_url=None, offline_reason=reason
            )
            log_action(
                ActionType.MARKED_OFFLINE,
                f"{channel.name} marked permanently offline: {reason}",
                channel=channel,
                reason=reason,
            )
            return {'success': True, 'channel_id': channel_id}
