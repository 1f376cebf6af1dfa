"""
Cleanup Scheduler

Keeps the HLS output root bounded: prunes old segments of live channels
and removes directories left behind by channels that are no longer
encoding.
"""

import logging
import os
import re
import shutil
import time

from apps.channels.models import Channel, TranscodingProfile
from .audit import log_action
from .config import get_transcoding_setting
from .constants import CHANNEL_DIR_PREFIX, MIN_HLS_LIST_SIZE, SEGMENT_EXTENSIONS, ActionType
from .policy import SegmentFile, segment_keep_count, select_segments_over_size, select_segments_to_delete
from .utils import BackgroundLoop

logger = logging.getLogger(__name__)

CHANNEL_DIR_RE = re.compile(rf"^{CHANNEL_DIR_PREFIX}(\d+)$")

Status = Channel.TranscodingStatus


def _directory_size(path):
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.path.getsize(os.path.join(root, name))
            except OSError:
                continue
    return total


def _list_segments(directory, now):
    segments = []
    try:
        names = os.listdir(directory)
    except OSError:
        return segments
    for name in names:
        if not name.endswith(SEGMENT_EXTENSIONS):
            continue
        path = os.path.join(directory, name)
        try:
            stat = os.stat(path)
        except OSError:
            continue
        segments.append(SegmentFile(path=path, age=now - stat.st_mtime, size=stat.st_size))
    return segments


class CleanupScheduler(BackgroundLoop):
    name = "CleanupScheduler"

    def __init__(self, registry):
        super().__init__()
        self.registry = registry
        self._clock = time.time
        self.last_result = None

    def interval(self):
        return get_transcoding_setting("cleanup_interval")

    def initial_delay(self):
        return get_transcoding_setting("cleanup_initial_delay")

    @staticmethod
    def _output_root():
        return get_transcoding_setting("hls_output_base")

    # ------------------------------------------------------------------
    # Segment pruning
    # ------------------------------------------------------------------

    def prune_channel_segments(self, channel_id, output_dir, hls_list_size):
        """Delete segments beyond the keep count or older than the max age. Returns (files, bytes)."""
        playlist_size = segment_keep_count(hls_list_size, 0, MIN_HLS_LIST_SIZE)
        keep = playlist_size + get_transcoding_setting("segment_keep_buffer")
        max_age = get_transcoding_setting("max_segment_age")
        max_bytes = get_transcoding_setting("max_channel_dir_size")

        segments = _list_segments(output_dir, self._clock())
        doomed = {s.path: s for s in select_segments_to_delete(segments, keep, max_age)}

        # Still too big: trim toward the bare playlist size
        remaining = [s for s in segments if s.path not in doomed]
        for segment in select_segments_over_size(remaining, playlist_size, max_bytes):
            doomed[segment.path] = segment

        files = 0
        freed = 0
        for segment in doomed.values():
            try:
                os.remove(segment.path)
                files += 1
                freed += segment.size
            except FileNotFoundError:
                # The encoder's own delete_segments got there first
                continue
            except OSError as e:
                logger.error(f"Failed to delete segment {segment.path}: {e}")

        if files:
            logger.debug(f"Pruned {files} segments ({freed} bytes) for channel {channel_id}")
        return files, freed

    def _prune_live_channels(self):
        entries = self.registry.snapshot()
        list_sizes = dict(
            TranscodingProfile.objects.filter(id__in=[e.profile_id for e in entries]).values_list('id', 'hls_list_size')
        )
        files = 0
        freed = 0
        for entry in entries:
            try:
                f, b = self.prune_channel_segments(
                    entry.channel_id, entry.output_dir, list_sizes.get(entry.profile_id, MIN_HLS_LIST_SIZE)
                )
                files += f
                freed += b
            except Exception as e:
                logger.error(f"Segment cleanup failed for channel {entry.channel_id}: {e}", exc_info=True)
                log_action(
                    ActionType.CLEANUP_ERROR,
                    f"Segment cleanup failed for channel {entry.channel_id}: {e}",
                    channel=Channel.objects.filter(id=entry.channel_id).first(),
                    error=str(e),
                )
        return files, freed

    # ------------------------------------------------------------------
    # Orphans
    # ------------------------------------------------------------------

    def remove_orphaned_directories(self):
        """Delete channel directories nobody is writing to. Returns (directories, bytes)."""
        root = self._output_root()
        if not os.path.isdir(root):
            return 0, 0

        live_ids = self.registry.channel_ids()
        busy_ids = set(
            Channel.objects.filter(
                transcoding_status__in=[Status.STARTING, Status.ACTIVE]
            ).values_list('id', flat=True)
        )
        max_age = get_transcoding_setting("orphaned_dir_cleanup_age")
        now = self._clock()

        removed = 0
        freed = 0
        for name in os.listdir(root):
            match = CHANNEL_DIR_RE.match(name)
            path = os.path.join(root, name)
            if not match or not os.path.isdir(path):
                continue
            channel_id = int(match.group(1))
            if channel_id in live_ids or channel_id in busy_ids:
                continue
            try:
                if now - os.path.getmtime(path) <= max_age:
                    continue
                size = _directory_size(path)
                shutil.rmtree(path)
            except OSError as e:
                logger.error(f"Failed to remove orphaned directory {path}: {e}")
                log_action(
                    ActionType.CLEANUP_ERROR,
                    f"Failed to remove orphaned directory {name}: {e}",
                    directory=path,
                    error=str(e),
                )
                continue

            removed += 1
            freed += size
            logger.info(f"Removed orphaned output directory {path} ({size} bytes)")
            log_action(
                ActionType.CLEANUP_ORPHANED,
                f"Removed orphaned output directory {name}",
                channel=Channel.objects.filter(id=channel_id).first(),
                directory=path,
                bytes_freed=size,
            )
        return removed, freed

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run_once(self):
        started = time.monotonic()
        segment_files, segment_bytes = self._prune_live_channels()
        directories, directory_bytes = self.remove_orphaned_directories()

        result = {
            'segments_deleted': segment_files,
            'directories_removed': directories,
            'items_cleaned': segment_files + directories,
            'bytes_freed': segment_bytes + directory_bytes,
            'duration_ms': int((time.monotonic() - started) * 1000),
        }
        self.last_result = result

        if result['items_cleaned']:
            log_action(
                ActionType.PERIODIC_CLEANUP,
                f"Periodic cleanup removed {result['items_cleaned']} items "
                f"({result['bytes_freed'] / (1024 * 1024):.1f} MB)",
                **result,
            )
        return result

    def get_storage_stats(self):
        root = self._output_root()
        max_bytes = get_transcoding_setting("max_channel_dir_size")
        channels = []
        if os.path.isdir(root):
            for name in os.listdir(root):
                match = CHANNEL_DIR_RE.match(name)
                path = os.path.join(root, name)
                if not match or not os.path.isdir(path):
                    continue
                size = _directory_size(path)
                channels.append({
                    'channel_id': int(match.group(1)),
                    'directory': path,
                    'size_bytes': size,
                    'size_mb': round(size / (1024 * 1024), 2),
                    'is_oversized': size > max_bytes,
                })

        channels.sort(key=lambda c: c['size_bytes'], reverse=True)
        total = sum(c['size_bytes'] for c in channels)
        return {
            'total_directories': len(channels),
            'total_size_bytes': total,
            'total_size_mb': round(total / (1024 * 1024), 2),
            'channels': channels,
        }
