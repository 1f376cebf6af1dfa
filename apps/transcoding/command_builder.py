"""
Encoder command construction.

Builds the ffmpeg argument list for a channel from its TranscodingProfile.
"""

import logging
import os
import re
from shlex import split as shlex_split
from typing import List

from .config import get_transcoding_setting
from .constants import CHANNEL_DIR_PREFIX, MANDATORY_HLS_FLAGS, MIN_HLS_LIST_SIZE, SCALE_FILTERS

logger = logging.getLogger(__name__)

# Robustness flags used when a job is restarted after a failure
RETRY_INPUT_OPTIONS = [
    '-reconnect', '1',
    '-reconnect_streamed', '1',
    '-reconnect_delay_max', '5',
    '-timeout', '10000000',
]

_BITRATE_RE = re.compile(r'^(?P<value>\d+(?:\.\d+)?)(?P<unit>[kKmM]?)$')


def channel_dir_name(channel_id) -> str:
    return f"{CHANNEL_DIR_PREFIX}{channel_id}"


def get_output_dir(channel_id) -> str:
    return os.path.join(get_transcoding_setting("hls_output_base"), channel_dir_name(channel_id))


def get_output_url(channel_id, manifest_filename) -> str:
    base_url = str(get_transcoding_setting("hls_base_url")).rstrip('/')
    return f"{base_url}/hls_stream/{channel_dir_name(channel_id)}/{manifest_filename}"


def scale_filter_for(resolution):
    """Return the -vf scale filter for a resolution, or None to keep the source size."""
    if not resolution or resolution == 'original':
        return None
    if resolution in SCALE_FILTERS:
        return SCALE_FILTERS[resolution]
    if 'x' in resolution:
        return f"scale={resolution.replace('x', ':')}"
    return None


def double_bitrate(bitrate: str) -> str:
    """'2000k' -> '4000k'. Used for the rate-control buffer size."""
    match = _BITRATE_RE.match(bitrate.strip())
    if not match:
        return bitrate
    value = float(match.group('value')) * 2
    value_str = str(int(value)) if value.is_integer() else str(value)
    return f"{value_str}{match.group('unit')}"


def ensure_mandatory_hls_flags(command: List[str]) -> List[str]:
    """
    Make sure live-output cleanup flags are present, whatever the profile says.

    Missing flags are merged into an existing -hls_flags value. Without one,
    -hls_flags is inserted before -hls_time. -hls_delete_threshold 1 is
    added before the output path when absent.
    """
    command = list(command)

    if '-hls_flags' in command and command.index('-hls_flags') + 1 < len(command):
        idx = command.index('-hls_flags') + 1
        current = [f for f in command[idx].split('+') if f]
        missing = [f for f in MANDATORY_HLS_FLAGS if f not in current]
        if missing:
            command[idx] = '+'.join(current + missing)
            logger.debug(f"Added missing mandatory HLS flags: {'+'.join(missing)}")
    else:
        flags = '+'.join(MANDATORY_HLS_FLAGS)
        if '-hls_time' in command:
            idx = command.index('-hls_time')
            command[idx:idx] = ['-hls_flags', flags]
        else:
            command[-1:-1] = ['-hls_flags', flags]
        logger.debug("Added mandatory HLS flags to command")

    if '-hls_delete_threshold' not in command:
        command[-1:-1] = ['-hls_delete_threshold', '1']

    return command


def build_encoder_command(profile, source_url, output_dir, is_retry=False, ffmpeg_path=None) -> List[str]:
    """Build the full encoder argument list, executable first."""
    ffmpeg_path = ffmpeg_path or get_transcoding_setting("ffmpeg_path")
    manifest_path = os.path.join(output_dir, profile.manifest_filename)
    segment_path = os.path.join(output_dir, profile.hls_segment_filename)
    is_copy = profile.video_codec == 'copy'

    cmd = [ffmpeg_path, '-hide_banner', '-loglevel', 'error']

    if is_retry:
        cmd.extend(RETRY_INPUT_OPTIONS)

    cmd.extend(['-i', source_url])

    # Video
    cmd.extend(['-c:v', profile.video_codec])
    if not is_copy:
        if profile.preset:
            cmd.extend(['-preset', profile.preset])
        if profile.tune:
            cmd.extend(['-tune', profile.tune])
        if profile.video_bitrate and profile.video_bitrate != 'original':
            cmd.extend([
                '-b:v', profile.video_bitrate,
                '-maxrate', profile.video_bitrate,
                '-bufsize', double_bitrate(profile.video_bitrate),
            ])
        cmd.extend([
            '-g', str(profile.gop_size),
            '-keyint_min', str(profile.keyint_min),
            '-sc_threshold', '0',
        ])
        scale_filter = scale_filter_for(profile.resolution)
        if scale_filter:
            cmd.extend(['-vf', scale_filter])

    # Audio
    cmd.extend(['-c:a', profile.audio_codec])
    if profile.audio_codec != 'copy' and profile.audio_bitrate:
        cmd.extend(['-b:a', profile.audio_bitrate])

    # HLS muxer
    cmd.extend([
        '-f', 'hls',
        '-hls_time', str(profile.hls_time),
        '-hls_list_size', str(max(int(profile.hls_list_size or 0), MIN_HLS_LIST_SIZE)),
        '-hls_segment_type', 'mpegts',
    ])
    if profile.hls_flags:
        cmd.extend(['-hls_flags', profile.hls_flags])
    cmd.extend([
        '-hls_segment_filename', segment_path,
        '-hls_start_number_source', 'epoch',
        '-hls_delete_threshold', '1',
    ])

    if profile.additional_params:
        cmd.extend(shlex_split(profile.additional_params))

    cmd.append(manifest_path)

    return ensure_mandatory_hls_flags(cmd)
