"""
Stream Health Monitor

Periodically probes the source URL of every transcoding-enabled channel.
A fast HTTP HEAD comes first; sources that do not answer it are probed
with ffprobe. Results are cached in memory, stored as StreamHealthRecord
rows and summarised onto the channel.
"""

import json
import logging
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import timedelta

import requests
from django.db.models import Avg
from django.utils import timezone

from apps.channels.models import Channel
from .config import get_transcoding_setting
from .constants import Availability
from .exceptions import ChannelNotFound
from .models import StreamHealthRecord
from .policy import compute_uptime
from .utils import BackgroundLoop, close_thread_connection

logger = logging.getLogger(__name__)


class StreamHealthMonitor(BackgroundLoop):
    name = "StreamHealthMonitor"

    def __init__(self):
        super().__init__()
        self._cache = {}
        self._cache_lock = threading.Lock()
        self._last_run = None

    def interval(self):
        return get_transcoding_setting("health_check_interval")

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------

    @staticmethod
    def http_head_check(url):
        timeout = get_transcoding_setting("health_check_timeout")
        headers = {'User-Agent': get_transcoding_setting("health_user_agent")}
        try:
            response = requests.head(url, timeout=timeout, headers=headers, allow_redirects=True)
        except requests.exceptions.Timeout:
            return {'availability_status': Availability.TIMEOUT, 'error_message': "Request timeout"}
        except requests.exceptions.RequestException as e:
            return {'availability_status': Availability.UNAVAILABLE, 'error_message': str(e)}

        if response.status_code >= 500:
            return {
                'availability_status': Availability.UNAVAILABLE,
                'http_status_code': response.status_code,
                'error_message': f"HTTP {response.status_code}",
            }
        return {
            'availability_status': Availability.AVAILABLE if response.status_code < 400 else Availability.UNAVAILABLE,
            'http_status_code': response.status_code,
            'additional_data': {
                'content_type': response.headers.get('content-type'),
                'content_length': response.headers.get('content-length'),
            },
        }

    @staticmethod
    def ffprobe_check(url):
        command = [
            get_transcoding_setting("ffprobe_path"),
            '-v', 'quiet',
            '-print_format', 'json',
            '-show_streams',
            '-analyzeduration', '3000000',
            '-probesize', '3000000',
            '-timeout', '10000000',
            url,
        ]
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=get_transcoding_setting("ffprobe_timeout"),
            )
        except subprocess.TimeoutExpired:
            return {'availability_status': Availability.TIMEOUT, 'error_message': "FFprobe timeout"}
        except OSError as e:
            return {'availability_status': Availability.ERROR, 'error_message': f"FFprobe could not run: {e}"}

        if result.returncode != 0:
            return {
                'availability_status': Availability.UNAVAILABLE,
                'error_message': (result.stderr or "").strip()[-1000:] or "FFprobe failed",
            }

        try:
            streams = json.loads(result.stdout or '{}').get('streams') or []
        except ValueError:
            return {'availability_status': Availability.ERROR, 'error_message': "Failed to parse FFprobe output"}

        return {
            'availability_status': Availability.AVAILABLE if streams else Availability.UNAVAILABLE,
            'additional_data': {
                'stream_count': len(streams),
                'has_video': any(s.get('codec_type') == 'video' for s in streams),
                'has_audio': any(s.get('codec_type') == 'audio' for s in streams),
            },
        }

    def probe(self, url):
        """HEAD first, ffprobe if that does not report the source available."""
        started = time.monotonic()
        result = {
            'availability_status': Availability.ERROR,
            'http_status_code': None,
            'error_message': None,
            'detection_method': 'http_head',
            'additional_data': {},
        }
        result.update(self.http_head_check(url))
        if result['availability_status'] != Availability.AVAILABLE:
            probe_result = self.ffprobe_check(url)
            probe_result.setdefault('error_message', None)
            result.update(probe_result)
            result['detection_method'] = 'ffprobe'
        result['response_time_ms'] = int((time.monotonic() - started) * 1000)
        return result

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def check_channel(self, channel):
        checked_at = timezone.now()
        try:
            result = self.probe(channel.url)
        except Exception as e:
            logger.error(f"Health probe crashed for channel {channel.id}: {e}", exc_info=True)
            result = {
                'availability_status': Availability.ERROR,
                'error_message': str(e),
                'detection_method': 'http_head',
                'response_time_ms': None,
                'http_status_code': None,
                'additional_data': {},
            }
        return self.record_result(channel, result, checked_at)

    def record_result(self, channel, result, checked_at=None):
        checked_at = checked_at or timezone.now()
        StreamHealthRecord.objects.create(
            channel=channel,
            checked_at=checked_at,
            availability_status=result['availability_status'],
            response_time_ms=result.get('response_time_ms'),
            http_status_code=result.get('http_status_code'),
            error_message=result.get('error_message'),
            detection_method=result.get('detection_method', 'http_head'),
            additional_data=result.get('additional_data') or {},
        )

        since = checked_at - timedelta(hours=get_transcoding_setting("uptime_window_hours"))
        window = StreamHealthRecord.objects.filter(channel=channel, checked_at__gte=since)
        uptime = compute_uptime(
            window.filter(availability_status=Availability.AVAILABLE).count(),
            window.count(),
        )
        avg_response = window.exclude(response_time_ms=None).aggregate(avg=Avg('response_time_ms'))['avg']

        Channel.objects.filter(id=channel.id).update(
            stream_health_status=result['availability_status'],
            last_health_check=checked_at,
            avg_response_time=int(avg_response or 0),
            uptime_percentage=uptime,
        )

        summary = dict(result, channel_id=channel.id, checked_at=checked_at, uptime_percentage=uptime)
        with self._cache_lock:
            self._cache[channel.id] = summary
        return summary

    def _check_in_worker(self, channel):
        try:
            return self.check_channel(channel)
        finally:
            close_thread_connection()

    def run_once(self):
        channels = list(Channel.objects.filter(transcoding_enabled=True).exclude(url=''))
        if not channels:
            return []

        results = []
        deadline = get_transcoding_setting("health_check_timeout") + get_transcoding_setting("ffprobe_timeout") + 5
        with ThreadPoolExecutor(max_workers=get_transcoding_setting("health_check_workers")) as executor:
            futures = {executor.submit(self._check_in_worker, channel): channel for channel in channels}
            for future in as_completed(futures):
                channel = futures[future]
                try:
                    results.append(future.result(timeout=deadline))
                except Exception as e:
                    logger.error(f"Health check failed for channel {channel.id}: {e}", exc_info=True)

        self._last_run = timezone.now()
        available = sum(1 for r in results if r['availability_status'] == Availability.AVAILABLE)
        logger.debug(f"Health checks complete: {available}/{len(results)} sources available")
        return results

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_channel_health(self, channel_id):
        with self._cache_lock:
            cached = self._cache.get(channel_id)
        if cached is not None:
            return cached
        return {
            'channel_id': channel_id,
            'availability_status': 'unknown',
            'checked_at': None,
            'message': "No health check has run for this channel yet",
        }

    def get_channel_history(self, channel_id, limit=100):
        return list(
            StreamHealthRecord.objects.filter(channel_id=channel_id).order_by('-checked_at')[:limit].values(
                'checked_at', 'availability_status', 'response_time_ms', 'http_status_code',
                'error_message', 'detection_method', 'additional_data',
            )
        )

    def get_overview(self):
        channels = Channel.objects.filter(transcoding_enabled=True)
        total = channels.count()
        available = channels.filter(stream_health_status=Availability.AVAILABLE).count()
        checked = channels.exclude(last_health_check=None)
        avg_uptime = checked.aggregate(avg=Avg('uptime_percentage'))['avg']
        return {
            'total_channels': total,
            'available': available,
            'unavailable': checked.exclude(stream_health_status=Availability.AVAILABLE).count(),
            'unchecked': total - checked.count(),
            'average_uptime': round(avg_uptime or 0.0, 2),
            'last_update': self._last_run,
            'monitoring': self.is_running,
        }

    def check_channel_now(self, channel_id):
        channel = Channel.objects.filter(id=channel_id).first()
        if channel is None:
            raise ChannelNotFound(f"Channel {channel_id} not found")
        return self.check_channel(channel)
