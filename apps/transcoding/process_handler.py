import logging
import queue
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from django.db import connection

from .config import get_transcoding_setting
from .policy import classify_error_line, prune_window


@dataclass(frozen=True)
class Output:
    line: str
    stream: str


@dataclass(frozen=True)
class ErrorMatched:
    line: str
    category: str


@dataclass(frozen=True)
class Exited:
    code: Optional[int]
    error: Optional[str] = None


class EncoderProcessHandler:
    """
    Owns one encoder process and its threads.

    Two reader threads turn stdout/stderr lines into events, a waiter
    thread reports the exit once both pipes are drained, and a single
    event-loop thread hands every event to ``on_event`` in order.
    """

    def __init__(self, channel_id, job_id, command: List[str], on_event: Callable):
        self.logger = logging.getLogger(f"{__name__}.EncoderProcessHandler.{channel_id}")
        self.channel_id = channel_id
        self.job_id = job_id
        self.command = command
        self.on_event = on_event

        self.process = None
        self.started_at = None
        self.events = queue.Queue()
        self._reader_threads = []
        self._waiter_thread = None
        self._loop_thread = None
        self._error_log_times = {}

    @property
    def pid(self):
        return self.process.pid if self.process else None

    def start(self):
        """Spawn the encoder. OSError from the OS propagates to the caller."""
        self.logger.info(f"Starting encoder for channel {self.channel_id}: {' '.join(self.command)}")
        self.process = subprocess.Popen(
            self.command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            # Encoders echo raw stream metadata, any byte may appear
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
        self.started_at = time.time()

        for stream_name, pipe in (('stdout', self.process.stdout), ('stderr', self.process.stderr)):
            thread = threading.Thread(
                target=self._read_stream,
                args=(pipe, stream_name),
                daemon=True,
                name=f"EncoderReader-{self.channel_id}-{stream_name}",
            )
            thread.start()
            self._reader_threads.append(thread)

        self._waiter_thread = threading.Thread(
            target=self._wait_for_exit, daemon=True, name=f"EncoderWaiter-{self.channel_id}"
        )
        self._waiter_thread.start()

        self._loop_thread = threading.Thread(
            target=self._event_loop, daemon=True, name=f"EncoderEvents-{self.channel_id}"
        )
        self._loop_thread.start()

        self.logger.info(f"Encoder started (PID: {self.process.pid}) for channel {self.channel_id}")
        return self.process.pid

    def _read_stream(self, pipe, stream_name):
        # Drain until EOF; closing early would kill the encoder with SIGPIPE
        try:
            for raw_line in iter(pipe.readline, ''):
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    self._handle_line(line, stream_name)
                except Exception as e:
                    self.logger.error(f"Failed to handle {stream_name} line for channel {self.channel_id}: {e}", exc_info=True)
        except (OSError, ValueError) as e:
            # Pipe closed underneath us by kill()
            self.logger.debug(f"{stream_name} reader for channel {self.channel_id} ended: {e}")
        finally:
            try:
                pipe.close()
            except OSError:
                pass

    def _handle_line(self, line, stream_name):
        self.logger.trace(f"[{stream_name}] {line}")
        self.events.put(Output(line, stream_name))
        if stream_name == 'stderr':
            category = classify_error_line(line)
            if category:
                self._log_error_line(category, line)
                self.events.put(ErrorMatched(line, category))

    def _log_error_line(self, category, line):
        """Rate limit repeated error lines per category. Counting happens elsewhere."""
        now = time.time()
        window = get_transcoding_setting("error_log_window")
        recent = prune_window(self._error_log_times.get(category, []), now, window)
        if len(recent) < get_transcoding_setting("error_log_max_per_window"):
            recent.append(now)
            self.logger.warning(f"Encoder error [{category}] on channel {self.channel_id}: {line}")
        self._error_log_times[category] = recent

    def _wait_for_exit(self):
        for thread in self._reader_threads:
            thread.join()
        try:
            code = self.process.wait()
            self.events.put(Exited(code))
        except OSError as e:
            self.events.put(Exited(None, str(e)))

    def _event_loop(self):
        try:
            while True:
                event = self.events.get()
                try:
                    self.on_event(self, event)
                except Exception as e:
                    self.logger.error(f"Error handling {type(event).__name__} for channel {self.channel_id}: {e}", exc_info=True)
                if isinstance(event, Exited):
                    break
        finally:
            connection.close()

    def is_alive(self):
        return self.process is not None and self.process.poll() is None

    def terminate(self, timeout=None):
        """SIGTERM, then SIGKILL if the encoder has not exited after ``timeout`` seconds."""
        if not self.is_alive():
            return
        timeout = timeout if timeout is not None else get_transcoding_setting("stop_timeout")
        self.logger.info(f"Terminating encoder (PID: {self.process.pid}) for channel {self.channel_id}")
        self.process.terminate()
        try:
            self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self.logger.warning(
                f"Encoder for channel {self.channel_id} did not terminate after {timeout}s. Killing..."
            )
            self.kill()

    def kill(self):
        if not self.is_alive():
            return
        self.logger.info(f"Killing encoder (PID: {self.process.pid}) for channel {self.channel_id}")
        self.process.kill()
        try:
            self.process.wait(timeout=2)
        except subprocess.TimeoutExpired:
            self.logger.error(f"Encoder (PID: {self.process.pid}) for channel {self.channel_id} survived SIGKILL")
