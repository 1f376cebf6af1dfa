import logging
import threading

from django.db import connection

logger = logging.getLogger(__name__)


def close_thread_connection():
    """Drop the calling thread's DB connection. No-op on the main thread."""
    if threading.current_thread() is not threading.main_thread():
        connection.close()


def _run_and_close(target, args, kwargs):
    try:
        target(*args, **kwargs)
    except Exception as e:
        logger.error(f"Background task {getattr(target, '__name__', target)} failed: {e}", exc_info=True)
    finally:
        close_thread_connection()


def run_in_background(target, *args, name=None, **kwargs):
    """Run ``target`` on a daemon thread that closes its DB connection when done."""
    thread = threading.Thread(
        target=_run_and_close,
        args=(target, args, kwargs),
        daemon=True,
        name=name,
    )
    thread.start()
    return thread


def start_timer(delay, target, *args, name=None):
    """One-shot daemon timer with the same connection handling as ``run_in_background``."""
    timer = threading.Timer(delay, _run_and_close, args=(target, args, {}))
    timer.daemon = True
    if name:
        timer.name = name
    timer.start()
    return timer


class BackgroundLoop:
    """
    A daemon thread that calls ``run_once`` every ``interval()`` seconds
    until ``stop()``. Errors are logged per iteration and never end the loop.
    """

    name = "BackgroundLoop"

    def __init__(self):
        self._stop_event = threading.Event()
        self._thread = None

    def interval(self):
        raise NotImplementedError

    def initial_delay(self):
        return 0

    def run_once(self):
        raise NotImplementedError

    @property
    def is_running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name=self.name)
        self._thread.start()
        logger.info(f"{self.name} started")

    def stop(self, timeout=5):
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info(f"{self.name} stopped")

    def _run(self):
        try:
            if self._stop_event.wait(self.initial_delay()):
                return
            while not self._stop_event.is_set():
                try:
                    self.run_once()
                except Exception as e:
                    logger.error(f"Error in {self.name}: {e}", exc_info=True)
                if self._stop_event.wait(self.interval()):
                    break
        finally:
            close_thread_connection()
