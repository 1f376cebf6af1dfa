"""
Transcoding engine

Process-wide owner of the job registry and every component that acts on
it. Exactly one process runs the engine (see
``transcodarr.app_initialization``); everything else talks to it through
the API or reads the database.
"""

import logging
import threading

from version import VERSION

from .admission import AdmissionController
from .bulk import BulkOperations, ProfileMigrationService
from .cleanup import CleanupScheduler
from .fallback import FallbackController
from .process_handler import EncoderProcessHandler
from .registry import JobRegistry
from .resource_monitor import ProcessWatchdog, ResourceMonitor, get_system_health
from .stream_health import StreamHealthMonitor
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class TranscodingEngine:
    _instance = None
    _lock = threading.Lock()

    @classmethod
    def get_instance(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls):
        """Shut down and forget the current engine."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.shutdown()
            cls._instance = None

    def __init__(self, handler_factory=EncoderProcessHandler):
        self.registry = JobRegistry()
        self.admission = AdmissionController(self.registry)
        self.supervisor = ProcessSupervisor(self.registry, self.admission, handler_factory=handler_factory)
        self.fallback = FallbackController(self.supervisor, self.registry)
        self.supervisor.fallback = self.fallback

        self.resource_monitor = ResourceMonitor()
        self.watchdog = ProcessWatchdog(self.registry)
        self.health_monitor = StreamHealthMonitor()
        self.cleanup = CleanupScheduler(self.registry)

        self.bulk = BulkOperations(self.supervisor)
        self.migrations = ProfileMigrationService(self.supervisor)

        self._started = False
        self._state_lock = threading.Lock()

    @property
    def loops(self):
        return (self.resource_monitor, self.watchdog, self.health_monitor, self.cleanup)

    @property
    def is_started(self):
        return self._started

    def start(self):
        """Reconcile state left by the previous run and start the background loops."""
        with self._state_lock:
            if self._started:
                return None
            self._started = True

        logger.info("Starting transcoding engine")
        try:
            summary = self.supervisor.startup_recovery()
        except Exception as e:
            logger.error(f"Startup recovery failed: {e}", exc_info=True)
            summary = {'error': str(e)}

        for loop in self.loops:
            loop.start()
        return summary

    def shutdown(self):
        with self._state_lock:
            if not self._started:
                return
            self._started = False

        logger.info("Shutting down transcoding engine")
        for loop in self.loops:
            try:
                loop.stop()
            except Exception as e:
                logger.error(f"Error stopping {loop.name}: {e}", exc_info=True)
        self.fallback.cancel_all()
        self.supervisor.shutdown()
        logger.info("Transcoding engine stopped")

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def get_system_health(self):
        return get_system_health(self.resource_monitor, self.registry)

    def get_status(self):
        return {
            'version': VERSION,
            'started': self._started,
            'live_jobs': len(self.registry),
            'loops': {loop.name: loop.is_running for loop in self.loops},
            'resource_monitor': self.resource_monitor.get_status(),
            'migration_in_progress': self.migrations.in_progress,
        }
