import logging

from django.apps import AppConfig

logger = logging.getLogger(__name__)

# Raw encoder output, below DEBUG
TRACE = 5
logging.addLevelName(TRACE, "TRACE")


def _trace(self, message, *args, **kwargs):
    if self.isEnabledFor(TRACE):
        self._log(TRACE, message, args, **kwargs)


logging.Logger.trace = _trace


class CoreConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'core'
    verbose_name = 'Core'

    def ready(self):
        import core.signals  # noqa

        from core.events import validate_event_configuration
        try:
            validate_event_configuration()
        except ValueError as e:
            # Misconfigured events are dropped by should_emit_event, the app still starts
            logger.error(f"Event configuration error: {e}")
