import logging

from django.apps import AppConfig

logger = logging.getLogger(__name__)


class TranscodingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.transcoding'
    label = 'transcoding'
    verbose_name = 'Transcoding Engine'

    def ready(self):
        """Register signals and start the engine in the process that owns encoders."""
        import apps.transcoding.signals  # noqa

        from transcodarr.app_initialization import should_skip_initialization
        from .config import get_transcoding_setting

        if should_skip_initialization():
            return
        if not get_transcoding_setting("autostart_services"):
            logger.info("Transcoding engine autostart disabled")
            return

        from .engine import TranscodingEngine
        try:
            TranscodingEngine.get_instance().start()
        except Exception as e:
            logger.error(f"Failed to start transcoding engine: {e}", exc_info=True)
