import logging

from django.db.models.signals import post_save
from django.dispatch import receiver

from .models import CoreSettings, SYSTEM_SETTINGS_KEY, TRANSCODING_SETTINGS_KEY

logger = logging.getLogger(__name__)


@receiver(post_save, sender=CoreSettings)
def handle_settings_update(sender, instance, **kwargs):
    """Drop cached settings so the next read sees the saved values."""
    if instance.key == SYSTEM_SETTINGS_KEY:
        from core.events import invalidate_event_level_cache
        invalidate_event_level_cache()
    elif instance.key == TRANSCODING_SETTINGS_KEY:
        from apps.transcoding.config import invalidate_settings_cache
        invalidate_settings_cache()
        logger.debug("Transcoding settings changed, cache invalidated")
