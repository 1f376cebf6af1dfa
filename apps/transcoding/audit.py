import logging

from core.events import emit

from .constants import ActionType
from .models import ActionLog

logger = logging.getLogger(__name__)

# Action types published outside the transcoding.* namespace
_EVENT_NAME_OVERRIDES = {
    ActionType.RESOURCE_ALERT: "resource.alert",
}


def event_name_for(action_type):
    return _EVENT_NAME_OVERRIDES.get(action_type, f"transcoding.{action_type}")


def log_action(action_type, description, channel=None, **data):
    """
    Append an ActionLog row and publish the matching core event.

    Audit writes never interrupt the operation that produced them.
    """
    try:
        ActionLog.objects.create(
            action_type=action_type,
            description=description,
            channel=channel,
            additional_data=data or None,
        )
    except Exception as e:
        logger.error(f"Failed to write action log '{action_type}': {e}", exc_info=True)

    emit(event_name_for(action_type), channel, description=description, **data)
