import logging

from .config import get_tier_limits
from .policy import admission_decision, count_by_tier

logger = logging.getLogger(__name__)


class AdmissionController:
    """Per-tier concurrency gate in front of every encoder spawn."""

    def __init__(self, registry):
        self.registry = registry

    def get_usage(self):
        return count_by_tier(self.registry.tiers())

    def check_availability(self, profile):
        """
        Decide whether one more job at ``profile``'s tier fits under its cap.

        Reads a snapshot of the registry; the supervisor calls this again
        under the channel lock right before it spawns.
        """
        decision = admission_decision(profile.quality_tier, self.get_usage(), get_tier_limits())
        if not decision.allowed:
            logger.warning(
                f"Admission denied for profile '{profile.name}' ({decision.tier}): "
                f"{decision.current}/{decision.max}"
            )
        return decision
