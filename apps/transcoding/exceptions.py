class TranscodingError(Exception):
    """Base class for transcoding engine errors."""


class ChannelNotFound(TranscodingError):
    pass


class ProfileNotFound(TranscodingError):
    pass


class InvalidProfile(TranscodingError):
    pass


class SpawnFailure(TranscodingError):
    """The OS could not create the encoder process."""


class ResourceExhausted(TranscodingError):
    """Admission denied: the quality tier is at its concurrency ceiling."""

    def __init__(self, tier, current, maximum):
        self.tier = tier
        self.current = current
        self.maximum = maximum
        super().__init__(f"Resource limit reached for profile type: {tier} ({current}/{maximum})")


class MigrationInProgress(TranscodingError):
    pass


class InvalidChannelState(TranscodingError):
    """The requested operation does not apply to the channel's current status."""


class EngineUnavailable(TranscodingError):
    """This process does not own the running transcoding engine."""
