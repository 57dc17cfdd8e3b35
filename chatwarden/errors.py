"""Error taxonomy shared by the persistence, client and enforcement layers."""


class ModerationError(Exception):
    """Base class for moderation errors."""


class TransientInfraError(ModerationError):
    """Storage or platform hiccup; retried a bounded number of times or fail-opened."""


class PermanentAPIError(ModerationError):
    """The platform rejected the request and retrying the same call will not help."""

    def __init__(self, message: str, malformed: bool = False):
        super().__init__(message)
        self.malformed = malformed


class AlreadySatisfied(ModerationError):
    """The requested side effect is already in place (e.g. message already deleted)."""


class ConfigurationError(ModerationError, ValueError):
    """Invalid setting or argument; surfaced synchronously and never retried."""
