"""
Exception hierarchy for the election core.

Everything raised on purpose derives from TallyError so the HTTP layer can
map it in one place; request handlers translate to status codes, nothing
below them knows about HTTP.
"""


class TallyError(Exception):
    """Base class for all election-core errors."""


class ConfigurationError(TallyError):
    """A required setting (e.g. the voter-key secret) is missing or invalid."""


class DuplicateKeyError(TallyError):
    """A unique index rejected an insert or update."""

    def __init__(self, message: str = "Duplicate key", index: str | None = None):
        super().__init__(message)
        self.index = index


class DuplicateVoterError(DuplicateKeyError):
    """A voter with this email or unique id already exists for the election."""


class DecryptionError(TallyError):
    """A stored voter key is malformed or cannot be decrypted."""


class AuthError(TallyError):
    """Voter credentials were rejected. Never says which part was wrong."""

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message)


class BulkCreateError(TallyError):
    """A batch notification insert failed in the store."""


class NotFoundError(TallyError):
    """The requested document does not exist (or is not visible to the caller)."""


class VoterNotFoundError(NotFoundError):
    pass


class ElectionNotFoundError(NotFoundError):
    pass


class NotificationNotFoundError(NotFoundError):
    pass


class ChannelError(TallyError):
    """An external delivery channel (email, push, SMS) failed."""


class InvalidStatusError(TallyError, ValueError):
    """A status value outside its enumeration."""


class UndeliverableError(ChannelError):
    """The channel can never deliver this notification; retrying will not help."""
