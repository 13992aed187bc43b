class RollwaveError(Exception):
    """Base error for Rollwave."""


class RecoverableError(RollwaveError):
    """Indicates the operation can be retried safely."""


class PermanentError(RollwaveError):
    """Indicates the operation should not be retried."""


class AuthError(RollwaveError):
    """Authentication or authorization failure."""


class ValidationError(RollwaveError):
    """Input validation failure."""


class NotFoundError(RollwaveError):
    """Referenced entity does not exist."""


class StateConflictError(RollwaveError):
    """Entity is not in a status that allows the requested transition."""
