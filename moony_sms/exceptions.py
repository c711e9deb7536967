from typing import Optional


class MoonyError(Exception):
    """Base class for errors raised by the SMS core."""


class ConfigurationError(MoonyError, RuntimeError):
    """Raised when required settings or secrets are missing or malformed."""


class GoalMutationError(MoonyError):
    """
    Raised when a spending goal could not be committed.

    This is the user's primary request, so it is never swallowed: the worker
    reports the queue record as failed and SQS redelivers it.
    """

    def __init__(self, message: str, user_id: Optional[str] = None):
        super().__init__(message)
        self.user_id = user_id
