"""Exceptions raised by the transfer subsystem."""


class TransferError(Exception):
    """Base class for transfer errors."""


class InvalidRequestError(TransferError, ValueError):
    """Malformed input at the API boundary (no sources, empty ticket)."""


class SessionNotFoundError(TransferError, KeyError):
    """No session with the given id."""

    def __init__(self, session_id: str):
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Session not found: {self.session_id}"


class InvalidTransitionError(TransferError):
    """A state change that the session lifecycle does not allow."""


class StagingError(TransferError):
    """Linking, copying or compressing the payload failed."""


class SpawnError(TransferError):
    """The transfer binary could not be started."""
