"""Error taxonomy for the flow copilot."""

from typing import Optional


class FlowPilotError(Exception):
    """Base class for all flowpilot errors."""
    pass


class ValidationError(FlowPilotError):
    """Raised when tool arguments are malformed or out of range."""
    pass


class NotFoundError(FlowPilotError):
    """Raised when a referenced node, edge or record does not exist."""

    def __init__(self, entity: str, key: str, message: Optional[str] = None):
        self.entity = entity
        self.key = key
        super().__init__(message or f"{entity} not found: {key}")


class ConflictError(FlowPilotError):
    """Raised by the store when a record with the same key already exists."""
    pass


class TransportError(FlowPilotError):
    """Raised when the model provider or execution server call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class CancellationError(FlowPilotError):
    """Raised when a turn is aborted by the user or a newer turn."""
    pass
