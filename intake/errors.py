from typing import Dict, List


class IntakeError(Exception):
    """Base class for contact intake failures."""


class ValidationError(IntakeError):
    """Client-caused failure carrying every field error found in one pass."""

    def __init__(self, errors: List[Dict[str, str]], message: str = "Invalid submission"):
        super().__init__(message)
        self.message = message
        self.errors = list(errors)

    def to_response(self) -> Dict[str, object]:
        return {"success": False, "message": self.message, "errors": self.errors}


class TransportConfigurationError(IntakeError):
    """A mail provider could not be built from the current configuration."""


class SendError(IntakeError):
    """A single message could not be handed to the mail relay."""


class PersistenceError(IntakeError):
    """The contact store failed to read or write a record."""


class RecordNotFoundError(PersistenceError):
    pass


class InvalidTransitionError(PersistenceError):
    """A status change that would move a record backwards in its lifecycle."""
