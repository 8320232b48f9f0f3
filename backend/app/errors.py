"""Error taxonomy shared by the lifecycle manager, the AI adapter and the HTTP layer."""
from typing import Any, Optional


class ProcurementError(Exception):
    """Base class; main.py renders every subclass as {"error": label, "details": ...}."""
    status_code = 500
    label = "Internal server error"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details if details is not None else message


class ValidationError(ProcurementError):
    status_code = 400
    label = "Validation error"


class NotFoundError(ProcurementError):
    status_code = 404
    label = "Not found"


class ConflictError(ProcurementError):
    status_code = 409
    label = "Conflict"


class InvalidStatusError(ProcurementError):
    status_code = 400
    label = "Invalid status"


class NoProposalsError(ProcurementError):
    status_code = 400
    label = "No proposals to compare"


class AIResponseError(ProcurementError):
    """The model call failed or produced unusable output. The cause is chained."""
    status_code = 500
    label = "AI response error"


class NotificationError(Exception):
    """Raised by the email gateway for a single recipient; never escapes send_rfp."""


class SchemaError(ValueError):
    """Structured data from the model does not match the target shape."""

    def __init__(self, schema: str, paths: list[str], messages: Optional[list[str]] = None):
        self.schema = schema
        self.paths = paths
        self.messages = messages or []
        detail = "; ".join(
            f"{p}: {m}" for p, m in zip(paths, self.messages)
        ) if self.messages else ", ".join(paths)
        super().__init__(f"{schema} failed validation at {detail}")
