from typing import Any


class SegmentationError(Exception):
    """Base class for rejections raised by the segmentation and campaign core.

    Every subclass carries a stable ``code`` and a message naming the violated
    invariant, so the HTTP layer can render it without inspecting the type.
    """

    code = "segmentation_error"
    status_code = 400

    def __init__(self, message: str, *, details: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(SegmentationError):
    """Unknown field or an operator that is not legal for the field's type."""

    code = "configuration_error"
    status_code = 400


class ValidationError(SegmentationError):
    code = "validation_error"
    status_code = 422


class ConflictError(ValidationError):
    code = "conflict"
    status_code = 409


class NotFoundError(SegmentationError):
    code = "not_found"
    status_code = 404


class GuardViolation(SegmentationError):
    """A lifecycle transition or edit was refused by a state guard."""

    code = "guard_violation"
    status_code = 409

    def __init__(self, message: str, *, reasons: list[str] | None = None):
        self.reasons = list(reasons or [])
        super().__init__(
            message,
            details=[{"field": "status", "message": reason, "type": "guard"} for reason in self.reasons] or None,
        )


class SourceUnavailable(SegmentationError):
    """A fact source failed to answer. Never interpreted as "zero matches"."""

    code = "source_unavailable"
    status_code = 503

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"Fact source '{source}' is unavailable: {message}")
