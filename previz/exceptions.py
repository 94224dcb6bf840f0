"""Custom exceptions for the previz export service.

Every pipeline-level failure is a ``PrevizError`` carrying a machine-readable
code and an HTTP status, so the API layer and the CLI can surface the message
verbatim.
"""

from typing import Any


class PrevizError(Exception):
    """Base exception for all previz application errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API error responses."""
        return {"code": self.code, "message": self.message}


# =============================================================================
# Validation Errors (400)
# =============================================================================


class ValidationError(PrevizError):
    """Base class for user-input errors, raised before any resource is allocated."""

    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidResolutionError(ValidationError):
    """Resolution string is malformed or out of range."""

    code = "INVALID_RESOLUTION"
    message = "Please enter valid resolution values (1-1920 for each dimension)"

    def __init__(self, resolution: str | None = None, max_dimension: int = 1920):
        message = (
            f"Invalid resolution '{resolution}': expected <width>x<height> "
            f"with each dimension between 1 and {max_dimension}"
            if resolution is not None
            else self.message
        )
        super().__init__(message)


class InvalidExportSettingsError(ValidationError):
    """An export setting has an unsupported value."""

    code = "INVALID_EXPORT_SETTINGS"
    message = "Invalid export settings"

    def __init__(self, field: str | None = None, value: Any = None, allowed: Any = None):
        message = self.message
        if field is not None:
            message = f"Invalid value for '{field}': {value!r}"
            if allowed is not None:
                message += f" (allowed: {allowed})"
        super().__init__(message)


class InvalidExportRegionError(ValidationError):
    """Export region is outside the timeline or empty."""

    code = "INVALID_EXPORT_REGION"
    message = "Invalid export region"

    def __init__(
        self,
        start: float | None = None,
        end: float | None = None,
        duration: float | None = None,
    ):
        message = self.message
        if duration is not None:
            message = (
                "Invalid export region. Start must be >= 0, End must be > Start and "
                f"<= timeline duration ({duration:.2f}s)."
            )
            if start is not None and end is not None:
                message += f" Got {start:.3f}s to {end:.3f}s."
        super().__init__(message)


class EmptyTimelineError(ValidationError):
    """Timeline snapshot has no clips."""

    code = "EMPTY_TIMELINE"
    message = "Timeline is empty"


# =============================================================================
# Conflict Errors (409)
# =============================================================================


class ConflictError(PrevizError):
    """Base class for conflict errors."""

    code = "CONFLICT"
    status_code = 409


class ExportInProgressError(ConflictError):
    """Another export run is in flight."""

    code = "EXPORT_IN_PROGRESS"
    message = "Export already in progress"


class IllegalStateTransitionError(ConflictError):
    """An export run was asked to move to a state it cannot reach."""

    code = "ILLEGAL_STATE_TRANSITION"
    message = "Illegal export state transition"

    def __init__(self, current: str | None = None, target: str | None = None):
        message = self.message
        if current is not None and target is not None:
            message = f"Illegal export state transition: {current} -> {target}"
        super().__init__(message)


# =============================================================================
# Host / Encoder Errors
# =============================================================================


class CaptureSurfaceUnavailableError(PrevizError):
    """The encoder executable used to capture frames is not available."""

    code = "CAPTURE_SURFACE_UNAVAILABLE"
    status_code = 503
    message = "Capture surface not available"

    def __init__(self, executable: str | None = None):
        message = f"{executable} not found on PATH" if executable else self.message
        super().__init__(message)


class CodecNegotiationError(PrevizError):
    """No container/codec combination could be negotiated."""

    code = "CODEC_NOT_SUPPORTED"
    status_code = 400
    message = "No supported video codec available"

    def __init__(self, requested_format: str | None = None, tried: list[str] | None = None):
        message = self.message
        if requested_format is not None:
            message = f"No supported codec for format '{requested_format}'"
            if tried:
                message += f" (tried: {', '.join(tried)})"
        super().__init__(message)


class EncoderRuntimeError(PrevizError):
    """The encoder failed while recording or finalizing."""

    code = "ENCODER_ERROR"
    status_code = 500
    message = "Encoder error: Unknown error"

    def __init__(self, detail: str | None = None):
        super().__init__(f"Encoder error: {detail}" if detail else self.message)


# =============================================================================
# Resource Errors (recovered locally, never surfaced)
# =============================================================================


class MediaLoadError(PrevizError):
    """A clip's source could not be fetched or decoded."""

    code = "MEDIA_LOAD_FAILED"
    status_code = 422
    message = "Media could not be loaded"

    def __init__(self, source: str | None = None, reason: str | None = None):
        message = self.message
        if source is not None:
            message = f"Failed to load {source[:80]}"
            if reason:
                message += f": {reason}"
        super().__init__(message)
