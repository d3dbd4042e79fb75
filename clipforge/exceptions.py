"""Custom exceptions for the ClipForge render backend.

Every exception carries a stable, machine-readable ``code``. The same code is
used in HTTP error responses and in the ``error_code`` of a failed job.
"""

from clipforge.constants.error_codes import get_error_spec
from clipforge.schemas.envelope import ErrorInfo, ErrorLocation


class ClipForgeError(Exception):
    """Base exception for all ClipForge application errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        location: ErrorLocation | None = None,
        suggested_fix: str | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.location = location
        self.suggested_fix = suggested_fix
        super().__init__(self.message)

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo for API response."""
        spec = get_error_spec(self.code)
        return ErrorInfo(
            code=self.code,
            message=self.message,
            location=self.location,
            retryable=spec.get("retryable", False),
            suggested_fix=self.suggested_fix or spec.get("suggested_fix"),
        )


# =============================================================================
# Validation Errors (400)
# =============================================================================


class ValidationError(ClipForgeError):
    """Request is malformed; the caller must fix it."""

    code = "VALIDATION_ERROR"
    status_code = 400
    message = "Invalid render request"

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str | None = None,
        index: int | None = None,
    ):
        location = ErrorLocation(field=field, index=index) if field else None
        super().__init__(message, location=location)


class InvalidReferenceError(ClipForgeError):
    """Reference is neither a managed local handle nor an http(s) URL."""

    code = "INVALID_REFERENCE"
    status_code = 400
    message = "Invalid asset reference"

    def __init__(self, reference: str | None = None, reason: str | None = None):
        if reason:
            message = reason
        elif reference:
            message = f"Unsupported asset reference: {reference!r}"
        else:
            message = self.message
        self.reference = reference
        super().__init__(message)


# =============================================================================
# Resolving Errors (502)
# =============================================================================


class DownloadError(ClipForgeError):
    """Remote asset could not be fetched."""

    code = "DOWNLOAD_FAILED"
    status_code = 502
    message = "Asset download failed"

    def __init__(
        self,
        url: str | None = None,
        *,
        status: int | None = None,
        reason: str | None = None,
    ):
        parts = [f"Download failed: {url}" if url else self.message]
        if status is not None:
            parts.append(f"HTTP {status}")
        if reason:
            parts.append(reason)
        self.url = url
        self.status = status
        super().__init__(" - ".join(parts))


class TooManyRedirectsError(DownloadError):
    """Redirect chain exceeded the configured hop limit."""

    code = "TOO_MANY_REDIRECTS"

    def __init__(self, url: str | None = None, max_redirects: int | None = None):
        reason = f"more than {max_redirects} redirects" if max_redirects is not None else "too many redirects"
        super().__init__(url, reason=reason)


# =============================================================================
# Encoding Errors (500/504)
# =============================================================================


class EncodeError(ClipForgeError):
    """Encoder exited unsuccessfully or produced no usable output."""

    code = "ENCODE_FAILED"
    status_code = 500
    message = "Encoding failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        exit_code: int | None = None,
        diagnostic_tail: str = "",
    ):
        msg = message or self.message
        if exit_code is not None:
            msg = f"{msg} (exit code {exit_code})"
        if diagnostic_tail:
            msg = f"{msg}: {diagnostic_tail}"
        self.exit_code = exit_code
        self.diagnostic_tail = diagnostic_tail
        super().__init__(msg)


class EncodeTimeoutError(EncodeError):
    """Encoder exceeded its wall-clock budget and was killed."""

    code = "ENCODE_TIMEOUT"
    status_code = 504

    def __init__(self, timeout_seconds: float | None = None):
        message = (
            f"Encoding timed out after {timeout_seconds:g}s"
            if timeout_seconds is not None
            else "Encoding timed out"
        )
        super().__init__(message)


# =============================================================================
# Publishing Errors (502)
# =============================================================================


class PublishError(ClipForgeError):
    """Upload of the rendered artifact failed."""

    code = "PUBLISH_FAILED"
    status_code = 502
    message = "Publishing the rendered video failed"


# =============================================================================
# Resource Not Found Errors (404)
# =============================================================================


class JobNotFoundError(ClipForgeError):
    """Job id is unknown or has expired."""

    code = "JOB_NOT_FOUND"
    status_code = 404
    message = "Job not found"

    def __init__(self, job_id: str | None = None):
        message = f"Job not found: {job_id}" if job_id else self.message
        super().__init__(message)


# =============================================================================
# System Errors (500)
# =============================================================================


class InvalidTransitionError(ClipForgeError):
    """A job was asked to move to a state it cannot reach."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"Job {job_id}: invalid transition {current} -> {target}")
