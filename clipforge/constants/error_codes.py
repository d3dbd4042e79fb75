"""Error codes dictionary for the render API.

Single source of truth for every error code a caller can see, either in an
HTTP error response or in the ``error_code`` field of a failed job.
"""

from typing import TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    suggested_fix: str


ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Submission errors (not retryable, fix input)
    # ==========================================================================
    "VALIDATION_ERROR": {
        "retryable": False,
        "suggested_fix": "Check the request body against the render request schema",
    },
    "INVALID_REFERENCE": {
        "retryable": False,
        "suggested_fix": (
            "Upload the file first (PUT /api/storage/upload/{filename}) and use the "
            "returned http(s) URL as the clip reference"
        ),
    },
    # ==========================================================================
    # Resolving stage
    # ==========================================================================
    "DOWNLOAD_FAILED": {
        "retryable": True,
        "suggested_fix": "Verify the asset URL is publicly reachable, then submit a new job",
    },
    "TOO_MANY_REDIRECTS": {
        "retryable": False,
        "suggested_fix": "Use the final (non-redirecting) URL of the asset",
    },
    # ==========================================================================
    # Encoding stage
    # ==========================================================================
    "ENCODE_FAILED": {
        "retryable": False,
        "suggested_fix": "Check that every clip is a decodable video file",
    },
    "ENCODE_TIMEOUT": {
        "retryable": True,
        "suggested_fix": "Reduce the requested duration or the number of clips",
    },
    # ==========================================================================
    # Publishing stage
    # ==========================================================================
    "PUBLISH_FAILED": {
        "retryable": True,
    },
    # ==========================================================================
    # Polling
    # ==========================================================================
    "JOB_NOT_FOUND": {
        "retryable": False,
        "suggested_fix": "Jobs expire after completion; submit a new render job",
    },
    "NOT_FOUND": {
        "retryable": False,
    },
    # ==========================================================================
    # System errors
    # ==========================================================================
    "INTERNAL_ERROR": {
        "retryable": True,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get error specification by code.

    Args:
        code: The error code

    Returns:
        ErrorCodeSpec with retryable flag and suggested fix
    """
    return ERROR_CODES.get(code, {"retryable": False})
