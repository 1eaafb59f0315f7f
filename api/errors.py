"""
Pipeline error taxonomy and error message sanitization.

Request-time errors (validation, auth, permission, quota, not found) carry an
HTTP status code and are rendered by the API's exception handler. Stage-local
errors (transcode, transcription, webhook delivery) are absorbed by the
pipeline and recorded as state on the job, asset, or webhook.

Error text stored on assets goes through sanitize_error_message() so internal
details (paths, driver messages) are never exposed to API clients, while the
original is still logged for debugging.
"""

import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    status_code = 500

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__doc__ or self.__class__.__name__
        super().__init__(self.message)


class ValidationError(PipelineError):
    """Malformed intake, webhook, or key request."""

    status_code = 400


class AuthError(PipelineError):
    """Missing, invalid, inactive or expired credential."""

    status_code = 401


class PermissionDeniedError(PipelineError):
    """Valid credential without the required permission scope."""

    status_code = 403


class QuotaExceededError(PipelineError):
    """Owner storage quota would be exceeded."""

    status_code = 403


class NotFoundError(PipelineError):
    """Resource does not exist or is not owned by the caller."""

    status_code = 404


class DuplicateJobError(PipelineError):
    """Asset already has a non-terminal transcode job."""

    status_code = 409


class NotOwnerError(PipelineError):
    """Worker tried to mutate a job it no longer holds."""

    status_code = 409

    def __init__(self, job_id: str, worker_id: str):
        self.job_id = job_id
        self.worker_id = worker_id
        super().__init__(f"Job {job_id} is not held by worker {worker_id}")


class TranscodeFailure(PipelineError):
    """Transcoding or demuxing failed; fatal to the job."""


class EngineUnavailable(PipelineError):
    """Transcription engine missing or erroring; downgrades transcription only."""


class StorageError(PipelineError):
    """An object transfer to or from the object store failed."""

    def __init__(self, key: str, detail: str):
        self.key = key
        self.detail = detail
        super().__init__(f"Storage operation failed for {key}: {detail}")


class WebhookDeliveryFailure(PipelineError):
    """A single webhook delivery attempt failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.response_status = status_code


# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r"/home/\w+/",  # Home directory paths
    r"/mnt/\w+/",  # Mount paths
    r"/tmp/\w+",  # Temp paths
    r"/var/\w+/",  # Var paths
    r"line \d+",  # Line numbers in stack traces
    r'File "[^"]+\.py"',  # Python file paths
    r"Permission denied",
    r"No such file or directory",
    r"UNIQUE constraint failed",
    r"sqlite3?\.",
    r"asyncpg\.",
]

# Generic user-friendly messages for common error types
ERROR_MESSAGES = {
    "ffmpeg": "Video processing failed. Please try uploading again.",
    "ffprobe": "Could not read media file. The file may be corrupted or in an unsupported format.",
    "timeout": "Video processing timed out. Please try again with a shorter video.",
    "no_video_stream": "No video stream found. Please upload a valid video file.",
    "download": "Could not retrieve the uploaded file. Please re-upload it.",
    "upload": "Could not store processed output. Please try again.",
    "database": "A database error occurred. Please try again.",
    "general": "An error occurred while processing your media. Please try again.",
}


def truncate_error(message: Optional[str], max_length: int = 500) -> Optional[str]:
    """Truncate an error message to max_length characters, marking the cut."""
    if message is None:
        return None
    if len(message) <= max_length:
        return message
    return message[: max(0, max_length - 3)] + "..."


def sanitize_error_message(
    error: Optional[str],
    log_original: bool = True,
    context: str = "",
) -> Optional[str]:
    """
    Sanitize an error message for safe display to API clients.

    Args:
        error: The original error message (may contain internal details)
        log_original: Whether to log the original message before sanitizing
        context: Additional context for logging (e.g., "asset_id=...")

    Returns:
        A sanitized, user-friendly error message, or None if input was None
    """
    if error is None:
        return None

    if log_original and error:
        log_msg = "Original error"
        if context:
            log_msg += f" ({context})"
        log_msg += f": {error}"
        logger.warning(log_msg)

    error_lower = error.lower()

    if "timeout" in error_lower or "timed out" in error_lower:
        return ERROR_MESSAGES["timeout"]

    if "ffprobe" in error_lower:
        return ERROR_MESSAGES["ffprobe"]

    if "no video stream" in error_lower:
        return ERROR_MESSAGES["no_video_stream"]

    if "ffmpeg" in error_lower or "transcode" in error_lower:
        return ERROR_MESSAGES["ffmpeg"]

    if "download" in error_lower:
        return ERROR_MESSAGES["download"]

    if "upload" in error_lower:
        return ERROR_MESSAGES["upload"]

    if "sqlite" in error_lower or "database" in error_lower or "constraint" in error_lower:
        return ERROR_MESSAGES["database"]

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return ERROR_MESSAGES["general"]

    # Short messages without path-like segments are safe to show as-is
    if len(error) < 100 and "/" not in error and "\\" not in error:
        return error

    return ERROR_MESSAGES["general"]
