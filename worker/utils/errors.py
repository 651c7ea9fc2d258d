"""
Error taxonomy for the video processing pipeline.

Every error carries a human readable ``message`` and a stable ``code`` so
callers (CLI, HTTP layer) can map failures without string matching.
"""
from typing import Any, Dict, List, Optional, Sequence


class PipelineError(Exception):
    """Base exception for pipeline errors."""

    def __init__(self, message: str, code: str = "PIPELINE_ERROR", status_code: int = 500):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(message)


class ValidationError(PipelineError):
    """Input validation errors, raised before any external process runs."""

    def __init__(self, message: str, field: str = None):
        self.field = field
        super().__init__(message, "VALIDATION_ERROR", 400)


# Workspace

class WorkspaceError(PipelineError):
    """Workspace-related errors."""

    def __init__(self, message: str, video_id: str = None, code: str = "WORKSPACE_ERROR", status_code: int = 500):
        self.video_id = video_id
        super().__init__(message, code, status_code)


class WorkspaceNotFoundError(WorkspaceError):
    def __init__(self, video_id: str):
        super().__init__(f"Workspace not found for video: {video_id}", video_id, "WORKSPACE_NOT_FOUND", 404)


class WorkspaceCreationError(WorkspaceError):
    def __init__(self, video_id: str, reason: str):
        self.reason = reason
        super().__init__(f"Failed to create workspace for video {video_id}: {reason}", video_id, "WORKSPACE_CREATION_FAILED")


class InsufficientSpaceError(WorkspaceError):
    def __init__(self, required_bytes: int, available_bytes: int):
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        super().__init__(
            f"Insufficient disk space: required {required_bytes} bytes, available {available_bytes} bytes",
            code="INSUFFICIENT_SPACE",
            status_code=507,
        )


# External processes

class ProcessError(PipelineError):
    """External process errors."""

    def __init__(self, message: str, command: str, code: str = "PROCESS_ERROR"):
        self.command = command
        super().__init__(message, code, 500)


class ProcessExecutionError(ProcessError):
    """Process exited with a non-zero code or could not be spawned."""

    def __init__(self, exit_code: int, stderr: str, command: str):
        self.exit_code = exit_code
        self.stderr = stderr or ""
        tail = self.stderr.strip()[-500:]
        message = f"Command failed with exit code {exit_code}: {command}"
        if tail:
            message = f"{message}\n{tail}"
        super().__init__(message, command, "PROCESS_EXECUTION_FAILED")


class ProcessTimeoutError(ProcessError):
    """Process exceeded its timeout and was killed."""

    def __init__(self, command: str, timeout_ms: int, pid: Optional[int] = None):
        self.timeout_ms = timeout_ms
        self.pid = pid
        super().__init__(f"Command timed out after {timeout_ms}ms: {command}", command, "PROCESS_TIMEOUT")


# Transcoding

class TranscodingError(PipelineError):
    """Base exception for transcoding operations."""

    def __init__(self, message: str, code: str = "TRANSCODING_ERROR", cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message, code, 500)


class TranscodingSystemUnavailableError(TranscodingError):
    def __init__(self, message: str = "FFmpeg is not available on this system"):
        super().__init__(message, "TRANSCODING_SYSTEM_UNAVAILABLE")


class TranscodingFailedError(TranscodingError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, "TRANSCODING_FAILED", cause)


class UnsupportedVideoCodecError(TranscodingError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, "UNSUPPORTED_VIDEO_CODEC", cause)


class InsufficientResourcesError(TranscodingError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, "INSUFFICIENT_RESOURCES", cause)


# Packaging

class PackagingError(PipelineError):
    """Base exception for packaging operations."""

    def __init__(self, message: str, code: str = "PACKAGING_ERROR", cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message, code, 500)


class PackagingSystemUnavailableError(PackagingError):
    def __init__(self, message: str = "Shaka Packager is not available on this system"):
        super().__init__(message, "PACKAGING_SYSTEM_UNAVAILABLE")


class PackagingFailedError(PackagingError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, "PACKAGING_FAILED", cause)


class EncryptionSetupError(PackagingError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, "ENCRYPTION_SETUP_FAILED", cause)


class ManifestCreationError(PackagingError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, "MANIFEST_CREATION_FAILED", cause)


class PackageValidationError(PackagingError):
    """Packaged output failed verification; ``issues`` lists every failed check."""

    def __init__(self, issues: Sequence[str]):
        self.issues: List[str] = list(issues)
        super().__init__(
            f"Package validation failed: {'; '.join(self.issues)}",
            "PACKAGE_VALIDATION_FAILED",
        )


# Keys

class KeyManagementError(PipelineError):
    def __init__(self, message: str, video_id: str = None, code: str = "KEY_MANAGEMENT_ERROR", status_code: int = 500):
        self.video_id = video_id
        super().__init__(message, code, status_code)


class KeyNotFoundError(KeyManagementError):
    def __init__(self, video_id: str):
        super().__init__(f"Encryption key not found for video: {video_id}", video_id, "KEY_NOT_FOUND", 404)


# Thumbnails

class ThumbnailGenerationError(PipelineError):
    def __init__(self, message: str):
        super().__init__(message, "THUMBNAIL_GENERATION_FAILED", 500)


# Orchestration

class OrchestrationError(PipelineError):
    """Pipeline run failed; tagged with the failing phase and video id."""

    def __init__(self, phase: str, video_id: str, original_error: Optional[BaseException] = None):
        self.phase = phase
        self.video_id = video_id
        self.original_error = original_error
        detail = str(original_error) if original_error else "unknown error"
        code = getattr(original_error, "code", None) or "ORCHESTRATION_FAILED"
        super().__init__(f"Video processing failed during {phase} for {video_id}: {detail}", code, 500)


# Queue

class QueueError(PipelineError):
    def __init__(self, message: str, code: str = "QUEUE_ERROR"):
        super().__init__(message, code, 503)


class QueueFullError(QueueError):
    def __init__(self, max_queue_size: int):
        self.max_queue_size = max_queue_size
        super().__init__(
            f"Video processing queue is full (max: {max_queue_size}). Too many videos being processed.",
            "QUEUE_FULL",
        )


class QueueTimeoutError(QueueError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Video processing task timed out after {timeout}s", "QUEUE_TIMEOUT")


def error_to_dict(exc: BaseException) -> Dict[str, Any]:
    """Serialize an exception for structured logs and CLI output."""
    if isinstance(exc, PipelineError):
        data: Dict[str, Any] = {
            "code": exc.code,
            "message": exc.message,
            "type": type(exc).__name__,
        }
        if isinstance(exc, OrchestrationError):
            data["phase"] = exc.phase
            data["video_id"] = exc.video_id
        if isinstance(exc, PackageValidationError):
            data["issues"] = exc.issues
        return data

    return {
        "code": "INTERNAL_ERROR",
        "message": str(exc),
        "type": type(exc).__name__,
    }
