"""
Compatibility shim: map raw tool failures onto the pipeline error taxonomy.

FFmpeg and Shaka Packager do not report failure categories in a machine
readable form, so the category is guessed from substrings of the error
message and captured stderr. Matching depends on the tool version and on an
English locale. Keep all such matching in this module.

Path tokens are dropped before matching and markers only match at the start
of a word, so a file or video id such as "monkey" or "workspace" never
decides the category.
"""
import re
from typing import Iterable, Optional

from worker.utils.errors import (
    EncryptionSetupError,
    InsufficientResourcesError,
    ManifestCreationError,
    PackagingError,
    PackagingFailedError,
    ProcessExecutionError,
    ProcessTimeoutError,
    TranscodingError,
    TranscodingFailedError,
    UnsupportedVideoCodecError,
)

RESOURCE_MARKERS = ('memory', 'no space left', 'space', 'resource')
MANIFEST_MARKERS = ('manifest', 'mpd')
ENCRYPTION_MARKERS = ('encrypt', 'key', 'drm')

PATH_TOKEN = re.compile(r"\S*[\\/]\S*")


def _error_text(error: BaseException) -> str:
    # The message of a process error embeds the command line, which always
    # mentions keys and manifest paths; match on stderr only.
    if isinstance(error, ProcessExecutionError):
        text = error.stderr
    else:
        stderr: Optional[str] = getattr(error, 'stderr', None)
        text = f"{error}\n{stderr or ''}"
    return PATH_TOKEN.sub(" ", text).lower()


def _mentions(text: str, markers: Iterable[str]) -> bool:
    return any(re.search(rf"\b{re.escape(marker)}", text) for marker in markers)


def classify_transcoding_error(error: BaseException, context: str = "Transcoding failed") -> TranscodingError:
    if isinstance(error, TranscodingError):
        return error
    if isinstance(error, ProcessTimeoutError):
        return TranscodingFailedError(f"{context}: timed out after {error.timeout_ms}ms", error)

    text = _error_text(error)
    if ('codec' in text and 'not supported' in text) or 'unknown encoder' in text:
        return UnsupportedVideoCodecError(f"{context}: unsupported video codec", error)
    if _mentions(text, RESOURCE_MARKERS):
        return InsufficientResourcesError(f"{context}: insufficient system resources", error)

    detail = error.stderr.strip()[-300:] if isinstance(error, ProcessExecutionError) and error.stderr else str(error)
    return TranscodingFailedError(f"{context}: {detail}", error)


def classify_packaging_error(error: BaseException, context: str = "Packaging failed") -> PackagingError:
    if isinstance(error, PackagingError):
        return error
    if isinstance(error, ProcessTimeoutError):
        return PackagingFailedError(f"{context}: timed out after {error.timeout_ms}ms", error)

    text = _error_text(error)
    if _mentions(text, MANIFEST_MARKERS):
        return ManifestCreationError(f"{context}: manifest creation failed", error)
    if _mentions(text, ENCRYPTION_MARKERS):
        return EncryptionSetupError(f"{context}: encryption setup failed", error)
    return PackagingFailedError(f"{context}: {error}", error)
