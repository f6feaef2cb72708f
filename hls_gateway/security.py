"""Validation of user-supplied video ids and HLS file names."""

import logging
import re

from hls_gateway.exceptions import UnsafeInputError, UnsupportedFileTypeError

logger = logging.getLogger(__name__)

# Characters commonly found in uploaded filenames; traversal is checked separately
VIDEO_ID_PATTERN = re.compile(r"^[a-zA-Z0-9._\-/ +]+$")
FILENAME_PATTERN = re.compile(r"^[a-zA-Z0-9._\-]+$")

MANIFEST_EXTENSIONS = (".m3u8",)
SEGMENT_CONTENT_TYPES = {
    ".ts": "video/MP2T",
    ".m4s": "video/iso.segment",
}
MANIFEST_CONTENT_TYPE = "application/vnd.apple.mpegurl"


def sanitize_video_id(video_id: str) -> str:
    """
    Validate a video id before it becomes part of a storage key.

    Raises:
        UnsafeInputError: If the id is empty, absolute, contains `..`,
            NUL bytes or characters outside the allowed set
    """
    if not video_id or not video_id.strip():
        raise UnsafeInputError("Video key cannot be empty")
    if ".." in video_id:
        logger.warning(f"Path traversal attempt detected: {video_id!r}")
        raise UnsafeInputError("Invalid video key: path traversal detected")
    if video_id.startswith("/"):
        raise UnsafeInputError("Invalid video key: absolute paths not allowed")
    if "\0" in video_id:
        raise UnsafeInputError("Invalid video key: null bytes not allowed")
    if not VIDEO_ID_PATTERN.match(video_id):
        raise UnsafeInputError("Invalid video key: contains unsafe characters")
    return video_id


def sanitize_filename(filename: str) -> str:
    """
    Validate a single HLS file name (no path components).

    Raises:
        UnsafeInputError: If the name is empty, has path components or unsafe characters
    """
    if not filename or not filename.strip():
        raise UnsafeInputError("Filename cannot be empty")
    if ".." in filename or "/" in filename:
        raise UnsafeInputError("Invalid filename: path components not allowed")
    if "\0" in filename:
        raise UnsafeInputError("Invalid filename: null bytes not allowed")
    if not FILENAME_PATTERN.match(filename):
        raise UnsafeInputError("Invalid filename: contains unsafe characters")
    return filename


def is_manifest(filename: str) -> bool:
    return filename.lower().endswith(MANIFEST_EXTENSIONS)


def segment_content_type(filename: str) -> str:
    """
    Content-Type for a segment file.

    Raises:
        UnsupportedFileTypeError: For anything that is neither a manifest nor a known segment
    """
    lowered = filename.lower()
    for extension, content_type in SEGMENT_CONTENT_TYPES.items():
        if lowered.endswith(extension):
            return content_type
    raise UnsupportedFileTypeError()


def check_hls_file_type(filename: str) -> None:
    """Raise `UnsupportedFileTypeError` unless the file is a manifest or segment."""
    if not is_manifest(filename):
        segment_content_type(filename)
