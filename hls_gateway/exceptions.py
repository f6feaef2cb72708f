"""Custom exceptions for the delivery gateway."""

from typing import Optional

from fastapi import HTTPException, status


class GatewayError(HTTPException):
    """Base class for errors rendered as plain-text gateway responses."""


class BadRequestError(GatewayError):
    """Raised for malformed paths, missing fields or unsupported file types."""

    def __init__(self, message: str = "Bad request"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=message)


class InvalidAirPlayPathError(BadRequestError):
    """Raised when an AirPlay path does not have the token/file shape."""

    def __init__(self):
        super().__init__("Invalid AirPlay path")


class InvalidHlsPathError(BadRequestError):
    """Raised when an HLS file path lacks a video id or file name."""

    def __init__(self):
        super().__init__("Invalid HLS path")


class InvalidSegmentPathError(BadRequestError):
    """Raised when a segment redirect path lacks a video id or file name."""

    def __init__(self):
        super().__init__("Invalid segment path")


class UnsupportedFileTypeError(BadRequestError):
    """Raised when a requested HLS file has an extension we do not serve."""

    def __init__(self):
        super().__init__("Unsupported file type")


class UnauthorizedError(GatewayError):
    """Raised when a session credential is required but missing or invalid."""

    def __init__(self):
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


class ForbiddenError(GatewayError):
    """Raised when a caller is identified but not allowed."""

    def __init__(self, message: str = "Forbidden"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=message)


class InvalidPlaybackTokenError(GatewayError):
    """
    Raised when a playback token is unknown, expired or malformed.

    The detail is the same for every cause so responses cannot be used to
    tell an expired token from one that never existed.
    """

    def __init__(self):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")


class NotFoundError(GatewayError):
    """Raised when a storage object or metadata record is absent."""

    def __init__(self, message: str = "HLS file not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=message)


class RangeNotSatisfiableError(GatewayError):
    """Raised when a byte range starts past the end of the object."""

    def __init__(self, size: Optional[int] = None):
        super().__init__(
            status_code=416,
            detail="Range not satisfiable",
            headers={"Content-Range": f"bytes */{size}"} if size is not None else None,
        )


class SigningNotConfiguredError(GatewayError):
    """Raised when a signed response is requested without R2 credentials."""

    def __init__(self):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Pre-signed URLs not configured",
        )


class StorageTimeoutError(GatewayError):
    """Raised when the object store does not answer in time."""

    def __init__(self):
        super().__init__(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail="Gateway timeout")


class StorageUnavailableError(GatewayError):
    """Raised when the object store returns an unexpected error."""

    def __init__(self, detail: str = "Bad gateway"):
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


class InvalidManifestReferenceError(GatewayError):
    """Raised when a stored manifest references a key that cannot be signed."""

    def __init__(self):
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail="Invalid manifest reference")


class InvalidStorageKeyError(ValueError):
    """Raised by the signer for keys that cannot name a stored object."""


class UnsafeInputError(ValueError):
    """Raised when a video id or filename fails sanitation."""
