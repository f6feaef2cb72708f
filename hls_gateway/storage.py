"""Object storage access for HLS manifests and segments."""

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from hls_gateway.exceptions import RangeNotSatisfiableError, StorageTimeoutError, StorageUnavailableError
from hls_gateway.signer import SigningConfig, date_stamp, presign_url
from hls_gateway.signing_cache import SigningCache

logger = logging.getLogger(__name__)

RANGE_PATTERN = re.compile(r"^bytes=(\d*)-(\d*)$")
FETCH_URL_TTL_SECONDS = 300


@dataclass
class StoredObject:
    """Bytes of one object (or one byte range of it) with its HTTP metadata."""

    body: bytes
    etag: Optional[str] = None
    content_type: Optional[str] = None
    content_range: Optional[str] = None

    @property
    def is_partial(self) -> bool:
        return self.content_range is not None

    def text(self) -> str:
        return self.body.decode("utf-8")


class ObjectStore(ABC):
    """Read access to immutable objects."""

    @abstractmethod
    async def get(self, key: str, byte_range: Optional[str] = None) -> Optional[StoredObject]:
        """
        Fetch an object.

        Args:
            key: Storage key (e.g., "hls/clip.mov/720p.m3u8")
            byte_range: Optional HTTP Range header value

        Returns:
            The object, or None if it does not exist
        """

    async def close(self) -> None:
        """Release resources held by the store."""


def parse_byte_range(byte_range: str, size: int) -> Optional[tuple[int, int]]:
    """
    Resolve a single `bytes=` range to inclusive offsets.

    Returns None for headers that are malformed or not a single range; those
    are ignored and the whole object is served.

    Raises:
        RangeNotSatisfiableError: If a well-formed range selects no bytes of the object
    """
    match = RANGE_PATTERN.match(byte_range.strip())
    if not match:
        return None
    start_str, end_str = match.groups()
    if not start_str and not end_str:
        return None
    if not start_str:
        # Suffix range: last N bytes
        length = int(end_str)
        if length == 0 or size == 0:
            raise RangeNotSatisfiableError(size)
        return max(size - length, 0), size - 1
    start = int(start_str)
    end = int(end_str) if end_str else size - 1
    if end_str and end < start:
        return None
    if start >= size:
        raise RangeNotSatisfiableError(size)
    return start, min(end, size - 1)


class MemoryObjectStore(ObjectStore):
    """In-memory object store for local development and tests."""

    def __init__(self):
        self._objects: dict[str, tuple[bytes, Optional[str]]] = {}

    def put(self, key: str, body: bytes | str, content_type: Optional[str] = None) -> None:
        if isinstance(body, str):
            body = body.encode("utf-8")
        self._objects[key] = (body, content_type)

    async def get(self, key: str, byte_range: Optional[str] = None) -> Optional[StoredObject]:
        entry = self._objects.get(key)
        if entry is None:
            return None
        body, content_type = entry
        etag = f'"{hashlib.md5(body).hexdigest()}"'

        if byte_range:
            offsets = parse_byte_range(byte_range, len(body))
            if offsets is not None:
                start, end = offsets
                return StoredObject(
                    body=body[start : end + 1],
                    etag=etag,
                    content_type=content_type,
                    content_range=f"bytes {start}-{end}/{len(body)}",
                )

        return StoredObject(body=body, etag=etag, content_type=content_type)


def _object_size(content_range: Optional[str]) -> Optional[int]:
    """Total size from a `bytes */{size}` or `bytes a-b/{size}` header."""
    if not content_range or "/" not in content_range:
        return None
    total = content_range.rsplit("/", 1)[1].strip()
    return int(total) if total.isdigit() else None


class R2ObjectStore(ObjectStore):
    """Fetches objects from R2 / S3 through short-lived pre-signed URLs."""

    def __init__(self, config: SigningConfig, signing_cache: SigningCache, http_client: httpx.AsyncClient):
        self.config = config
        self.signing_cache = signing_cache
        self.http_client = http_client

    async def get(self, key: str, byte_range: Optional[str] = None) -> Optional[StoredObject]:
        now = self.signing_cache.now()
        signing_key = await self.signing_cache.get_or_derive_signing_key(date_stamp(now))
        url = presign_url(self.config, key, FETCH_URL_TTL_SECONDS, now=now, signing_key=signing_key)

        headers = {}
        if byte_range:
            headers["Range"] = byte_range

        try:
            response = await self.http_client.get(url, headers=headers)
        except httpx.TimeoutException:
            logger.error(f"Timeout fetching from storage: key={key}")
            raise StorageTimeoutError()
        except httpx.HTTPError as e:
            logger.error(f"HTTP error fetching from storage: key={key}, error={e}")
            raise StorageUnavailableError()

        if response.status_code == 404:
            return None
        if response.status_code == 416:
            raise RangeNotSatisfiableError(_object_size(response.headers.get("Content-Range")))
        if response.status_code >= 400:
            logger.error(f"Storage error: status={response.status_code}, key={key}")
            raise StorageUnavailableError(f"Storage returned {response.status_code}")

        return StoredObject(
            body=response.content,
            etag=response.headers.get("ETag"),
            content_type=response.headers.get("Content-Type"),
            content_range=response.headers.get("Content-Range") if response.status_code == 206 else None,
        )
