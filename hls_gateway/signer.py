"""
AWS Signature Version 4 query signing for R2 / S3-compatible object URLs.

The signing key depends only on (secret, date, region, service), so callers
that sign many objects derive it once per day and pass it in; each URL then
costs one SHA-256 and one HMAC.
"""

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote, urlparse

from hls_gateway.exceptions import InvalidStorageKeyError

ALGORITHM = "AWS4-HMAC-SHA256"
SERVICE = "s3"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
SIGNED_HEADERS = "host"
MAX_EXPIRES_SECONDS = 604800  # SigV4 upper bound (7 days)


@dataclass(frozen=True)
class SigningConfig:
    """Credentials and location of the bucket being signed for."""

    access_key_id: str
    secret_access_key: str
    bucket: str
    endpoint: str
    region: str = "auto"
    service: str = SERVICE

    @property
    def host(self) -> str:
        return urlparse(self.endpoint).netloc

    @classmethod
    def from_settings(cls, settings) -> "SigningConfig":
        return cls(
            access_key_id=settings.r2_access_key_id,
            secret_access_key=settings.r2_secret_access_key,
            bucket=settings.r2_bucket_name,
            endpoint=settings.resolved_r2_endpoint,
            region=settings.r2_region,
        )


def _hmac_sha256(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def _uri_encode(value: str, safe: str = "-_.~") -> str:
    return quote(value, safe=safe)


def date_stamp(moment: datetime) -> str:
    """Calendar day (UTC) a signing key is scoped to, e.g. `20251109`."""
    return moment.astimezone(timezone.utc).strftime("%Y%m%d")


def amz_date(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def derive_signing_key(secret: str, day: str, region: str, service: str = SERVICE) -> bytes:
    """Derive the day-scoped signing key (four chained HMACs)."""
    k_date = _hmac_sha256(("AWS4" + secret).encode("utf-8"), day)
    k_region = _hmac_sha256(k_date, region)
    k_service = _hmac_sha256(k_region, service)
    return _hmac_sha256(k_service, "aws4_request")


def validate_storage_key(storage_key: str) -> str:
    """
    Reject keys that cannot name an object before any crypto work is done.

    Raises:
        InvalidStorageKeyError: If the key is empty, absolute, contains `..`
            segments or control characters
    """
    if not isinstance(storage_key, str) or not storage_key.strip():
        raise InvalidStorageKeyError("Storage key cannot be empty")
    if storage_key.startswith("/"):
        raise InvalidStorageKeyError(f"Storage key must be relative: {storage_key!r}")
    if any(segment in ("", "..", ".") for segment in storage_key.split("/")):
        raise InvalidStorageKeyError(f"Storage key has an invalid path segment: {storage_key!r}")
    if any(ord(char) < 32 or ord(char) == 127 for char in storage_key):
        raise InvalidStorageKeyError("Storage key contains control characters")
    return storage_key


def presign_url(
    config: SigningConfig,
    storage_key: str,
    ttl_seconds: int,
    now: Optional[datetime] = None,
    signing_key: Optional[bytes] = None,
) -> str:
    """
    Build a pre-signed GET URL for one object.

    Args:
        config: Bucket credentials and endpoint
        storage_key: Object key inside the bucket (e.g., "hls/clip.mov/720p_0.ts")
        ttl_seconds: How long the URL stays valid
        now: Signing time (defaults to the current UTC time)
        signing_key: Pre-derived key for `now`'s day; derived here when omitted

    Returns:
        Absolute URL with the `X-Amz-*` authorization query
    """
    validate_storage_key(storage_key)
    if not 0 < ttl_seconds <= MAX_EXPIRES_SECONDS:
        raise ValueError(f"ttl_seconds must be between 1 and {MAX_EXPIRES_SECONDS}")

    now = now or datetime.now(timezone.utc)
    day = date_stamp(now)
    timestamp = amz_date(now)
    credential_scope = f"{day}/{config.region}/{config.service}/aws4_request"

    if signing_key is None:
        signing_key = derive_signing_key(config.secret_access_key, day, config.region, config.service)

    canonical_uri = "/" + _uri_encode(f"{config.bucket}/{storage_key}", safe="/-_.~")
    query = {
        "X-Amz-Algorithm": ALGORITHM,
        "X-Amz-Credential": f"{config.access_key_id}/{credential_scope}",
        "X-Amz-Date": timestamp,
        "X-Amz-Expires": str(ttl_seconds),
        "X-Amz-SignedHeaders": SIGNED_HEADERS,
    }
    canonical_query = "&".join(
        f"{_uri_encode(name)}={_uri_encode(value)}" for name, value in sorted(query.items())
    )

    canonical_request = "\n".join(
        [
            "GET",
            canonical_uri,
            canonical_query,
            f"host:{config.host}\n",
            SIGNED_HEADERS,
            UNSIGNED_PAYLOAD,
        ]
    )
    string_to_sign = "\n".join(
        [
            ALGORITHM,
            timestamp,
            credential_scope,
            hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
        ]
    )
    signature = hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    return f"{config.endpoint.rstrip('/')}{canonical_uri}?{canonical_query}&X-Amz-Signature={signature}"
