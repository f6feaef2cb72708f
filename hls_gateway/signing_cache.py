"""Signed URL and signing key caching on top of the shared key-value store."""

import asyncio
import base64
import logging
from datetime import datetime, timezone
from typing import Callable, Iterable

from hls_gateway.batching import chunked
from hls_gateway.kv_store import KeyValueStore
from hls_gateway.signer import (
    SigningConfig,
    date_stamp,
    derive_signing_key,
    presign_url,
    validate_storage_key,
)

logger = logging.getLogger(__name__)

SIGNING_KEY_TTL_SECONDS = 86400
# Cached URLs expire before the URL itself does
URL_CACHE_TTL_FACTOR = 0.9


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SigningCache:
    """
    Two cache layers in front of the signer.

    * `signed:{key}:{bucket}` holds a URL for one object and one TTL window,
      so concurrent requests in the same window converge on one URL.
    * `signing-key:{accessKeyId}:{day}:{region}` holds the derived day key, so a cache
      miss costs one HMAC per object instead of five.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        config: SigningConfig,
        batch_size: int = 64,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.kv = kv
        self.config = config
        self.batch_size = batch_size
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def ttl_bucket(self, ttl_seconds: int, now: datetime) -> int:
        return int(now.timestamp()) // ttl_seconds

    def url_cache_key(self, storage_key: str, ttl_seconds: int, now: datetime) -> str:
        return f"signed:{storage_key}:{self.ttl_bucket(ttl_seconds, now)}"

    @staticmethod
    def url_cache_ttl(ttl_seconds: int) -> int:
        return max(1, int(ttl_seconds * URL_CACHE_TTL_FACTOR))

    async def get_or_derive_signing_key(self, day: str) -> bytes:
        """Return the signing key for a UTC day, deriving and caching it on a miss."""
        cache_key = f"signing-key:{self.config.access_key_id}:{day}:{self.config.region}"
        cached = await self.kv.get(cache_key)
        if cached:
            return base64.b64decode(cached)

        logger.debug(f"[SIGN] Deriving signing key for {day}/{self.config.region}")
        signing_key = derive_signing_key(
            self.config.secret_access_key, day, self.config.region, self.config.service
        )
        await self.kv.put(
            cache_key,
            base64.b64encode(signing_key).decode("ascii"),
            ttl_seconds=SIGNING_KEY_TTL_SECONDS,
        )
        return signing_key

    async def get_or_sign(self, storage_key: str, ttl_seconds: int) -> str:
        """Return a cached signed URL for the current TTL window, signing on a miss."""
        validate_storage_key(storage_key)
        now = self.now()
        cache_key = self.url_cache_key(storage_key, ttl_seconds, now)

        cached = await self.kv.get(cache_key)
        if cached:
            return cached

        signing_key = await self.get_or_derive_signing_key(date_stamp(now))
        url = presign_url(self.config, storage_key, ttl_seconds, now=now, signing_key=signing_key)
        await self.kv.put(cache_key, url, ttl_seconds=self.url_cache_ttl(ttl_seconds))
        return url

    async def sign_many(self, storage_keys: Iterable[str], ttl_seconds: int) -> dict[str, str]:
        """
        Sign a batch of keys, consulting the URL cache first.

        Lookups, signing and write-backs run in bounded batches of
        `batch_size`. All misses share one signing key and one timestamp.

        Returns:
            Mapping of every requested key to its signed URL
        """
        keys = list(dict.fromkeys(storage_keys))
        for key in keys:
            validate_storage_key(key)
        if not keys:
            return {}

        now = self.now()
        results: dict[str, str] = {}
        misses: list[str] = []

        for batch in chunked(keys, self.batch_size):
            cached = await asyncio.gather(
                *(self.kv.get(self.url_cache_key(key, ttl_seconds, now)) for key in batch)
            )
            for key, url in zip(batch, cached):
                if url:
                    results[key] = url
                else:
                    misses.append(key)

        if misses:
            signing_key = await self.get_or_derive_signing_key(date_stamp(now))
            cache_ttl = self.url_cache_ttl(ttl_seconds)
            for batch in chunked(misses, self.batch_size):
                signed = {
                    key: presign_url(self.config, key, ttl_seconds, now=now, signing_key=signing_key)
                    for key in batch
                }
                await asyncio.gather(
                    *(
                        self.kv.put(self.url_cache_key(key, ttl_seconds, now), url, ttl_seconds=cache_ttl)
                        for key, url in signed.items()
                    )
                )
                results.update(signed)

        logger.info(f"[SIGN] Signed {len(keys)} keys ({len(keys) - len(misses)} cached, {len(misses)} new)")
        return results
