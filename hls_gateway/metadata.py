"""Quality level lookup against the media metadata store."""

import json
import logging
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from hls_gateway.kv_store import KeyValueStore

logger = logging.getLogger(__name__)


class MetadataStore(ABC):
    """Read-only view of the metadata recorded for each video at encode time."""

    @abstractmethod
    async def quality_levels(self, video_id: str) -> Optional[list[str]]:
        """Quality labels encoded for a video, or None if the video is unknown."""

    async def close(self) -> None:
        """Release resources held by the store."""


class MemoryMetadataStore(MetadataStore):
    """Dictionary-backed metadata for local development and tests."""

    def __init__(self, levels: Optional[dict[str, list[str]]] = None):
        self._levels = dict(levels or {})

    def set_quality_levels(self, video_id: str, levels: list[str]) -> None:
        self._levels[video_id] = list(levels)

    async def quality_levels(self, video_id: str) -> Optional[list[str]]:
        levels = self._levels.get(video_id)
        return list(levels) if levels is not None else None


class SqlMetadataStore(MetadataStore):
    """
    Reads `media.hls_qualities` (a JSON array such as `["1080p", "360p"]`).

    Works with any SQLAlchemy async URL, e.g. `sqlite+aiosqlite:///gallery.db`.
    """

    QUERY = text("SELECT hls_qualities FROM media WHERE key = :key")

    def __init__(self, database_url: Optional[str] = None, engine: Optional[AsyncEngine] = None):
        if engine is None:
            if not database_url:
                raise ValueError("database_url or engine is required")
            engine = create_async_engine(database_url, pool_pre_ping=True)
        self.engine = engine

    async def quality_levels(self, video_id: str) -> Optional[list[str]]:
        async with self.engine.connect() as connection:
            result = await connection.execute(self.QUERY, {"key": video_id})
            row = result.first()

        if row is None or not row[0]:
            return None
        try:
            levels = json.loads(row[0])
        except json.JSONDecodeError:
            logger.error(f"Malformed hls_qualities for video: {video_id}")
            return None
        if not isinstance(levels, list):
            return None
        return [str(level) for level in levels]

    async def close(self) -> None:
        await self.engine.dispose()


class QualityLevelResolver:
    """
    Resolves quality levels, caching them in the key-value store.

    The levels of an encoded video never change, so cached entries carry no TTL.
    """

    def __init__(self, metadata: MetadataStore, kv: KeyValueStore):
        self.metadata = metadata
        self.kv = kv

    async def resolve(self, video_id: str) -> Optional[list[str]]:
        cache_key = f"qualities:{video_id}"
        cached = await self.kv.get(cache_key)
        if cached:
            return json.loads(cached)

        levels = await self.metadata.quality_levels(video_id)
        if levels:
            await self.kv.put(cache_key, json.dumps(levels))
        return levels
