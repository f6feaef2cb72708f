"""Single-purpose playback tokens for casting sessions."""

import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable

from pydantic import ValidationError

from hls_gateway.exceptions import InvalidPlaybackTokenError
from hls_gateway.kv_store import KeyValueStore
from hls_gateway.models import PlaybackToken

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlaybackTokenService:
    """
    Issues and validates playback tokens stored in the shared key-value store.

    Tokens are random (never derived from the video id), stored once with a
    TTL and never modified, renewed or deleted; they simply age out.
    """

    KEY_PREFIX = "airplay:"

    def __init__(
        self,
        kv: KeyValueStore,
        ttl_seconds: int = 14400,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.kv = kv
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _generate_token(self) -> str:
        """Generate a 64 hex character token from 32 random bytes."""
        return secrets.token_hex(32)

    def _storage_key(self, token: str) -> str:
        return f"{self.KEY_PREFIX}{token}"

    def expires_at(self, token: PlaybackToken) -> datetime:
        return token.created_at + timedelta(seconds=self.ttl_seconds)

    async def issue(self, video_id: str, authenticated: bool) -> PlaybackToken:
        """
        Issue a new token bound to one video.

        Args:
            video_id: Video the token grants access to
            authenticated: Whether the issuing caller presented a session credential

        Returns:
            The stored token record
        """
        playback_token = PlaybackToken(
            token=self._generate_token(),
            video_id=video_id,
            created_at=self._clock(),
            authenticated=authenticated,
        )
        await self.kv.put(
            self._storage_key(playback_token.token),
            playback_token.to_record(),
            ttl_seconds=self.ttl_seconds,
        )

        logger.info(
            f"[AIRPLAY] Token issued: token={playback_token.token[:8]}..., "
            f"video_id={video_id}, authenticated={authenticated}"
        )
        return playback_token

    async def validate(self, token: str) -> PlaybackToken:
        """
        Look up a token.

        Raises:
            InvalidPlaybackTokenError: For unknown, expired, malformed or
                unreadable tokens alike
        """
        if not token or not TOKEN_PATTERN.match(token):
            raise InvalidPlaybackTokenError()

        record = await self.kv.get(self._storage_key(token))
        if record is None:
            raise InvalidPlaybackTokenError()

        try:
            return PlaybackToken.from_record(token, record)
        except (ValueError, ValidationError):
            logger.warning(f"[AIRPLAY] Unreadable token record: token={token[:8]}...")
            raise InvalidPlaybackTokenError()
