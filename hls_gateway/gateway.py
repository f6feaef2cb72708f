"""Delivery gateway: ties storage, signing, tokens and manifest rewriting together."""

import logging
from typing import Optional
from urllib.parse import urlparse

from fastapi import Response, status
from fastapi.responses import RedirectResponse

from hls_gateway.auth import SessionGate
from hls_gateway.exceptions import (
    InvalidAirPlayPathError,
    InvalidHlsPathError,
    InvalidManifestReferenceError,
    InvalidSegmentPathError,
    InvalidStorageKeyError,
    NotFoundError,
    SigningNotConfiguredError,
)
from hls_gateway.m3u8_rewriter import GatewayVariantResolver, M3U8Rewriter, TokenPathResolver, is_absolute_uri
from hls_gateway.manifest import Manifest
from hls_gateway.metadata import QualityLevelResolver
from hls_gateway.models import PlaybackToken
from hls_gateway.quality import build_master_playlist
from hls_gateway.security import (
    MANIFEST_CONTENT_TYPE,
    check_hls_file_type,
    is_manifest,
    sanitize_filename,
    sanitize_video_id,
    segment_content_type,
)
from hls_gateway.signing_cache import SigningCache
from hls_gateway.storage import ObjectStore, StoredObject
from hls_gateway.token_service import PlaybackTokenService

logger = logging.getLogger(__name__)

MASTER_PLAYLIST = "master.m3u8"
SEGMENT_CACHE_CONTROL = "public, max-age=2592000"  # 30 days, segments never change
MANIFEST_HEADERS = {
    "Cache-Control": "no-cache",
    "Access-Control-Allow-Origin": "*",
}


class DeliveryGateway:
    """Builds HLS responses for the signed browser path and the token-scoped casting path."""

    def __init__(
        self,
        objects: ObjectStore,
        quality_levels: QualityLevelResolver,
        tokens: PlaybackTokenService,
        signing_cache: Optional[SigningCache] = None,
        hls_prefix: str = "hls",
        signed_url_ttl_seconds: int = 14400,
        session_gate: Optional[SessionGate] = None,
    ):
        self.objects = objects
        self.quality_levels = quality_levels
        self.tokens = tokens
        self.signing_cache = signing_cache
        self.hls_prefix = hls_prefix.strip("/")
        self.signed_url_ttl_seconds = signed_url_ttl_seconds
        self.session_gate = session_gate or SessionGate()
        self.rewriter = M3U8Rewriter()

    def storage_key(self, video_id: str, filename: str) -> str:
        return f"{self.hls_prefix}/{video_id}/{filename}"

    async def _levels_or_404(self, video_id: str) -> list[str]:
        levels = await self.quality_levels.resolve(video_id)
        if not levels:
            raise NotFoundError("HLS variants not found")
        return levels

    async def _fetch(self, key: str, byte_range: Optional[str] = None) -> StoredObject:
        stored = await self.objects.get(key, byte_range=byte_range)
        if stored is None:
            logger.info(f"[HLS] Storage miss: key={key}")
            raise NotFoundError()
        return stored

    @staticmethod
    def _manifest_response(content: str) -> Response:
        return Response(
            content=content,
            media_type=MANIFEST_CONTENT_TYPE,
            headers=dict(MANIFEST_HEADERS),
        )

    @staticmethod
    def _segment_response(stored: StoredObject, filename: str) -> Response:
        headers = {
            "Cache-Control": SEGMENT_CACHE_CONTROL,
            "Accept-Ranges": "bytes",
            "Access-Control-Allow-Origin": "*",
        }
        if stored.etag:
            headers["ETag"] = stored.etag
        if stored.content_range:
            headers["Content-Range"] = stored.content_range

        return Response(
            content=stored.body,
            media_type=segment_content_type(filename),
            status_code=status.HTTP_206_PARTIAL_CONTENT if stored.is_partial else status.HTTP_200_OK,
            headers=headers,
        )

    # Signed browser path

    async def master_playlist(self, video_id: str, credential: Optional[str] = None) -> Response:
        """
        Master playlist synthesized from the video's quality levels.

        Variant references point at the gateway's variant route, which serves
        each variant with signed segment URLs.
        """
        video_id = sanitize_video_id(video_id)
        levels = await self._levels_or_404(video_id)

        master = build_master_playlist(levels)
        rewritten = self.rewriter.rewrite_manifest(
            master, GatewayVariantResolver(video_id, credential=credential)
        )
        logger.info(f"[HLS] Master playlist: video_id={video_id}, levels={levels}")
        return self._manifest_response(rewritten)

    async def signed_manifest(self, video_id: str, filename: str) -> Response:
        """Variant playlist with every reference replaced by a pre-signed storage URL."""
        if self.signing_cache is None:
            raise SigningNotConfiguredError()

        stored = await self._fetch(self.storage_key(video_id, filename))
        content = stored.text()

        if Manifest.parse(content).is_master:
            # Variant playlists must come back through this route to get signed segments
            rewritten = self.rewriter.rewrite_manifest(content, GatewayVariantResolver(video_id))
            logger.info(f"[HLS] Stored master routed through gateway: video_id={video_id}")
            return self._manifest_response(rewritten)

        async def sign_references(references: list[str]) -> dict[str, str]:
            keys = {ref: self._reference_key(video_id, ref) for ref in references if not is_absolute_uri(ref)}
            signed = await self.signing_cache.sign_many(keys.values(), self.signed_url_ttl_seconds)
            return {ref: signed[keys[ref]] if ref in keys else ref for ref in references}

        try:
            rewritten = await self.rewriter.rewrite_manifest_batch(content, sign_references)
        except InvalidStorageKeyError as e:
            logger.error(f"[HLS] Unsignable reference in {self.storage_key(video_id, filename)}: {e}")
            raise InvalidManifestReferenceError() from e

        logger.info(f"[HLS] Signed manifest: video_id={video_id}, file={filename}")
        return self._manifest_response(rewritten)

    async def segment_redirect(self, path: str) -> Response:
        """
        Redirect `{videoId}/{file}` to a pre-signed storage URL.

        Lets players fetch segments straight from storage while manifests stay
        cheap to build; one cached signature per segment and TTL window.
        """
        video_path, _, filename = path.rpartition("/")
        if not video_path or not filename:
            raise InvalidSegmentPathError()
        if self.signing_cache is None:
            raise SigningNotConfiguredError()

        video_id = sanitize_video_id(video_path)
        filename = sanitize_filename(filename)
        signed_url = await self.signing_cache.get_or_sign(
            self.storage_key(video_id, filename), self.signed_url_ttl_seconds
        )
        return RedirectResponse(
            signed_url,
            status_code=status.HTTP_302_FOUND,
            headers={"Access-Control-Allow-Origin": "*"},
        )

    async def hls_file(self, path: str, byte_range: Optional[str] = None) -> Response:
        """Serve `{videoId}/{file}`: manifests signed, segments raw."""
        video_path, _, filename = path.rpartition("/")
        if not video_path or not filename:
            raise InvalidHlsPathError()
        video_id = sanitize_video_id(video_path)
        filename = sanitize_filename(filename)
        check_hls_file_type(filename)

        if is_manifest(filename):
            return await self.signed_manifest(video_id, filename)

        stored = await self._fetch(self.storage_key(video_id, filename), byte_range)
        return self._segment_response(stored, filename)

    def _reference_key(self, video_id: str, reference: str) -> str:
        return self.storage_key(video_id, urlparse(reference).path.lstrip("/"))

    # Token-scoped casting path

    async def airplay_file(
        self,
        path: str,
        base_url: str,
        byte_range: Optional[str] = None,
    ) -> Response:
        """
        Serve one file of a token's manifest tree.

        The token is the only credential checked; session cookies are never
        consulted here because the casting device does not have them.
        """
        token, filename = TokenPathResolver.extract_path(path)
        if not token or not filename or "/" in filename:
            raise InvalidAirPlayPathError()

        playback_token = await self.tokens.validate(token)
        check_hls_file_type(filename)
        filename = sanitize_filename(filename)
        video_id = sanitize_video_id(playback_token.video_id)

        logger.info(f"[AIRPLAY] Request: token={token[:8]}..., video_id={video_id}, file={filename}")

        if is_manifest(filename):
            content = await self._airplay_manifest_source(video_id, filename)
            rewritten = self.rewriter.rewrite_manifest(content, TokenPathResolver(token, base_url))
            return self._manifest_response(rewritten)

        stored = await self._fetch(self.storage_key(video_id, filename), byte_range)
        return self._segment_response(stored, filename)

    async def _airplay_manifest_source(self, video_id: str, filename: str) -> str:
        stored = await self.objects.get(self.storage_key(video_id, filename))
        if stored is not None:
            return stored.text()
        if filename == MASTER_PLAYLIST:
            # Older encodes have no stored master; build it from metadata
            levels = await self._levels_or_404(video_id)
            return build_master_playlist(levels)
        logger.info(f"[AIRPLAY] Manifest not found: video_id={video_id}, file={filename}")
        raise NotFoundError()

    async def issue_airplay_url(self, video_id: str, origin: str, authenticated: bool) -> tuple[str, PlaybackToken]:
        """Mint a token for a video and return the master playlist URL it unlocks."""
        video_id = sanitize_video_id(video_id)
        playback_token = await self.tokens.issue(video_id, authenticated=authenticated)
        airplay_url = f"{origin.rstrip('/')}/api/airplay/{playback_token.token}/{MASTER_PLAYLIST}"
        return airplay_url, playback_token
