"""HLS M3U8 manifest rewriter for signed and token-scoped delivery."""

from typing import Awaitable, Callable, Iterable, Mapping, Optional
from urllib.parse import quote, urlencode, urlparse

from hls_gateway.manifest import LineKind, Manifest

UriResolver = Callable[[str], str]
BatchUriResolver = Callable[[list[str]], Awaitable[Mapping[str, str]]]


class M3U8Rewriter:
    """Rewrites the reference lines of a playlist and leaves every other line untouched."""

    def rewrite_manifest(self, content: str, resolve_uri: UriResolver) -> str:
        """
        Rewrite all reference lines with a synchronous resolver.

        Args:
            content: Original M3U8 manifest content
            resolve_uri: Maps a reference (as written in the playlist) to its new URI

        Returns:
            Rewritten manifest with the same number of lines
        """
        manifest = Manifest.parse(content)
        lines = [
            line.with_uri(resolve_uri(line.uri)) if line.kind is LineKind.REFERENCE else line
            for line in manifest.lines
        ]
        return Manifest(tuple(lines)).render()

    async def rewrite_manifest_batch(self, content: str, resolve_many: BatchUriResolver) -> str:
        """
        Rewrite all reference lines with a batch resolver.

        The resolver receives every distinct reference at once so that
        signing can share key material and cache round trips.
        """
        manifest = Manifest.parse(content)
        uris = _unique(line.uri for line in manifest.references())
        if not uris:
            return content

        resolved = await resolve_many(uris)
        lines = [
            line.with_uri(resolved[line.uri]) if line.kind is LineKind.REFERENCE else line
            for line in manifest.lines
        ]
        return Manifest(tuple(lines)).render()


class TokenPathResolver:
    """
    Resolves references to `{base_url}/api/airplay/{token}/{reference}`.

    Absolute references already name their host and pass through unchanged.
    """

    def __init__(self, token: str, base_url: str, proxy_base: str = "/api/airplay"):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.proxy_base = proxy_base.rstrip("/")

    def __call__(self, reference: str) -> str:
        if is_absolute_uri(reference):
            return reference
        relative_path = reference.lstrip("/")
        return f"{self.base_url}{self.proxy_base}/{self.token}/{relative_path}"

    @staticmethod
    def extract_path(proxy_path: str, proxy_base: str = "/api/airplay") -> tuple[str, str]:
        """
        Split a token path into `(token, file)`.

        Args:
            proxy_path: Request path (e.g., "/api/airplay/abc123/720p.m3u8")

        Returns:
            Token and file name; either may be empty when the path is malformed
        """
        prefix = proxy_base.strip("/") + "/"
        remainder = proxy_path.lstrip("/")
        if remainder.startswith(prefix):
            remainder = remainder[len(prefix):]
        token, _, file_name = remainder.partition("/")
        return token, file_name


class GatewayVariantResolver:
    """
    Resolves master playlist variants to the gateway's signed variant route.

    A session credential passed as `token` is carried onto each variant URL
    for players (iOS Safari) that do not send cookies with media requests.
    Absolute references are left alone.
    """

    def __init__(self, video_id: str, credential: Optional[str] = None, proxy_base: str = "/api/hls"):
        self.video_id = video_id
        self.credential = credential
        self.proxy_base = proxy_base.rstrip("/")

    def __call__(self, reference: str) -> str:
        if is_absolute_uri(reference):
            return reference
        url = f"{self.proxy_base}/{quote(self.video_id)}/{reference.lstrip('/')}"
        if self.credential:
            url += "?" + urlencode({"token": self.credential})
        return url


def is_absolute_uri(reference: str) -> bool:
    """Whether a reference carries its own scheme and host."""
    parsed = urlparse(reference)
    return bool(parsed.scheme and parsed.netloc)


def _unique(items: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return list(seen)
