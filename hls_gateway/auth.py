"""Session credentials for the gallery password gate."""

import base64
import hashlib
import hmac
import logging
import time
from typing import Callable, Optional
from urllib.parse import urlparse

from hls_gateway.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

AUTH_COOKIE_NAME = "gallery_auth"
AUTH_VERSION_KEY = "auth_version"
DEFAULT_AUTH_VERSION = "1"
DEFAULT_MAX_AGE_SECONDS = 60 * 60 * 24 * 30


class AuthVersionStore:
    """
    Process-wide credential epoch kept in the shared key-value store.

    Every session credential embeds the version current at issuance; bumping
    it invalidates all of them at once. Playback tokens are unaffected.
    """

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    async def current(self) -> str:
        return await self.kv.get(AUTH_VERSION_KEY) or DEFAULT_AUTH_VERSION

    async def bump(self) -> str:
        """
        Atomically advance the version.

        Concurrent bumps each get a distinct version. A non-numeric version
        is replaced by "2".
        """
        try:
            new_version = str(await self.kv.incr(AUTH_VERSION_KEY, initial=int(DEFAULT_AUTH_VERSION)))
        except ValueError:
            new_version = str(int(DEFAULT_AUTH_VERSION) + 1)
            await self.kv.put(AUTH_VERSION_KEY, new_version)
        logger.warning(f"Auth version bumped to {new_version}")
        return new_version


def _sign(secret: str, payload: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def _equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def create_session_credential(
    secret: str,
    audience: str,
    version: str,
    issued_at: Optional[int] = None,
) -> str:
    """
    Create an HMAC-signed credential of the form `{audience}|{version}|{issuedAt}.{sig}`.

    Raises:
        ValueError: If no secret is configured
    """
    if not secret:
        raise ValueError("auth_secret must be configured")
    if issued_at is None:
        issued_at = int(time.time())
    # '|' separates payload fields so '.' can separate the signature
    payload = f"{audience}|{version}|{issued_at}"
    return f"{payload}.{_sign(secret, payload)}"


def validate_session_credential(
    secret: Optional[str],
    audience: str,
    credential: str,
    current_version: str,
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    clock: Callable[[], float] = time.time,
) -> bool:
    """Check signature, audience, auth version and age of a credential."""
    if not secret or not credential:
        return False

    payload, dot, signature = credential.rpartition(".")
    if not dot or not payload:
        return False

    parts = payload.split("|")
    if len(parts) != 3:
        return False
    token_audience, token_version, issued_at_str = parts

    if not _equal(token_audience, audience):
        return False
    if not _equal(token_version, current_version):
        return False

    try:
        issued_at = int(issued_at_str)
    except ValueError:
        return False
    if clock() - issued_at > max_age_seconds:
        return False

    return _equal(signature, _sign(secret, payload))


def request_audience(origin: Optional[str], referer: Optional[str], request_url: str) -> str:
    """
    Origin the credential is bound to.

    Uses the Origin header, then the Referer's origin, then the request URL's.
    """
    if origin:
        return origin.rstrip("/")
    for candidate in (referer, request_url):
        if candidate:
            parsed = urlparse(candidate)
            if parsed.scheme and parsed.netloc:
                return f"{parsed.scheme}://{parsed.netloc}"
    return ""


def is_valid_return_to(return_to: str, allowed_domain: str) -> bool:
    """Accept relative paths and HTTPS URLs on the allowed domain or its subdomains."""
    if return_to.startswith("/") and not return_to.startswith("//"):
        return True
    parsed = urlparse(return_to)
    hostname = parsed.hostname or ""
    return parsed.scheme == "https" and (
        hostname == allowed_domain or hostname.endswith(f".{allowed_domain}")
    )


class SessionGate:
    """
    The gallery password gate.

    With no password configured the gate is open and every caller may mint
    playback tokens; otherwise a valid session credential is required.
    """

    def __init__(
        self,
        password: Optional[str] = None,
        secret: Optional[str] = None,
        versions: Optional[AuthVersionStore] = None,
        max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    ):
        self.password = password
        self.secret = secret
        self.versions = versions
        self.max_age_seconds = max_age_seconds

    @property
    def required(self) -> bool:
        return bool(self.password)

    @property
    def misconfigured(self) -> bool:
        """A password without a secret cannot issue credentials."""
        return self.required and not self.secret

    def check_password(self, password: str) -> bool:
        if not self.required:
            return False
        return _equal(password, self.password)

    async def current_version(self) -> str:
        if self.versions is None:
            return DEFAULT_AUTH_VERSION
        return await self.versions.current()

    async def issue_credential(self, audience: str) -> str:
        return create_session_credential(self.secret or "", audience, await self.current_version())

    async def is_authorized(self, credential: Optional[str], audience: str) -> bool:
        """Open gates always authorize; closed gates need a valid credential."""
        if not self.required:
            return True
        if not credential:
            return False
        return validate_session_credential(
            self.secret,
            audience,
            credential,
            await self.current_version(),
            max_age_seconds=self.max_age_seconds,
        )
