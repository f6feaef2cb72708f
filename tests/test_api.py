"""Tests for API endpoints."""

import asyncio
import time
from datetime import datetime, timezone
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from hls_gateway.auth import AuthVersionStore, SessionGate
from hls_gateway.config import settings
from hls_gateway.gateway import DeliveryGateway
from hls_gateway.kv_store import MemoryKeyValueStore
from hls_gateway.main import app, get_gateway
from hls_gateway.metadata import MemoryMetadataStore, QualityLevelResolver
from hls_gateway.models import PlaybackToken
from hls_gateway.signer import SigningConfig
from hls_gateway.signing_cache import SigningCache
from hls_gateway.storage import MemoryObjectStore
from hls_gateway.token_service import PlaybackTokenService


SIGNING_CONFIG = SigningConfig(
    access_key_id="AKIDEXAMPLE",
    secret_access_key="secret",
    bucket="media",
    endpoint="https://account123.r2.cloudflarestorage.com",
)

MASTER_PLAYLIST = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-STREAM-INF:BANDWIDTH=2928000,RESOLUTION=1280x720
720p.m3u8
#EXT-X-STREAM-INF:BANDWIDTH=1496000,RESOLUTION=854x480
480p.m3u8
"""

VARIANT_PLAYLIST = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:6
# note: segment0.ts
#EXTINF:6.0,
720p_000.ts
#EXTINF:6.0,
720p_001.ts
#EXT-X-ENDLIST
"""

SEGMENT = bytes(range(256)) * 4


class FakeTime:
    """Settable epoch clock for the key-value store."""

    def __init__(self):
        self.value = time.time()

    def __call__(self) -> float:
        return self.value


class GatewayHarness:
    """In-memory gateway wired into the app through a dependency override."""

    def __init__(self, password: Optional[str] = None, signing: bool = True):
        self.clock = FakeTime()
        self.kv = MemoryKeyValueStore(clock=self.clock)
        self.objects = MemoryObjectStore()
        self.metadata = MemoryMetadataStore({"clip.mov": ["720p", "480p"]})

        self.objects.put("hls/clip.mov/master.m3u8", MASTER_PLAYLIST)
        self.objects.put("hls/clip.mov/720p.m3u8", VARIANT_PLAYLIST)
        self.objects.put("hls/clip.mov/720p_000.ts", SEGMENT)

        self.gateway = DeliveryGateway(
            objects=self.objects,
            quality_levels=QualityLevelResolver(self.metadata, self.kv),
            tokens=PlaybackTokenService(self.kv, ttl_seconds=14400),
            signing_cache=SigningCache(self.kv, SIGNING_CONFIG) if signing else None,
            session_gate=SessionGate(
                password=password,
                secret="test-secret" if password else None,
                versions=AuthVersionStore(self.kv),
            ),
        )

    def seed_token(self, token: str, video_id: str = "clip.mov") -> None:
        record = PlaybackToken(
            token=token,
            video_id=video_id,
            created_at=datetime.now(timezone.utc),
            authenticated=False,
        ).to_record()
        asyncio.run(self.kv.put(f"airplay:{token}", record, ttl_seconds=14400))


@pytest.fixture
def harness():
    harness = GatewayHarness()
    app.dependency_overrides[get_gateway] = lambda: harness.gateway
    yield harness
    app.dependency_overrides.clear()


@pytest.fixture
def gated_harness():
    harness = GatewayHarness(password="hunter2")
    app.dependency_overrides[get_gateway] = lambda: harness.gateway
    yield harness
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    return TestClient(app)


class TestAirPlayEndpoints:
    """Test suite for token-scoped AirPlay delivery."""

    def test_master_playlist_rewritten_to_token_paths(self, harness, client):
        """Variant references of the stored master point back through the token."""
        harness.seed_token("abc123")

        response = client.get("/api/airplay/abc123/master.m3u8")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/vnd.apple.mpegurl")
        assert response.headers["cache-control"] == "no-cache"
        assert "http://testserver/api/airplay/abc123/720p.m3u8" in response.text
        assert "http://testserver/api/airplay/abc123/480p.m3u8" in response.text
        assert "#EXT-X-STREAM-INF:BANDWIDTH=2928000,RESOLUTION=1280x720" in response.text
        assert len(response.text.split("\n")) == len(MASTER_PLAYLIST.split("\n"))

    def test_variant_playlist_comment_untouched(self, harness, client):
        """Comments that mention segments are not rewritten."""
        harness.seed_token("abc123")

        response = client.get("/api/airplay/abc123/720p.m3u8")

        assert response.status_code == 200
        assert "# note: segment0.ts\n" in response.text
        assert "http://testserver/api/airplay/abc123/720p_000.ts" in response.text
        assert "/api/airplay/abc123/segment0.ts" not in response.text

    def test_master_synthesized_when_not_stored(self, harness, client):
        """Videos without a stored master get one built from their levels."""
        harness.seed_token("abc123", video_id="old.mov")
        harness.metadata.set_quality_levels("old.mov", ["540p", "360p"])

        response = client.get("/api/airplay/abc123/master.m3u8")

        assert response.status_code == 200
        assert "RESOLUTION=960x540" in response.text
        assert "http://testserver/api/airplay/abc123/540p.m3u8" in response.text

    def test_segment_served_with_cache_headers(self, harness, client):
        """Segments are immutable and cacheable."""
        harness.seed_token("abc123")

        response = client.get("/api/airplay/abc123/720p_000.ts")

        assert response.status_code == 200
        assert response.content == SEGMENT
        assert response.headers["content-type"] == "video/MP2T"
        assert response.headers["cache-control"] == "public, max-age=2592000"
        assert response.headers["accept-ranges"] == "bytes"
        assert response.headers["etag"].startswith('"')

    def test_segment_range_request(self, harness, client):
        """Range requests get 206 with Content-Range."""
        harness.seed_token("abc123")

        response = client.get("/api/airplay/abc123/720p_000.ts", headers={"Range": "bytes=0-99"})

        assert response.status_code == 206
        assert response.content == SEGMENT[:100]
        assert response.headers["content-range"] == f"bytes 0-99/{len(SEGMENT)}"

    def test_segment_range_past_end(self, harness, client):
        """Ranges beyond the object are 416 with the object size."""
        harness.seed_token("abc123")

        response = client.get("/api/airplay/abc123/720p_000.ts", headers={"Range": "bytes=99999-"})

        assert response.status_code == 416
        assert response.headers["content-range"] == f"bytes */{len(SEGMENT)}"
        assert response.text == "Range not satisfiable"

    def test_unknown_token_forbidden(self, harness, client):
        """Unknown tokens get 403 with a plain-text body."""
        response = client.get(f"/api/airplay/{'f' * 64}/master.m3u8")

        assert response.status_code == 403
        assert response.text == "Unauthorized"

    def test_expired_and_never_issued_tokens_indistinguishable(self, harness, client):
        """An expired token and a made-up one get identical responses."""
        issued = client.post("/api/generate-airplay-url", json={"videoId": "clip.mov"})
        airplay_url = issued.json()["airplayUrl"]
        assert client.get(airplay_url).status_code == 200

        harness.clock.value += 14401

        expired = client.get(airplay_url)
        never_issued = client.get(f"/api/airplay/{'0' * 64}/master.m3u8")

        assert expired.status_code == never_issued.status_code == 403
        assert expired.text == never_issued.text == "Unauthorized"

    def test_malformed_path(self, harness, client):
        """Paths without a file are rejected before the token is checked."""
        response = client.get("/api/airplay/abc123")

        assert response.status_code == 400
        assert response.text == "Invalid AirPlay path"

    def test_unsupported_file_type(self, harness, client):
        """Only manifests and segments are served."""
        harness.seed_token("abc123")

        response = client.get("/api/airplay/abc123/secrets.txt")

        assert response.status_code == 400
        assert response.text == "Unsupported file type"

    def test_missing_file(self, harness, client):
        """Files absent from storage are 404."""
        harness.seed_token("abc123")

        response = client.get("/api/airplay/abc123/1080p_000.ts")

        assert response.status_code == 404
        assert response.text == "HLS file not found"

    def test_token_bound_to_one_video(self, harness, client):
        """A token only reaches its own video's files."""
        harness.seed_token("abc123", video_id="other.mov")

        response = client.get("/api/airplay/abc123/720p_000.ts")

        assert response.status_code == 404


class TestGenerateAirPlayUrl:
    """Test suite for playback token issuance."""

    def test_open_gate(self, harness, client):
        """Without a password anyone may mint a token."""
        response = client.post("/api/generate-airplay-url", json={"videoId": "clip.mov"})

        assert response.status_code == 200
        data = response.json()
        assert data["airplayUrl"].startswith("http://testserver/api/airplay/")
        assert data["airplayUrl"].endswith("/master.m3u8")
        assert "clip.mov" not in data["airplayUrl"]
        assert "expiresAt" in data

    def test_missing_video_id(self, harness, client):
        """Requests without a video id are rejected."""
        for body in [{}, {"videoId": ""}]:
            response = client.post("/api/generate-airplay-url", json=body)
            assert response.status_code == 400
            assert response.json() == {"error": "Missing videoId"}

    def test_gated_without_credential(self, gated_harness, client):
        """With a password, a session credential is required."""
        response = client.post("/api/generate-airplay-url", json={"videoId": "clip.mov"})

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_gated_after_login(self, gated_harness, client):
        """Logging in sets a cookie that authorizes token issuance."""
        login = client.post("/api/login", data={"password": "hunter2"})
        assert login.status_code == 200
        assert login.json() == {"success": True, "returnTo": "/"}
        assert "gallery_auth" in login.cookies

        response = client.post("/api/generate-airplay-url", json={"videoId": "clip.mov"})

        assert response.status_code == 200

    def test_token_works_without_session(self, gated_harness, client):
        """The casting device needs only the token, not the cookie."""
        client.post("/api/login", data={"password": "hunter2"})
        airplay_url = client.post("/api/generate-airplay-url", json={"videoId": "clip.mov"}).json()["airplayUrl"]

        device = TestClient(app)
        response = device.get(airplay_url)

        assert response.status_code == 200
        assert "/api/airplay/" in response.text


class TestSessionEndpoints:
    """Test suite for login and credential invalidation."""

    def test_wrong_password(self, gated_harness, client):
        """Wrong passwords are rejected."""
        response = client.post("/api/login", data={"password": "nope"})

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid password"}

    def test_open_redirect_rejected(self, gated_harness, client):
        """Foreign returnTo targets fall back to the root."""
        response = client.post("/api/login", data={"password": "hunter2", "returnTo": "https://evil.example.com/"})

        assert response.json()["returnTo"] == "/"

    def test_bump_requires_admin_key(self, gated_harness, client, monkeypatch):
        """The bump endpoint is hidden without a key and forbidden with a wrong one."""
        monkeypatch.setattr(settings, "admin_api_key", None)
        assert client.post("/api/admin/auth-version/bump").status_code == 404

        monkeypatch.setattr(settings, "admin_api_key", "admin-key")
        response = client.post("/api/admin/auth-version/bump", headers={"X-Admin-Key": "wrong"})
        assert response.status_code == 403

    def test_bump_invalidates_sessions_not_tokens(self, gated_harness, client, monkeypatch):
        """Bumping the auth version logs everyone out but leaves playback tokens alone."""
        monkeypatch.setattr(settings, "admin_api_key", "admin-key")
        client.post("/api/login", data={"password": "hunter2"})
        airplay_url = client.post("/api/generate-airplay-url", json={"videoId": "clip.mov"}).json()["airplayUrl"]

        bump = client.post("/api/admin/auth-version/bump", headers={"X-Admin-Key": "admin-key"})
        assert bump.status_code == 200
        assert bump.json() == {"auth_version": "2"}

        assert client.post("/api/generate-airplay-url", json={"videoId": "clip.mov"}).status_code == 401
        assert TestClient(app).get(airplay_url).status_code == 200


class TestHlsEndpoints:
    """Test suite for the signed browser path."""

    def test_master_playlist(self, harness, client):
        """The master lists each level through the variant route."""
        response = client.get("/api/hls/playlist", params={"key": "clip.mov"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/vnd.apple.mpegurl")
        lines = response.text.split("\n")
        assert "/api/hls/clip.mov/720p.m3u8" in lines
        assert "/api/hls/clip.mov/480p.m3u8" in lines

    def test_master_playlist_missing_key(self, harness, client):
        """The key parameter is required."""
        response = client.get("/api/hls/playlist")

        assert response.status_code == 400
        assert response.json() == {"error": "Missing key parameter"}

    def test_master_playlist_unknown_video(self, harness, client):
        """Videos without levels are 404."""
        response = client.get("/api/hls/playlist", params={"key": "unknown.mov"})

        assert response.status_code == 404
        assert response.json() == {"error": "HLS variants not found"}

    def test_signed_variant_playlist(self, harness, client):
        """Segment references become pre-signed storage URLs."""
        response = client.get("/api/hls/clip.mov/720p.m3u8")

        assert response.status_code == 200
        lines = response.text.split("\n")
        signed = [line for line in lines if line.startswith("https://")]
        assert len(signed) == 2
        assert signed[0].startswith("https://account123.r2.cloudflarestorage.com/media/hls/clip.mov/720p_000.ts?")
        assert all("X-Amz-Signature=" in line for line in signed)
        assert "# note: segment0.ts" in lines
        assert len(lines) == len(VARIANT_PLAYLIST.split("\n"))

    def test_stored_master_routed_through_gateway(self, harness, client):
        """A stored master keeps its variants on the gateway so they get signed."""
        response = client.get("/api/hls/clip.mov/master.m3u8")

        assert response.status_code == 200
        lines = response.text.split("\n")
        assert "/api/hls/clip.mov/720p.m3u8" in lines
        assert "/api/hls/clip.mov/480p.m3u8" in lines
        assert not any("X-Amz-Signature=" in line for line in lines)

    def test_unsignable_reference(self, harness, client):
        """A stored variant pointing outside its folder is a bad gateway, not a crash."""
        harness.objects.put("hls/clip.mov/bad.m3u8", "#EXTM3U\n#EXTINF:6.0,\n../x.ts\n")

        response = client.get("/api/hls/clip.mov/bad.m3u8")

        assert response.status_code == 502
        assert response.text == "Invalid manifest reference"

    def test_signed_urls_stable_within_window(self, harness, client):
        """Repeated requests reuse cached URLs."""
        first = client.get("/api/hls/clip.mov/720p.m3u8").text
        second = client.get("/api/hls/clip.mov/720p.m3u8").text

        assert first == second

    def test_signing_not_configured(self, client):
        """Without R2 credentials, signed playlists are a server error."""
        harness = GatewayHarness(signing=False)
        app.dependency_overrides[get_gateway] = lambda: harness.gateway
        try:
            response = client.get("/api/hls/clip.mov/720p.m3u8")
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 500
        assert response.text == "Pre-signed URLs not configured"

    def test_segment(self, harness, client):
        """Segments are served raw."""
        response = client.get("/api/hls/clip.mov/720p_000.ts")

        assert response.status_code == 200
        assert response.content == SEGMENT

    def test_invalid_path(self, harness, client):
        """Paths need a video id and a file."""
        response = client.get("/api/hls/720p.m3u8")

        assert response.status_code == 400
        assert response.text == "Invalid HLS path"

    def test_path_traversal(self, harness, client):
        """Traversal in the video id is rejected."""
        response = client.get("/api/hls/..%2F..%2Fetc/passwd.ts")

        assert response.status_code == 400



class TestSegmentRedirect:
    """Test suite for segment redirects to pre-signed storage URLs."""

    def test_redirects_to_signed_url(self, harness, client):
        """Segments redirect to a cached signed URL."""
        first = client.get("/api/hls-segment/clip.mov/720p_000.ts", follow_redirects=False)
        second = client.get("/api/hls-segment/clip.mov/720p_000.ts", follow_redirects=False)

        assert first.status_code == 302
        location = first.headers["location"]
        assert location.startswith("https://account123.r2.cloudflarestorage.com/media/hls/clip.mov/720p_000.ts?")
        assert "X-Amz-Signature=" in location
        assert second.headers["location"] == location

    def test_signing_not_configured(self, client):
        """Redirects need R2 credentials."""
        harness = GatewayHarness(signing=False)
        app.dependency_overrides[get_gateway] = lambda: harness.gateway
        try:
            response = client.get("/api/hls-segment/clip.mov/720p_000.ts", follow_redirects=False)
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 500
        assert response.text == "Pre-signed URLs not configured"

    def test_invalid_path(self, harness, client):
        """Paths need a video id and a file."""
        response = client.get("/api/hls-segment/720p_000.ts", follow_redirects=False)

        assert response.status_code == 400
        assert response.text == "Invalid segment path"

    def test_gated_without_session(self, gated_harness, client):
        """A closed gate requires a session before redirecting."""
        response = client.get("/api/hls-segment/clip.mov/720p_000.ts", follow_redirects=False)

        assert response.status_code == 401


class TestHealthEndpoint:
    """Test suite for health check endpoint."""

    def test_health_check(self, harness, client):
        """Test health check endpoint."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["signing"] is True
        assert data["password_protected"] is False
