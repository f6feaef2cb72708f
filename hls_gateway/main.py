"""Main FastAPI application for the HLS delivery gateway."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import httpx
from fastapi import Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError

from hls_gateway.auth import AUTH_COOKIE_NAME, AuthVersionStore, SessionGate, is_valid_return_to, request_audience
from hls_gateway.config import Settings, settings
from hls_gateway.exceptions import (
    BadRequestError,
    ForbiddenError,
    GatewayError,
    NotFoundError,
    UnauthorizedError,
    UnsafeInputError,
)
from hls_gateway.gateway import DeliveryGateway
from hls_gateway.kv_store import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore
from hls_gateway.metadata import MemoryMetadataStore, MetadataStore, QualityLevelResolver, SqlMetadataStore
from hls_gateway.models import AirPlayUrlResponse, AuthVersionResponse, GenerateAirPlayUrlRequest, LoginResponse
from hls_gateway.signer import SigningConfig
from hls_gateway.signing_cache import SigningCache
from hls_gateway.storage import MemoryObjectStore, ObjectStore, R2ObjectStore
from hls_gateway.token_service import PlaybackTokenService

VERSION = "0.1.0"

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

FILE_ROUTE_PREFIXES = ("/api/airplay/", "/api/hls/", "/api/hls-segment/")

# Global HTTP client for object storage requests
http_client: httpx.AsyncClient | None = None

# Global gateway wired from settings
gateway: DeliveryGateway | None = None


def build_gateway(
    config: Settings,
    kv: Optional[KeyValueStore] = None,
    objects: Optional[ObjectStore] = None,
    metadata: Optional[MetadataStore] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> DeliveryGateway:
    """
    Wire the gateway from settings; explicit collaborators take precedence.

    Defaults to in-memory stores so a bare checkout starts without Redis,
    a database or R2 credentials.
    """
    if kv is None:
        kv = RedisKeyValueStore(config.redis_url) if config.redis_url else MemoryKeyValueStore()
    if metadata is None:
        metadata = SqlMetadataStore(config.database_url) if config.database_url else MemoryMetadataStore()

    signing_cache = None
    if config.signing_enabled:
        signing_cache = SigningCache(kv, SigningConfig.from_settings(config), batch_size=config.sign_batch_size)
    else:
        logger.warning("R2 credentials missing; signed playlists are disabled")

    if objects is None:
        if config.storage_backend == "r2":
            if signing_cache is None or client is None:
                raise ValueError("storage_backend=r2 requires R2 credentials and an HTTP client")
            objects = R2ObjectStore(signing_cache.config, signing_cache, client)
        else:
            objects = MemoryObjectStore()

    return DeliveryGateway(
        objects=objects,
        quality_levels=QualityLevelResolver(metadata, kv),
        tokens=PlaybackTokenService(kv, ttl_seconds=config.airplay_token_ttl_seconds),
        signing_cache=signing_cache,
        hls_prefix=config.hls_prefix,
        signed_url_ttl_seconds=config.signed_url_ttl_seconds,
        session_gate=SessionGate(
            password=config.gallery_password,
            secret=config.auth_secret,
            versions=AuthVersionStore(kv),
            max_age_seconds=config.session_max_age_seconds,
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifespan (startup and shutdown)."""
    global http_client, gateway

    # Startup
    logger.info("Starting HLS delivery gateway")
    http_client = httpx.AsyncClient(
        limits=httpx.Limits(
            max_keepalive_connections=settings.http_max_keepalive_connections,
            max_connections=settings.http_max_connections,
        ),
        timeout=httpx.Timeout(settings.http_timeout_seconds),
        follow_redirects=True,
    )
    logger.info(f"HTTP client initialized with timeout={settings.http_timeout_seconds}s")
    gateway = build_gateway(settings, client=http_client)
    logger.info(f"Gateway initialized: storage={settings.storage_backend}, signing={settings.signing_enabled}")

    yield

    # Shutdown
    logger.info("Shutting down HLS delivery gateway")
    if gateway:
        await gateway.objects.close()
        await gateway.quality_levels.metadata.close()
        await gateway.tokens.kv.close()
    if http_client:
        await http_client.aclose()
        logger.info("HTTP client closed")


# Initialize FastAPI app
app = FastAPI(
    title="HLS Delivery Gateway",
    description="Signed and token-scoped HLS delivery for browser and AirPlay playback",
    version=VERSION,
    lifespan=lifespan,
)


def get_gateway() -> DeliveryGateway:
    """Dependency returning the process gateway (built lazily outside the lifespan)."""
    global gateway
    if gateway is None:
        gateway = build_gateway(settings)
    return gateway


def _error_response(
    request: Request,
    status_code: int,
    detail: str,
    headers: Optional[dict[str, str]] = None,
) -> Response:
    """File routes answer in plain text, API routes in JSON."""
    path = request.url.path
    if path.startswith(FILE_ROUTE_PREFIXES) and path != "/api/hls/playlist":
        return PlainTextResponse(detail, status_code=status_code, headers=headers)
    return JSONResponse({"error": detail}, status_code=status_code, headers=headers)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> Response:
    """Render gateway errors; every error ends the request, nothing is retried."""
    return _error_response(request, exc.status_code, exc.detail, exc.headers)


@app.exception_handler(UnsafeInputError)
async def unsafe_input_handler(request: Request, exc: UnsafeInputError) -> Response:
    """Sanitation failures are client errors."""
    logger.warning(f"Rejected input on {request.url.path}: {exc}")
    return _error_response(request, status.HTTP_400_BAD_REQUEST, str(exc))


def _base_url(request: Request) -> str:
    return str(request.base_url).rstrip("/")


async def _require_session(request: Request, gateway: DeliveryGateway, token: Optional[str] = None) -> bool:
    """
    Enforce the password gate for browser routes.

    Returns whether the caller presented a valid credential (False when the
    gate is open).

    Raises:
        UnauthorizedError: If a password is configured and no valid credential was sent
    """
    gate = gateway.session_gate
    if not gate.required:
        return False

    credential = request.cookies.get(AUTH_COOKIE_NAME) or token
    audience = request_audience(
        request.headers.get("Origin"),
        request.headers.get("Referer"),
        str(request.url),
    )
    if not await gate.is_authorized(credential, audience):
        logger.info(f"Unauthorized request: path={request.url.path}")
        raise UnauthorizedError()
    return True


@app.get(
    "/api/hls/playlist",
    summary="Master playlist",
    description="Master playlist for a video with variants routed through the signing gateway",
)
async def hls_playlist(
    request: Request,
    key: Optional[str] = Query(None, description="Video key"),
    token: Optional[str] = Query(None, description="Session credential for clients without cookies"),
    gateway: DeliveryGateway = Depends(get_gateway),
) -> Response:
    """Return the master playlist for `key`."""
    if not key:
        raise BadRequestError("Missing key parameter")
    await _require_session(request, gateway, token)
    return await gateway.master_playlist(key, credential=token)


@app.get(
    "/api/hls/{path:path}",
    summary="Variant playlist or segment",
    description="Variant playlists with pre-signed segment URLs, or raw segment bytes",
)
async def hls_file(
    request: Request,
    path: str,
    token: Optional[str] = Query(None, description="Session credential for clients without cookies"),
    gateway: DeliveryGateway = Depends(get_gateway),
) -> Response:
    """Serve `/api/hls/{videoId}/{file}`."""
    await _require_session(request, gateway, token)
    return await gateway.hls_file(path, byte_range=request.headers.get("Range"))


@app.get(
    "/api/hls-segment/{path:path}",
    summary="Segment redirect",
    description="Redirect to a cached pre-signed storage URL for one segment",
)
async def hls_segment_redirect(
    request: Request,
    path: str,
    token: Optional[str] = Query(None, description="Session credential for clients without cookies"),
    gateway: DeliveryGateway = Depends(get_gateway),
) -> Response:
    """Serve `/api/hls-segment/{videoId}/{file}` as a 302 to storage."""
    await _require_session(request, gateway, token)
    return await gateway.segment_redirect(path)


@app.post(
    "/api/generate-airplay-url",
    response_model=AirPlayUrlResponse,
    response_model_by_alias=True,
    summary="Create AirPlay URL",
    description="Mint a playback token and return the token-scoped master playlist URL",
)
async def generate_airplay_url(
    request: Request,
    gateway: DeliveryGateway = Depends(get_gateway),
) -> AirPlayUrlResponse:
    """
    Issue a playback token for a video.

    Open when no gallery password is configured; otherwise the caller needs a
    valid session credential. The token outlives the browser session.
    """
    authenticated = await _require_session(request, gateway)

    try:
        body = await request.json()
        payload = GenerateAirPlayUrlRequest.model_validate(body)
    except (ValueError, ValidationError):
        raise BadRequestError("Missing videoId")

    airplay_url, playback_token = await gateway.issue_airplay_url(
        payload.video_id,
        origin=_base_url(request),
        authenticated=authenticated,
    )
    return AirPlayUrlResponse(
        airplay_url=airplay_url,
        expires_at=gateway.tokens.expires_at(playback_token),
    )


@app.get(
    "/api/airplay/{path:path}",
    summary="AirPlay HLS content",
    description="Token-scoped manifests and segments for casting devices",
)
async def airplay_content(
    request: Request,
    path: str,
    gateway: DeliveryGateway = Depends(get_gateway),
) -> Response:
    """Serve `/api/airplay/{token}/{file}`; the token is the only credential."""
    return await gateway.airplay_file(path, _base_url(request), byte_range=request.headers.get("Range"))


@app.post(
    "/api/login",
    response_model=LoginResponse,
    response_model_by_alias=True,
    summary="Log in",
    description="Exchange the gallery password for a session credential cookie",
)
async def login(request: Request, gateway: DeliveryGateway = Depends(get_gateway)) -> Response:
    """Validate the password and set the `gallery_auth` cookie."""
    gate = gateway.session_gate
    if gate.misconfigured:
        logger.error("gallery_password is set without auth_secret")
        return JSONResponse({"error": "Server configuration error"}, status_code=500)

    form = await request.form()
    password = str(form.get("password") or "")
    return_to = str(form.get("returnTo") or "/")
    if not is_valid_return_to(return_to, request.url.hostname or ""):
        return_to = "/"

    if not gate.check_password(password):
        return JSONResponse({"error": "Invalid password"}, status_code=status.HTTP_401_UNAUTHORIZED)

    audience = request_audience(request.headers.get("Origin"), request.headers.get("Referer"), str(request.url))
    credential = await gate.issue_credential(audience)

    secure = request.url.scheme == "https"
    response = JSONResponse(LoginResponse(return_to=return_to).model_dump(by_alias=True))
    response.set_cookie(
        AUTH_COOKIE_NAME,
        credential,
        max_age=gate.max_age_seconds,
        path="/",
        httponly=True,
        secure=secure,
        samesite="none" if secure else "lax",
    )
    logger.info(f"Session credential issued for audience={audience}")
    return response


@app.post(
    "/api/admin/auth-version/bump",
    response_model=AuthVersionResponse,
    summary="Invalidate session credentials",
    description="Bump the auth version, invalidating every issued session credential",
)
async def bump_auth_version(
    x_admin_key: Optional[str] = Header(None),
    gateway: DeliveryGateway = Depends(get_gateway),
) -> AuthVersionResponse:
    """Administrative action; playback tokens are not affected."""
    if not settings.admin_api_key:
        raise NotFoundError("Not found")
    if not x_admin_key or x_admin_key != settings.admin_api_key:
        raise ForbiddenError()
    if gateway.session_gate.versions is None:
        raise NotFoundError("Not found")

    new_version = await gateway.session_gate.versions.bump()
    return AuthVersionResponse(auth_version=new_version)


@app.get(
    "/health",
    summary="Health check",
    description="Health check endpoint",
)
async def health_check(gateway: DeliveryGateway = Depends(get_gateway)) -> dict:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "signing": gateway.signing_cache is not None,
        "password_protected": gateway.session_gate.required,
        "version": VERSION,
    }


def run():
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level)


if __name__ == "__main__":
    run()
