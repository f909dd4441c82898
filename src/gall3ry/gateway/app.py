"""FastAPI gateway: identity, user search, NFT, collection-friends and image-proxy endpoints"""

import asyncio
import time
import uuid
from collections import deque
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Sequence, Union

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, Response
from loguru import logger
from pydantic import Field, ValidationError
from starlette.datastructures import Headers
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..aggregator import DEFAULT_SEARCH_LIMIT, MAX_SEARCH_LIMIT, NftQueryOptions
from ..config import Config, config as default_config
from ..errors import (
    GalleryError,
    InternalError,
    InvalidInput,
    NotFound,
    RateLimited,
    Unauthorized,
)
from ..filters import FilterOptions, SortOptions
from ..friends import DEFAULT_FRIENDS_LIMIT, MAX_FRIENDS_LIMIT
from ..models import Chain, GalleryModel, SortKey
from ..services import Services, build_services
from ..utils import parse_chains, parse_timestamp
from .image_proxy import ImageProxy

RATE_LIMIT_WINDOW = 60  # seconds
MAX_SPAM_CONTRACTS = 50

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


class IdentityRequest(GalleryModel):
    username_or_fid: Union[int, str] = Field(...)


class RateLimiter:
    """
    Per-client sliding one-minute window

    Clients idle for a full window are dropped on the next sweep, which runs
    at most once per window from check().
    """

    def __init__(self, limit: int, window: float = RATE_LIMIT_WINDOW, timer=time.monotonic):
        self.limit = limit
        self.window = window
        self.timer = timer
        self.requests: Dict[str, Deque[float]] = {}
        self._last_sweep = timer()

    def sweep(self) -> int:
        """Forget clients with no request inside the window"""
        cutoff = self.timer() - self.window
        stale = [
            client for client, timestamps in self.requests.items()
            if not timestamps or timestamps[-1] <= cutoff
        ]
        for client in stale:
            del self.requests[client]
        return len(stale)

    def check(self, client: str) -> bool:
        """Record a request; False when the client is over its limit"""
        if self.limit <= 0:
            return True
        now = self.timer()
        if now - self._last_sweep >= self.window:
            self.sweep()
            self._last_sweep = now
        timestamps = self.requests.setdefault(client, deque())
        while timestamps and timestamps[0] <= now - self.window:
            timestamps.popleft()
        if len(timestamps) >= self.limit:
            return False
        timestamps.append(now)
        return True


def get_client_ip(request: Request, trusted_proxies: Sequence[str] = ()) -> str:
    """
    Extract client IP address

    X-Forwarded-For is honoured only when the direct peer is a trusted proxy;
    the client is the nearest hop that is not itself a trusted proxy.
    """
    peer = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("X-Forwarded-For")
    if not forwarded or peer not in trusted_proxies:
        return peer
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted_proxies:
            return hop
    return hops[0] if hops else peer


class PreflightCORSMiddleware(CORSMiddleware):
    """CORS middleware whose accepted preflights carry an empty body"""

    def preflight_response(self, request_headers: Headers) -> Response:
        response = super().preflight_response(request_headers)
        if response.status_code != 200:
            return response
        headers = {k: v for k, v in response.headers.items() if k not in ("content-length", "content-type")}
        return Response(status_code=200, headers=headers)


def _split_csv(value: Optional[str]) -> List[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def _parse_date(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    parsed = parse_timestamp(int(value) if value.strip().isdigit() else value)
    if parsed is None:
        raise InvalidInput(f"{name} is not a valid date", details={name: value})
    return parsed


def _gateway_error(status: int, message: str) -> GalleryError:
    """Error kind for a routing-level HTTP error raised by the framework"""
    if status == 404:
        return NotFound(message)
    if status == 429:
        return RateLimited(message)
    if status < 500:
        return InvalidInput(message)
    return InternalError(message)


def _error_response(error: GalleryError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_envelope())


async def _sweep_periodically(services: Services, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await services.cache.sweep()
        except Exception as e:
            logger.error(f"Cache sweep failed: {e}")


def create_app(
    config_instance: Optional[Config] = None,
    services: Optional[Services] = None,
    image_proxy: Optional[ImageProxy] = None,
) -> FastAPI:
    """
    Build the gateway application

    Services are created in the lifespan unless injected; injected services
    are left open on shutdown.
    """
    cfg = config_instance or (services.config if services else default_config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.services is None
        if owned:
            app.state.services = build_services(cfg)
        sweeper = None
        if cfg.cache_sweep_interval > 0:
            sweeper = asyncio.create_task(_sweep_periodically(app.state.services, cfg.cache_sweep_interval))
        logger.info(f"Gateway started (cache version {app.state.services.cache.version})")
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                with suppress(asyncio.CancelledError):
                    await sweeper
            if owned:
                await app.state.services.close()
                app.state.services = None
            logger.info("Gateway stopped")

    app = FastAPI(title="Gall3ry Gateway", version=__version__, lifespan=lifespan)
    app.state.services = services
    app.state.image_proxy = image_proxy or ImageProxy(cfg.image_proxy_allowed_hosts)
    app.state.rate_limiter = RateLimiter(cfg.rate_limit_per_minute)

    origins = cfg.cors_origins
    if origins == ["*"]:
        logger.warning("CORS allows all origins (dev mode)")
    app.add_middleware(
        PreflightCORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        max_age=3600,
    )
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=cfg.allowed_hosts)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Add security headers to all responses"""
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

    # Error envelopes

    @app.exception_handler(GalleryError)
    async def gallery_error_handler(request: Request, exc: GalleryError):
        if exc.status_code >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.message}")
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": [str(part) for part in error.get("loc", ())], "msg": str(error.get("msg", ""))}
            for error in exc.errors()
        ]
        return _error_response(InvalidInput("Request validation failed", details={"errors": errors}))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        error = _gateway_error(exc.status_code, str(exc.detail))
        return JSONResponse(status_code=exc.status_code, content=error.to_envelope())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        correlation_id = uuid.uuid4().hex[:12]
        logger.opt(exception=exc).error(f"Unhandled error [{correlation_id}] on {request.method} {request.url.path}")
        return _error_response(InternalError("Internal server error", details={"correlationId": correlation_id}))

    # Dependencies

    def get_services(request: Request) -> Services:
        services_instance = request.app.state.services
        if services_instance is None:
            raise InternalError("Gateway services are not initialised")
        return services_instance

    async def guard(request: Request) -> None:
        """Rate limit, then shared-token auth when configured"""
        client_ip = get_client_ip(request, cfg.trusted_proxies)
        if not request.app.state.rate_limiter.check(client_ip):
            logger.warning(f"Rate limit exceeded for IP: {client_ip}")
            raise RateLimited("Too many requests")

        token = cfg.gateway_api_token
        if not token:
            return
        authorization = request.headers.get("Authorization", "")
        presented = request.headers.get("X-Api-Key")
        if authorization.lower().startswith("bearer "):
            presented = authorization[len("bearer "):].strip()
        if presented != token:
            logger.warning(f"Rejected unauthenticated request from {client_ip}")
            raise Unauthorized("Missing or invalid API token")

    # Routes

    @app.get("/health")
    async def health(request: Request) -> Dict[str, Any]:
        services_instance = request.app.state.services
        entries = await services_instance.cache.size() if services_instance else 0
        return {
            "status": "ok",
            "version": __version__,
            "cacheVersion": services_instance.cache.version if services_instance else cfg.cache_version,
            "cacheEntries": entries,
        }

    @app.post("/api/identity", dependencies=[Depends(guard)])
    async def resolve_identity(body: IdentityRequest, services_instance: Services = Depends(get_services)):
        identity = await services_instance.aggregator.resolve_identity(body.username_or_fid)
        return {"identity": identity.to_json()}

    @app.get("/api/user-search", dependencies=[Depends(guard)])
    async def search_users(
        q: str = Query(..., min_length=1, max_length=100),
        limit: int = Query(DEFAULT_SEARCH_LIMIT, ge=1, le=MAX_SEARCH_LIMIT),
        services_instance: Services = Depends(get_services),
    ):
        users = await services_instance.aggregator.search_users(q, limit)
        return {"users": [user.to_json() for user in users]}

    @app.get("/api/nfts", dependencies=[Depends(guard)])
    async def get_nfts(
        identity: str = Query(..., min_length=1),
        chain: Optional[str] = Query(None),
        page_token: Optional[str] = Query(None, alias="pageToken"),
        page_size: int = Query(100, alias="pageSize", ge=1, le=100),
        exclude_spam: bool = Query(True, alias="excludeSpam"),
        sort: SortKey = Query(SortKey.COLLECTION),
        order: Optional[str] = Query(None, pattern="^(asc|desc)$"),
        wallets: Optional[str] = Query(None),
        q: Optional[str] = Query(None, max_length=200),
        min_value: Optional[float] = Query(None, alias="minValue"),
        max_value: Optional[float] = Query(None, alias="maxValue"),
        acquired_after: Optional[str] = Query(None, alias="acquiredAfter"),
        acquired_before: Optional[str] = Query(None, alias="acquiredBefore"),
        services_instance: Services = Depends(get_services),
    ):
        try:
            filters = FilterOptions(
                query=q,
                min_value=min_value,
                max_value=max_value,
                acquired_after=_parse_date(acquired_after, "acquiredAfter"),
                acquired_before=_parse_date(acquired_before, "acquiredBefore"),
            )
        except ValidationError as e:
            raise InvalidInput("Invalid filter options", details={"errors": [err["msg"] for err in e.errors()]})

        options = NftQueryOptions(
            chains=parse_chains(chain, cfg.default_chains),
            wallets=_split_csv(wallets) or None,
            page_size=page_size,
            page_token=page_token,
            exclude_spam=exclude_spam,
            filters=filters,
            sort=SortOptions(key=sort, descending=None if order is None else order == "desc"),
        )
        page = await services_instance.aggregator.get_nfts_for_identity(identity, options)
        return page.to_json()

    @app.get("/api/collection-friends", dependencies=[Depends(guard)])
    async def get_collection_friends(
        contract: str = Query(...),
        viewer_fid: int = Query(..., alias="viewerFid", ge=0),
        chain: str = Query("eth"),
        limit: int = Query(DEFAULT_FRIENDS_LIMIT, ge=1, le=MAX_FRIENDS_LIMIT),
        services_instance: Services = Depends(get_services),
    ):
        result = await services_instance.friends.get_collection_friends(
            contract, Chain.from_string(chain), viewer_fid, limit=limit
        )
        return result.to_json()

    @app.get("/api/collection-holders", dependencies=[Depends(guard)])
    async def get_collection_holders(
        contract: str = Query(...),
        chain: str = Query("eth"),
        limit: int = Query(DEFAULT_FRIENDS_LIMIT, ge=1, le=MAX_FRIENDS_LIMIT),
        services_instance: Services = Depends(get_services),
    ):
        listing = await services_instance.friends.get_collection_holders(
            contract, Chain.from_string(chain), limit=limit
        )
        return {
            "contract": listing.contract,
            "chain": listing.chain.value,
            "totalOwners": len(listing.owners),
            "holders": [profile.to_json() for profile in listing.profiles],
        }

    @app.get("/api/check-spam", dependencies=[Depends(guard)])
    async def check_spam(
        contracts: str = Query(...),
        chain: str = Query("eth"),
        services_instance: Services = Depends(get_services),
    ):
        addresses = _split_csv(contracts)
        if not addresses:
            raise InvalidInput("contracts is required")
        if len(addresses) > MAX_SPAM_CONTRACTS:
            raise InvalidInput(f"At most {MAX_SPAM_CONTRACTS} contracts per request")
        selected = Chain.from_string(chain)
        results = await services_instance.aggregator.check_spam(addresses, selected)
        return {"chain": selected.value, "results": results}

    @app.get("/api/image-proxy", dependencies=[Depends(guard)])
    async def image_proxy_endpoint(request: Request, url: Optional[str] = Query(None)):
        body, content_type, cache_control = await request.app.state.image_proxy.fetch(url)
        return Response(content=body, media_type=content_type, headers={"Cache-Control": cache_control})

    return app


app = create_app()
