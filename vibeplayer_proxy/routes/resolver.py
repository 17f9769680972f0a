import logging
import time
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from vibeplayer_proxy.const import VERSION
from vibeplayer_proxy.resolver import ShareResolver, validate_share_url
from vibeplayer_proxy.schemas import ResolveRequest
from vibeplayer_proxy.utils.cache_utils import ResolutionCache
from vibeplayer_proxy.utils.http_utils import get_client_ip
from vibeplayer_proxy.utils.rate_limit import SlidingWindowRateLimiter

resolver_router = APIRouter()
logger = logging.getLogger(__name__)

RESOLVE_CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": "GET, POST, OPTIONS",
    "access-control-allow-headers": "Content-Type",
}


async def read_resolve_body(request: Request) -> ResolveRequest:
    """Parse a JSON body of the form ``{"url": ...}`` or ``{"link": ...}``. Anything else is empty."""
    try:
        body = await request.json()
    except ValueError:
        return ResolveRequest()
    if not isinstance(body, dict):
        return ResolveRequest()
    return ResolveRequest(
        url=body.get("url") if isinstance(body.get("url"), str) else None,
        link=body.get("link") if isinstance(body.get("link"), str) else None,
    )


async def resolve_share(request: Request, url: Optional[str], refresh: bool = False) -> JSONResponse:
    """
    Rate limit, validate and resolve a share URL.

    Status codes: 200 success, 400 invalid URL or no identifier, 429 rate
    limited, 502 every method failed, 500 unexpected error.
    """
    rate_limiter: SlidingWindowRateLimiter = request.app.state.rate_limiter
    resolver: ShareResolver = request.app.state.resolver

    decision = await rate_limiter.check(get_client_ip(request))
    if not decision.allowed:
        return JSONResponse(
            status_code=429,
            content={
                "success": False,
                "error": "rate_limit_exceeded",
                "message": "Too many requests. Please wait before trying again.",
                "retry_after": decision.retry_after,
            },
            headers={**RESOLVE_CORS_HEADERS, "retry-after": str(decision.retry_after)},
        )

    if not await validate_share_url(url, resolver.config):
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "invalid_url",
                "message": "Invalid or blocked URL. Only supported share domains are allowed.",
            },
            headers=RESOLVE_CORS_HEADERS,
        )

    try:
        result = await resolver.resolve(url, use_cache=not refresh)
    except Exception as e:
        logger.exception(f"Resolution crashed: {str(e)}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "internal_error", "message": "Internal server error"},
            headers=RESOLVE_CORS_HEADERS,
        )

    payload = result.to_payload()
    if result.success:
        return JSONResponse(content=payload, headers=RESOLVE_CORS_HEADERS)
    if result.error == "identifier_not_found":
        return JSONResponse(status_code=400, content=payload, headers=RESOLVE_CORS_HEADERS)

    payload["retry_after"] = 30
    return JSONResponse(status_code=502, content=payload, headers=RESOLVE_CORS_HEADERS)


def health_payload(cache: ResolutionCache) -> dict:
    stats = cache.stats()
    return {
        "status": "healthy",
        "timestamp": int(time.time()),
        "version": VERSION,
        "cache_dir": stats["directory_writable"],
        "cache_stats": stats,
    }


@resolver_router.get("/resolve")
async def resolve_get(
    request: Request,
    url: Optional[str] = Query(None, description="The share URL to resolve."),
    refresh: bool = Query(False, description="Bypass the resolution cache."),
):
    """Resolve a share URL given as a query parameter."""
    return await resolve_share(request, url, refresh)


@resolver_router.post("/resolve")
async def resolve_post(
    request: Request,
    refresh: bool = Query(False, description="Bypass the resolution cache."),
):
    """Resolve a share URL given in a JSON body as ``url`` or ``link``."""
    body = await read_resolve_body(request)
    return await resolve_share(request, body.share_url, refresh)
