import logging
from typing import Optional

import httpx
from fastapi import FastAPI, Depends, Security, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyQuery, APIKeyHeader
from starlette.middleware.cors import CORSMiddleware

from vibeplayer_proxy.configs import Settings, settings as default_settings
from vibeplayer_proxy.const import VERSION
from vibeplayer_proxy.resolver import ShareResolver
from vibeplayer_proxy.routes import proxy_router, resolver_router
from vibeplayer_proxy.routes.proxy import proxy_media
from vibeplayer_proxy.routes.resolver import health_payload, read_resolve_body, resolve_share
from vibeplayer_proxy.utils.cache_utils import ResolutionCache
from vibeplayer_proxy.utils.http_utils import get_proxy_headers
from vibeplayer_proxy.utils.rate_limit import SlidingWindowRateLimiter

logging.basicConfig(level=default_settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

api_password_query = APIKeyQuery(name="api_password", auto_error=False)
api_password_header = APIKeyHeader(name="api_password", auto_error=False)


async def verify_api_key(
    request: Request,
    api_key: str = Security(api_password_query),
    api_key_alt: str = Security(api_password_header),
):
    """
    Verifies the API key for the request.

    Args:
        request (Request): The incoming request, used to reach the app settings.
        api_key (str): The API key to validate.
        api_key_alt (str): The alternative API key to validate.

    Raises:
        HTTPException: If the API key is invalid.
    """
    api_password = request.app.state.settings.api_password
    if not api_password:
        return

    if api_key == api_password or api_key_alt == api_password:
        return

    raise HTTPException(status_code=403, detail="Could not validate credentials")


def create_app(
    app_settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the application with its resolver, cache and rate limiter.

    Args:
        app_settings (Settings, optional): Configuration; defaults to the environment settings.
        transport (httpx.AsyncBaseTransport, optional): Upstream transport for every outbound call.
    """
    app_settings = app_settings or default_settings
    resolver_config = app_settings.resolver

    docs_kwargs = {"docs_url": None, "redoc_url": None, "openapi_url": None} if app_settings.disable_docs else {}
    app = FastAPI(title="VibePlayer Proxy", version=VERSION, **docs_kwargs)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Length", "Content-Range", "Accept-Ranges", "Content-Disposition"],
    )

    cache = ResolutionCache(resolver_config.cache_dir, ttl=resolver_config.cache_ttl)
    app.state.settings = app_settings
    app.state.transport = transport
    app.state.cache = cache
    app.state.rate_limiter = SlidingWindowRateLimiter(
        resolver_config.rate_limit_requests, resolver_config.rate_limit_window
    )
    app.state.resolver = ShareResolver(resolver_config, cache=cache, transport=transport)
    logger.info(f"Resolution cache at {resolver_config.cache_dir} (ttl {resolver_config.cache_ttl}s)")

    @app.get("/health")
    async def health_check(request: Request):
        return health_payload(request.app.state.cache)

    @app.api_route("/", methods=["GET", "HEAD", "POST"], dependencies=[Depends(verify_api_key)])
    async def query_flag_entrypoint(request: Request):
        """
        Single-endpoint surface driven by query flags: ``?stream``, ``?resolve``,
        ``?health`` and ``?download``. A POST with a JSON body is a resolve call.
        """
        params = request.query_params
        is_json_post = request.method == "POST" and "application/json" in request.headers.get("content-type", "")

        if "stream" in params:
            return await proxy_media(request, params.get("url"), get_proxy_headers(request))

        if "resolve" in params or is_json_post:
            url = params.get("url")
            if request.method == "POST":
                url = (await read_resolve_body(request)).share_url
            return await resolve_share(request, url, refresh=params.get("refresh") in ("1", "true"))

        if "health" in params:
            return health_payload(request.app.state.cache)

        if "download" in params:
            return await proxy_media(
                request,
                params.get("url"),
                get_proxy_headers(request),
                download=True,
                filename=params.get("filename"),
            )

        return JSONResponse(
            {
                "name": "VibePlayer Proxy",
                "version": VERSION,
                "endpoints": ["/resolve", "/proxy/stream", "/proxy/download", "/health"],
            }
        )

    app.include_router(resolver_router, tags=["resolver"], dependencies=[Depends(verify_api_key)])
    app.include_router(proxy_router, prefix="/proxy", tags=["proxy"], dependencies=[Depends(verify_api_key)])
    return app


app = create_app()


def run():
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8888, log_level="info")


if __name__ == "__main__":
    run()
