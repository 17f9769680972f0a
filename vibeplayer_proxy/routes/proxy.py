import logging
from typing import Annotated, Optional
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response

from vibeplayer_proxy.handlers import build_download_filename, error_response, handle_stream_request
from vibeplayer_proxy.schemas import DownloadParams, StreamParams
from vibeplayer_proxy.utils.http_utils import (
    ProxyRequestHeaders,
    get_proxy_headers,
    is_http_url,
    is_public_host,
)

proxy_router = APIRouter()
logger = logging.getLogger(__name__)


async def check_media_url(request: Request, url: Optional[str]) -> Optional[Response]:
    """Return an error response when ``url`` may not be proxied, None otherwise."""
    if not is_http_url(url):
        return error_response(400, "Missing or invalid video URL")
    if request.app.state.settings.resolver.block_private_addresses and not await is_public_host(
        urlparse(url).hostname
    ):
        return error_response(400, "Video URL host is not allowed")
    return None


async def proxy_media(
    request: Request,
    url: Optional[str],
    proxy_headers: ProxyRequestHeaders,
    download: bool = False,
    filename: Optional[str] = None,
) -> Response:
    block_private_addresses = request.app.state.settings.resolver.block_private_addresses
    rejection = await check_media_url(request, url)
    if rejection is not None:
        return rejection

    attachment_name = build_download_filename(url, filename) if download else None
    logger.info(f"{'Download' if download else 'Stream'} request for {urlparse(url).netloc}")
    return await handle_stream_request(
        request.method,
        url,
        proxy_headers,
        filename=attachment_name,
        transport=request.app.state.transport,
        block_private_addresses=block_private_addresses,
    )


@proxy_router.head("/stream")
@proxy_router.get("/stream")
async def proxy_stream_endpoint(
    request: Request,
    stream_params: Annotated[StreamParams, Query()],
    proxy_headers: Annotated[ProxyRequestHeaders, Depends(get_proxy_headers)],
):
    """
    Relay a direct media URL, honouring the inbound Range header.

    Args:
        request (Request): The incoming HTTP request.
        stream_params (StreamParams): The media URL to relay.
        proxy_headers (ProxyRequestHeaders): The headers to include in the request.

    Returns:
        Response: The streamed media bytes or a JSON error.
    """
    return await proxy_media(request, stream_params.url, proxy_headers)


@proxy_router.head("/download")
@proxy_router.get("/download")
async def proxy_download_endpoint(
    request: Request,
    download_params: Annotated[DownloadParams, Query()],
    proxy_headers: Annotated[ProxyRequestHeaders, Depends(get_proxy_headers)],
):
    """
    Same as the stream endpoint, served as an attachment with a sanitized filename.
    """
    return await proxy_media(
        request, download_params.url, proxy_headers, download=True, filename=download_params.filename
    )
