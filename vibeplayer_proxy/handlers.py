import logging
import os
import posixpath
import re
import time
from typing import Callable, Optional
from urllib.parse import unquote, urlparse

import httpx
from fastapi import Response
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask

from .configs import settings
from .const import CORS_HEADERS, DEFAULT_MEDIA_TYPE, SUPPORTED_RESPONSE_HEADERS
from .utils.http_utils import (
    Streamer,
    DownloadError,
    EnhancedStreamingResponse,
    ProxyRequestHeaders,
    create_httpx_client,
    reject_private_hosts,
)

logger = logging.getLogger(__name__)

UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


async def setup_client_and_streamer(
    transport: Optional[httpx.AsyncBaseTransport] = None,
    block_private_addresses: bool = False,
) -> tuple[httpx.AsyncClient, Streamer]:
    """
    Set up an HTTP client and a streamer.

    Returns:
        tuple: An httpx.AsyncClient instance and a Streamer instance.
    """
    event_hooks = {"request": [reject_private_hosts]} if block_private_addresses else None
    client = create_httpx_client(transport=transport, event_hooks=event_hooks)
    return client, Streamer(client)


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message}, headers=CORS_HEADERS)


def handle_exceptions(exception: Exception) -> Response:
    """
    Handle exceptions and return appropriate HTTP responses.

    Args:
        exception (Exception): The exception that was raised.

    Returns:
        Response: A JSON error response corresponding to the exception type.
    """
    if isinstance(exception, DownloadError):
        logger.error(f"Error streaming content: {exception}")
        return error_response(exception.status_code, exception.message)
    logger.exception(f"Internal server error while handling request: {exception}")
    return error_response(500, f"Streaming failed: {exception}")


def build_download_filename(
    video_url: str,
    filename: Optional[str] = None,
    clock: Callable[[], float] = time.time,
) -> str:
    """
    Pick a safe attachment filename.

    The explicit ``filename`` wins over the basename of the URL path. A name
    without an extension falls back to ``video_<unix time>.mp4``. Every
    character outside ``[a-zA-Z0-9._-]`` is replaced by an underscore.
    """
    candidate = filename or posixpath.basename(urlparse(video_url).path)
    candidate = unquote(candidate or "")
    if not candidate or not os.path.splitext(candidate)[1]:
        candidate = f"video_{int(clock())}.mp4"
    return UNSAFE_FILENAME_CHARS.sub("_", candidate)


def prepare_response_headers(original_headers, filename: Optional[str] = None) -> dict:
    """
    Prepare response headers for the proxy response.

    Keeps the upstream headers a media client needs, adds range and CORS
    headers and, for downloads, the attachment disposition.

    Args:
        original_headers (httpx.Headers): The original headers from the upstream response.
        filename (str, optional): Attachment filename for downloads.

    Returns:
        dict: The prepared headers for the proxy response.
    """
    response_headers = {k: v for k, v in original_headers.multi_items() if k in SUPPORTED_RESPONSE_HEADERS}
    if "content-encoding" in original_headers:
        # the body is relayed decoded, so the upstream length no longer applies
        response_headers.pop("content-length", None)

    response_headers.setdefault("content-type", DEFAULT_MEDIA_TYPE)
    response_headers["accept-ranges"] = "bytes"
    response_headers.update(CORS_HEADERS)

    if filename:
        response_headers["content-disposition"] = f'attachment; filename="{filename}"'
        response_headers["cache-control"] = "no-cache, must-revalidate"
        response_headers["expires"] = "0"

    return response_headers


def upstream_request_headers(proxy_headers: ProxyRequestHeaders) -> dict:
    headers = {
        "user-agent": settings.user_agent,
        "accept": "*/*",
        "accept-encoding": "identity",
        "referer": "https://www.terabox.com/",
    }
    headers.update(proxy_headers.request)
    return headers


async def handle_stream_request(
    method: str,
    video_url: str,
    proxy_headers: ProxyRequestHeaders,
    filename: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    block_private_addresses: bool = False,
) -> Response:
    """
    Handle stream and download requests.

    An inbound Range header is forwarded upstream; a 206 from upstream is
    mirrored with its Content-Range, otherwise the full body is relayed with
    status 200. Bytes are forwarded as they arrive.

    Args:
        method (str): The HTTP method (e.g., 'GET' or 'HEAD').
        video_url (str): The URL of the video to stream.
        proxy_headers (ProxyRequestHeaders): Headers to be used in the proxy request.
        filename (str, optional): Sanitized attachment name; set for downloads only.
        transport (httpx.AsyncBaseTransport, optional): Upstream transport override.
        block_private_addresses (bool): Check every hop, redirects included, against the SSRF guard.

    Returns:
        Union[Response, EnhancedStreamingResponse]: Either a HEAD response with headers or a streaming response.
    """
    _, streamer = await setup_client_and_streamer(transport, block_private_addresses)

    try:
        await streamer.create_streaming_response(video_url, upstream_request_headers(proxy_headers))
        response_headers = prepare_response_headers(streamer.response.headers, filename)
        status_code = 206 if streamer.response.status_code == 206 else 200

        if method == "HEAD":
            await streamer.close()
            return Response(headers=response_headers, status_code=status_code)

        return EnhancedStreamingResponse(
            streamer.stream_content(),
            headers=response_headers,
            status_code=status_code,
            background=BackgroundTask(streamer.close),
        )
    except Exception as e:
        await streamer.close()
        return handle_exceptions(e)
