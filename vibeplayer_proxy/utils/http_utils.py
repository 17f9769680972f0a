import ipaddress
import logging
import typing
from dataclasses import dataclass
from functools import partial
from urllib.parse import urlparse

import anyio
import h11
import httpx
from fastapi import Response
from starlette.background import BackgroundTask
from starlette.concurrency import iterate_in_threadpool
from starlette.requests import Request
from starlette.types import Receive, Send, Scope
from tqdm.asyncio import tqdm as tqdm_asyncio

from vibeplayer_proxy.configs import settings
from vibeplayer_proxy.const import SUPPORTED_REQUEST_HEADERS

logger = logging.getLogger(__name__)


class DownloadError(Exception):
    def __init__(self, status_code, message):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def create_httpx_client(
    follow_redirects: bool = True,
    transport: httpx.AsyncBaseTransport | None = None,
    **kwargs,
) -> httpx.AsyncClient:
    """
    Create an HTTPX AsyncClient with the configured transport mounts.

    Args:
        follow_redirects (bool): Whether to follow 3xx redirects automatically.
        transport (httpx.AsyncBaseTransport | None): Explicit transport, e.g. a MockTransport in tests.
        **kwargs: Additional AsyncClient keyword arguments.

    Returns:
        httpx.AsyncClient: Configured client.
    """
    kwargs.setdefault("timeout", settings.transport_config.timeout)
    if transport is None:
        kwargs["mounts"] = settings.transport_config.get_mounts()
        kwargs.setdefault("verify", not settings.transport_config.disable_ssl_verification_globally)
    else:
        kwargs["transport"] = transport

    return httpx.AsyncClient(follow_redirects=follow_redirects, **kwargs)


def is_http_url(url: str | None) -> bool:
    """Return True when ``url`` is an absolute http(s) URL with a host."""
    if not url:
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc) and bool(parsed.hostname)


async def is_public_host(hostname: str) -> bool:
    """
    Resolve a hostname and check that none of its addresses is private, loopback or reserved.

    Returns False when the name does not resolve.
    """
    try:
        infos = await anyio.getaddrinfo(hostname, None)
    except OSError:
        logger.warning(f"Hostname resolution failed for {hostname}")
        return False

    for info in infos:
        address = ipaddress.ip_address(info[4][0])
        if address.is_private or address.is_loopback or address.is_reserved or address.is_link_local:
            logger.warning(f"Blocked non-public address {address} for host {hostname}")
            return False
    return True


def get_client_ip(request: Request) -> str:
    """Best-effort client address, honouring reverse proxy headers."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class Streamer:
    def __init__(self, client):
        """
        Initialize a Streamer with a configured HTTP client.

        Args:
            client (httpx.AsyncClient): The HTTP client to use for streaming.
        """
        self.client = client
        self.response = None
        self.progress_bar = None
        self.bytes_transferred = 0
        self.start_byte = 0
        self.end_byte = 0
        self.total_size = 0

    async def create_streaming_response(self, url: str, headers: dict):
        """
        Create and send a streaming request.

        Upstream 404/410 become DownloadError(404), other HTTP errors DownloadError(502)
        and transport failures DownloadError(500).

        Args:
            url (str): Source URL for the streaming content.
            headers (dict): Request headers.
        """
        try:
            request = self.client.build_request("GET", url, headers=headers, timeout=None)
            self.response = await self.client.send(request, stream=True, follow_redirects=True)
            self.response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"HTTP error {status} while creating streaming response")
            if status in (404, 410):
                raise DownloadError(404, "Video not found or not accessible")
            raise DownloadError(502, f"Upstream returned HTTP {status}")
        except httpx.RequestError as e:
            logger.error(f"Error creating streaming response: {e}")
            raise DownloadError(500, f"Streaming failed: {e}")

    async def stream_content(self) -> typing.AsyncGenerator[bytes, None]:
        """
        Stream response content as an async byte generator.
        """
        if not self.response:
            raise RuntimeError("No response available for streaming")

        try:
            self.parse_content_range()

            if settings.enable_streaming_progress:
                with tqdm_asyncio(
                    total=self.total_size,
                    initial=self.start_byte,
                    unit="B",
                    unit_scale=True,
                    unit_divisor=1024,
                    desc="Streaming",
                    ncols=100,
                    mininterval=1,
                ) as self.progress_bar:
                    async for chunk in self.response.aiter_bytes():
                        yield chunk
                        chunk_size = len(chunk)
                        self.bytes_transferred += chunk_size
                        self.progress_bar.set_postfix_str(
                            f"sent: {self.format_bytes(self.bytes_transferred)}", refresh=False
                        )
                        self.progress_bar.update(chunk_size)
            else:
                async for chunk in self.response.aiter_bytes():
                    yield chunk
                    self.bytes_transferred += len(chunk)

        except httpx.TransportError as e:
            if self.bytes_transferred > 0:
                logger.warning(f"Upstream connection lost after {self.bytes_transferred} bytes: {e!r}")
                return
            if isinstance(e, httpx.TimeoutException):
                logger.warning("Timeout while streaming")
                raise DownloadError(500, "Timeout while streaming")
            raise DownloadError(502, f"Upstream connection lost before any data was sent: {e}")
        except GeneratorExit:
            logger.info("Streaming session stopped by the client")

    @staticmethod
    def format_bytes(size) -> str:
        power = 2**10
        n = 0
        units = {0: "B", 1: "KB", 2: "MB", 3: "GB", 4: "TB"}
        while size > power and n < 4:
            size /= power
            n += 1
        return f"{size:.2f} {units[n]}"

    def parse_content_range(self):
        """
        Parse Content-Range/Content-Length headers to compute byte positions and total size.
        """
        content_range = self.response.headers.get("Content-Range", "")
        if content_range:
            span, _, total = content_range.split()[-1].partition("/")
            start, _, end = span.partition("-")
            self.start_byte = int(start) if start.isdigit() else 0
            self.end_byte = int(end) if end.isdigit() else 0
            self.total_size = int(total) if total.isdigit() else 0
        else:
            self.start_byte = 0
            self.total_size = int(self.response.headers.get("Content-Length", 0))
            self.end_byte = self.total_size - 1 if self.total_size > 0 else 0

    async def close(self):
        """
        Close HTTP response and client resources.
        """
        if self.response:
            await self.response.aclose()
        if self.progress_bar:
            self.progress_bar.close()
        await self.client.aclose()


@dataclass
class ProxyRequestHeaders:
    request: dict


def get_proxy_headers(request: Request) -> ProxyRequestHeaders:
    """
    Extract the inbound headers that are forwarded upstream.

    Only range related headers pass through; everything else the upstream
    sees is set by the proxy itself.

    Args:
        request (Request): Incoming HTTP request.

    Returns:
        ProxyRequestHeaders: Request headers extracted for proxying.
    """
    return ProxyRequestHeaders({k: v for k, v in request.headers.items() if k in SUPPORTED_REQUEST_HEADERS})


async def reject_private_hosts(request: httpx.Request) -> None:
    """
    httpx request hook checking every hop, redirects included, against the SSRF guard.

    Raises:
        DownloadError: If the hop targets a host with a non-public address.
    """
    if not await is_public_host(request.url.host):
        raise DownloadError(400, "Video URL host is not allowed")


class EnhancedStreamingResponse(Response):
    body_iterator: typing.AsyncIterable[typing.Any]

    def __init__(
        self,
        content: typing.Union[typing.AsyncIterable[typing.Any], typing.Iterable[typing.Any]],
        status_code: int = 200,
        headers: typing.Optional[typing.Mapping[str, str]] = None,
        media_type: typing.Optional[str] = None,
        background: typing.Optional[BackgroundTask] = None,
    ) -> None:
        if isinstance(content, typing.AsyncIterable):
            self.body_iterator = content
        else:
            self.body_iterator = iterate_in_threadpool(content)
        self.status_code = status_code
        self.media_type = self.media_type if media_type is None else media_type
        self.background = background
        self.init_headers(headers)
        self.actual_content_length = 0

    @staticmethod
    async def listen_for_disconnect(receive: Receive) -> None:
        """
        Listen for client disconnect events to stop streaming gracefully.
        """
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                logger.debug("Client disconnected")
                break

    async def stream_response(self, send: Send) -> None:
        """
        Stream the response body chunk by chunk as upstream bytes arrive.

        Failures after the response has started end the body early instead
        of escaping the ASGI app; a failure before that becomes a 502.
        """
        response_started = False
        try:
            await send(
                {
                    "type": "http.response.start",
                    "status": self.status_code,
                    "headers": self.raw_headers,
                }
            )
            response_started = True

            data_sent = False
            try:
                async for chunk in self.body_iterator:
                    if not isinstance(chunk, (bytes, memoryview)):
                        chunk = chunk.encode(self.charset)
                    try:
                        await send({"type": "http.response.body", "body": chunk, "more_body": True})
                        data_sent = True
                        self.actual_content_length += len(chunk)
                    except (ConnectionResetError, anyio.BrokenResourceError):
                        logger.info("Client disconnected during streaming")
                        return

                await send({"type": "http.response.body", "body": b"", "more_body": False})
            except (httpx.RemoteProtocolError, h11.LocalProtocolError) as e:
                if not data_sent:
                    logger.error(f"Protocol error before any data was streamed: {e}")
                    raise
                logger.warning(f"Remote protocol error after partial streaming: {e}")
                await send({"type": "http.response.body", "body": b"", "more_body": False})
                logger.info(
                    f"Response finalized after partial content ({self.actual_content_length} bytes transferred)"
                )
        except (ConnectionResetError, anyio.BrokenResourceError):
            logger.info("Client disconnected during streaming")
        except Exception as e:
            logger.exception(f"Error in stream_response: {str(e)}")
            try:
                if not response_started:
                    await send(
                        {
                            "type": "http.response.start",
                            "status": 502,
                            "headers": [(b"content-type", b"text/plain")],
                        }
                    )
                    await send(
                        {
                            "type": "http.response.body",
                            "body": f"Streaming error: {str(e)}".encode("utf-8"),
                            "more_body": False,
                        }
                    )
                else:
                    await send({"type": "http.response.body", "body": b"", "more_body": False})
            except Exception as close_err:
                logger.warning(f"Could not finalize response after streaming error: {close_err}")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        ASGI entrypoint: run streaming and disconnect listener concurrently.
        """
        async with anyio.create_task_group() as task_group:
            stream_func = partial(self.stream_response, send)
            listen_func = partial(self.listen_for_disconnect, receive)

            async def wrap(func: typing.Callable[[], typing.Awaitable[None]]) -> None:
                await func()
                task_group.cancel_scope.cancel()

            task_group.start_soon(wrap, stream_func)
            await wrap(listen_func)

        if self.background is not None:
            await self.background()
