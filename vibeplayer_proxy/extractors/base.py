from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import httpx
import logging

from vibeplayer_proxy.configs import ResolverConfig, settings
from vibeplayer_proxy.schemas import ResolutionResult
from vibeplayer_proxy.utils.http_utils import create_httpx_client, DownloadError

logger = logging.getLogger(__name__)


class ExtractorError(Exception):
    """Base exception for all extractors."""
    pass


class IdentifierError(ExtractorError):
    """The share URL carries no recognizable share identifier."""
    pass


class UpstreamUnavailable(ExtractorError):
    """Every extractor failed at the transport level."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


@dataclass
class ShareLink:
    url: str
    share_id: str


def describe_transport_error(exc: httpx.TransportError) -> str:
    """Human readable reason for a transport failure, keeping the connection/timeout wording."""
    if isinstance(exc, httpx.TimeoutException):
        return f"Connection timed out: {exc}"
    return f"Connection error: {exc}"


class BaseExtractor(ABC):
    """Base class for all share link extractors.

    An extractor is one resolution method. ``extract`` returns a successful
    ``ResolutionResult`` or raises: ``ExtractorError`` for logical failures,
    ``DownloadError`` for upstream HTTP errors and ``httpx.TransportError`` for
    network failures. The caller turns those into per-method reasons.
    """

    name: str = "base"

    def __init__(
        self,
        config: ResolverConfig,
        request_headers: Optional[dict] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.transport = transport
        self.base_headers = {
            "user-agent": settings.user_agent,
            "accept-language": "en-US,en;q=0.9",
        }
        self.base_headers.update(request_headers or {})

    async def _make_request(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict] = None,
        timeout: Optional[float] = None,
        raise_on_status: bool = True,
        **kwargs,
    ) -> httpx.Response:
        """
        Make a single HTTP request.

        Parameters
        ----------
        timeout : float | None
            Seconds to wait for the request. Defaults to the API timeout.
        raise_on_status : bool
            If True, HTTP non-2xx raises DownloadError (preserves status code).

        Transport errors propagate unchanged so the pipeline can tell network
        restrictions apart from logical failures.
        """
        request_headers = self.base_headers.copy()
        if headers:
            request_headers.update(headers)

        timeout_cfg = httpx.Timeout(timeout or self.config.api_timeout)

        async with create_httpx_client(timeout=timeout_cfg, transport=self.transport) as client:
            response = await client.request(method, url, headers=request_headers, **kwargs)

        if raise_on_status and response.status_code >= 400:
            logger.debug(
                "HTTP %s for %s -- body preview: %s", response.status_code, url, response.text[:500]
            )
            raise DownloadError(response.status_code, f"HTTP {response.status_code} while requesting {url}")
        return response

    @abstractmethod
    async def extract(self, share: ShareLink) -> ResolutionResult:
        """Resolve the share to a direct media link."""
        pass
