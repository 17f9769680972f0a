"""
Share link resolution pipeline.

A resolution runs the registered extraction methods in order and returns the
first success. Each failing method contributes one reason string. When every
method failed at the transport level the whole pipeline is retried with
exponential backoff; a logical failure ("no link found") is returned at once.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from vibeplayer_proxy.configs import ResolverConfig
from vibeplayer_proxy.const import NETWORK_ERROR_MARKERS
from vibeplayer_proxy.extractors.base import (
    ExtractorError,
    IdentifierError,
    ShareLink,
    UpstreamUnavailable,
    describe_transport_error,
)
from vibeplayer_proxy.extractors.factory import ExtractorFactory
from vibeplayer_proxy.extractors.patterns import extract_share_id
from vibeplayer_proxy.schemas import ResolutionResult
from vibeplayer_proxy.utils.cache_utils import ResolutionCache
from vibeplayer_proxy.utils.http_utils import DownloadError, is_http_url, is_public_host

logger = logging.getLogger(__name__)


def is_network_restricted(errors: List[str]) -> bool:
    """True when every recorded reason reads like a DNS/connection failure."""
    if not errors:
        return False
    return all(any(marker in error.lower() for marker in NETWORK_ERROR_MARKERS) for error in errors)


async def validate_share_url(url: Optional[str], config: ResolverConfig) -> bool:
    """
    Check that ``url`` is a well formed http(s) URL on an allowed share host.

    With ``block_private_addresses`` the host must also resolve to public
    addresses only.
    """
    if not is_http_url(url):
        return False

    host = urlparse(url).hostname.lower()
    allowed = any(host == allowed or host.endswith("." + allowed) for allowed in config.allowed_hosts)
    if not allowed:
        logger.warning(f"Rejected share URL with host {host}")
        return False

    if config.block_private_addresses:
        return await is_public_host(host)
    return True


class ShareResolver:
    def __init__(
        self,
        config: ResolverConfig,
        cache: Optional[ResolutionCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.cache = cache
        self.transport = transport
        self._sleep = sleep

    async def resolve(self, url: str, use_cache: bool = True) -> ResolutionResult:
        """
        Resolve a share URL to a direct media link.

        Args:
            url (str): The share URL, used verbatim as the cache key.
            use_cache (bool): Whether a fresh cached result may be returned.

        Returns:
            ResolutionResult: Success with link and metadata, or failure with per-method reasons.
        """
        if use_cache and self.cache is not None:
            cached = await self.cache.get(url)
            if cached and cached.get("success"):
                logger.info(f"Serving resolution from cache for {url}")
                result = ResolutionResult.model_validate(cached)
                result.cached = True
                return result
            logger.info(f"Cache miss for {url}")

        try:
            share = ShareLink(url=url, share_id=extract_share_id(url))
        except IdentifierError as e:
            logger.warning(f"{e}: {url}")
            return ResolutionResult.failure("identifier_not_found", str(e), [str(e)])

        try:
            result = await self._run_with_retry(share)
        except UpstreamUnavailable as e:
            logger.error(f"Upstream unreachable after {self.config.max_attempts} attempts for {share.share_id}")
            result = ResolutionResult.failure(
                "resolution_failed",
                f"Failed to resolve share link after {self.config.max_attempts} attempts",
                e.errors,
            )

        if not result.success and self.config.enable_relay_fallback and is_network_restricted(result.errors):
            logger.info("Network restrictions detected, trying relay services")
            result = await self._resolve_via_relay(share, result)

        if result.success:
            logger.info(f"Resolved {share.share_id} via {result.method}")
            if self.cache is not None:
                await self.cache.set(url, result.model_dump(exclude={"cached"}))
        else:
            logger.error(f"Resolution failed for {share.share_id}: {result.errors}")
        return result

    async def _run_with_retry(self, share: ShareLink) -> ResolutionResult:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential(multiplier=self.config.retry_backoff),
            retry=retry_if_exception_type(UpstreamUnavailable),
            before_sleep=lambda state: logger.warning(
                f"Resolution attempt {state.attempt_number} failed in transport, retrying"
            ),
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._run_pipeline(share)

    async def _run_pipeline(self, share: ShareLink) -> ResolutionResult:
        """
        Run every extraction method once, short-circuiting on the first success.

        Raises:
            UpstreamUnavailable: If every method failed with a transport error.
        """
        extractors = ExtractorFactory.build_pipeline(self.config, transport=self.transport)
        errors: List[str] = []
        transport_failures = 0

        for extractor in extractors:
            try:
                return await extractor.extract(share)
            except httpx.TransportError as e:
                transport_failures += 1
                errors.append(f"{extractor.name}: {describe_transport_error(e)}")
            except (ExtractorError, DownloadError, httpx.RequestError, ValidationError) as e:
                errors.append(f"{extractor.name}: {e}")
            logger.warning(f"Method {extractor.name} failed: {errors[-1]}")

        if transport_failures == len(extractors):
            raise UpstreamUnavailable(errors)
        return ResolutionResult.failure("resolution_failed", "Failed to resolve share link", errors)

    async def _resolve_via_relay(self, share: ShareLink, failed: ResolutionResult) -> ResolutionResult:
        relay = ExtractorFactory.get_extractor("relay", self.config, transport=self.transport)
        try:
            return await relay.extract(share)
        except (ExtractorError, DownloadError, httpx.RequestError, ValidationError) as e:
            return ResolutionResult.failure(failed.error, failed.message, [*failed.errors, f"relay: {e}"])
