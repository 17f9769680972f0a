import logging
import posixpath
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlparse

import httpx

from vibeplayer_proxy.extractors.base import (
    BaseExtractor,
    ExtractorError,
    ShareLink,
    describe_transport_error,
)
from vibeplayer_proxy.extractors.patterns import (
    FILENAME_PATTERNS,
    THUMBNAIL_PATTERNS,
    find_initial_state_entry,
    find_tokens,
    first_match,
    iter_inline_scripts,
    scan_for_media_url,
    unescape_url,
)
from vibeplayer_proxy.const import MEDIA_EXTENSIONS
from vibeplayer_proxy.schemas import MediaMetadata, ResolutionResult
from vibeplayer_proxy.utils.http_utils import DownloadError

logger = logging.getLogger(__name__)

HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


def decode_json(response: httpx.Response) -> Any:
    if not response.content or not response.content.strip():
        raise ExtractorError("Empty response from API")
    try:
        return response.json()
    except ValueError:
        raise ExtractorError("Invalid JSON response from API")


def text_field(container: Dict[str, Any], key: str, default: str) -> str:
    value = container.get(key)
    return value if isinstance(value, str) and value else default


def result_from_entry(entry: Dict[str, Any], method: str) -> ResolutionResult:
    """Build a success result from a listing entry, defaulting absent or mistyped metadata."""
    thumbs = entry.get("thumbs") if isinstance(entry.get("thumbs"), dict) else {}
    try:
        size = max(int(entry.get("size") or 0), 0)
    except (TypeError, ValueError, OverflowError):
        size = 0
    return ResolutionResult(
        success=True,
        url=entry["dlink"],
        metadata=MediaMetadata(
            name=text_field(entry, "server_filename", "video.mp4"),
            size=size,
            mime=text_field(entry, "mime_type", "video/mp4"),
        ),
        thumbnail=text_field(thumbs, "url3", ""),
        method=method,
    )


def parse_listing(data: Any, method: str) -> ResolutionResult:
    """
    Pick the first file of a share listing response.

    Raises:
        ExtractorError: If the list is missing or empty or its first entry has no download link.
    """
    if not isinstance(data, dict):
        raise ExtractorError("Invalid JSON response from API")

    files = data.get("list")
    if not files or not isinstance(files, list):
        errno = data.get("errno")
        suffix = f" (errno {errno})" if errno not in (None, 0) else ""
        raise ExtractorError(f"No file list found in API response{suffix}")

    entry = files[0]
    if not isinstance(entry, dict) or not isinstance(entry.get("dlink"), str) or not entry["dlink"]:
        raise ExtractorError("No dlink found in file data")
    return result_from_entry(entry, method)


def guess_filename(html: str, media_url: str) -> str:
    name = first_match(FILENAME_PATTERNS, html)
    if name:
        return name.strip()
    basename = posixpath.basename(urlparse(media_url).path)
    if basename.lower().endswith(MEDIA_EXTENSIONS):
        return basename
    return "video.mp4"


def scrape_media_result(html: str, method: str) -> Optional[ResolutionResult]:
    """
    Generic pattern scraping: the whole document first, then every inline script.

    Returns a success result for the first accepted candidate, or None.
    """
    found = scan_for_media_url(html)
    source = "page"
    if found is None:
        for script in iter_inline_scripts(html):
            found = scan_for_media_url(script)
            if found is not None:
                source = "script"
                break
    if found is None:
        return None

    media_url, pattern = found
    logger.info(f"Media URL matched in {source} by pattern {pattern!r}")
    thumbnail = first_match(THUMBNAIL_PATTERNS, html)
    return ResolutionResult(
        success=True,
        url=media_url,
        metadata=MediaMetadata(name=guess_filename(html, media_url)),
        thumbnail=unescape_url(thumbnail) if thumbnail else "",
        method=f"{method}_{source}",
    )


class DirectApiExtractor(BaseExtractor):
    """Calls the share listing API with the share identifier and the application key."""

    name = "direct_api"

    async def extract(self, share: ShareLink) -> ResolutionResult:
        params = {"app_id": self.config.app_id, "shorturl": share.share_id, "root": "1"}
        headers = {
            "accept": "application/json",
            "referer": f"{self.config.referer_base}/sharing/link?surl={share.share_id}",
        }
        response = await self._make_request(
            self.config.list_api_url,
            headers=headers,
            params=params,
            timeout=self.config.api_timeout,
            raise_on_status=False,
        )
        if response.status_code != 200:
            raise DownloadError(response.status_code, f"API returned HTTP {response.status_code}")

        return parse_listing(decode_json(response), self.name)


class PageScrapeExtractor(BaseExtractor):
    """
    Fetches the share page and looks for a link in it.

    In order: an embedded initial-state blob that already holds a link, the
    listing API re-issued with the page tokens against each candidate host,
    then generic pattern scraping over the page and its inline scripts.
    """

    name = "page_scrape"

    async def extract(self, share: ShareLink) -> ResolutionResult:
        response = await self._make_request(
            share.url,
            headers={"accept": HTML_ACCEPT},
            timeout=self.config.page_timeout,
        )
        html = response.text
        if not html.strip():
            raise ExtractorError("Empty share page")
        return await self.extract_from_html(html, share)

    async def extract_from_html(self, html: str, share: ShareLink) -> ResolutionResult:
        reasons: List[str] = []

        entry = find_initial_state_entry(html)
        if entry is not None:
            logger.info("Download link found in embedded page state")
            return result_from_entry(entry, "initial_state")

        tokens = find_tokens(html)
        missing = [name for name, value in tokens.items() if not value]
        if missing:
            reasons.append(f"Missing page tokens: {', '.join(missing)}")
        else:
            for host in self.config.candidate_api_hosts:
                try:
                    return await self._list_with_tokens(host, share, tokens)
                except (ExtractorError, DownloadError) as e:
                    reasons.append(f"Token API on {host}: {e}")
                except httpx.TransportError as e:
                    reasons.append(f"Token API on {host}: {describe_transport_error(e)}")

        result = scrape_media_result(html, self.name)
        if result is not None:
            return result

        reasons.append("No video URL found in page or inline scripts")
        raise ExtractorError("; ".join(reasons))

    async def _list_with_tokens(self, host: str, share: ShareLink, tokens: Dict[str, str]) -> ResolutionResult:
        params = {
            "app_id": self.config.app_id,
            "web": "1",
            "channel": "dubox",
            "clienttype": "0",
            "jsToken": tokens["jsToken"],
            "dp-logid": tokens["logid"],
            "bdstoken": tokens["bdstoken"],
            "shorturl": share.share_id,
            "root": "1",
            "page": "1",
            "num": "20",
        }
        headers = {
            "accept": "application/json",
            "referer": share.url,
            "origin": f"https://{host}",
        }
        response = await self._make_request(
            f"https://{host}/share/list",
            headers=headers,
            params=params,
            timeout=self.config.api_timeout,
            raise_on_status=False,
        )
        if response.status_code != 200:
            raise DownloadError(response.status_code, f"API returned HTTP {response.status_code}")
        return parse_listing(decode_json(response), "token_api")


class RelayExtractor(BaseExtractor):
    """Fetches the share page through public CORS relays and scrapes the result."""

    name = "relay"

    async def extract(self, share: ShareLink) -> ResolutionResult:
        reasons: List[str] = []
        for relay in self.config.relay_urls:
            relay_url = relay + quote(share.url, safe="")
            try:
                response = await self._make_request(
                    relay_url, timeout=self.config.relay_timeout, raise_on_status=False
                )
            except httpx.TransportError as e:
                reasons.append(f"{relay}: {describe_transport_error(e)}")
                continue

            if response.status_code != 200:
                reasons.append(f"{relay}: Proxy returned {response.status_code}")
                continue

            result = scrape_media_result(response.text, self.name)
            if result is not None:
                logger.info(f"Relay {relay} produced a media URL")
                return result
            reasons.append(f"{relay}: No valid video URL found in response")

        raise ExtractorError(f"All relays failed: {'; '.join(reasons)}")
