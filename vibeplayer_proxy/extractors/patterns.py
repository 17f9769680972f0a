"""
Ordered regular expression tables used while resolving share links.

Every table is plain data: a list of compiled patterns whose first capturing
group is the value of interest. Order is priority; the first match wins.
"""

import json
import logging
import re
from typing import Any, Dict, Iterator, List, Optional, Pattern, Tuple
from urllib.parse import unquote, urlparse

from bs4 import BeautifulSoup, SoupStrainer

from vibeplayer_proxy.const import MEDIA_EXTENSIONS, VIDEO_INDICATORS
from vibeplayer_proxy.extractors.base import IdentifierError

logger = logging.getLogger(__name__)

_MEDIA_EXT = r"(?:mp4|webm|avi|mov|mkv)"

SHARE_ID_PATTERNS: List[Pattern[str]] = [
    re.compile(r"/s/([a-zA-Z0-9_-]+)"),
    re.compile(r"surl=([a-zA-Z0-9_-]+)"),
    re.compile(r"/sharing/link\?surl=([a-zA-Z0-9_-]+)"),
    re.compile(r"shorturl=([a-zA-Z0-9_-]+)"),
    re.compile(r"share/([a-zA-Z0-9_-]+)"),
]

# session token, log id and state token, each with its alternative spellings
TOKEN_PATTERNS: Dict[str, List[Pattern[str]]] = {
    "jsToken": [
        re.compile(r'"jsToken"\s*:\s*"([^"]+)"'),
        re.compile(r"'jsToken'\s*:\s*'([^']+)'"),
        re.compile(r"""jsToken\s*[:=]\s*["']?([A-Za-z0-9%_-]+)"""),
        re.compile(r"""window\.jsToken\s*=\s*["']([^"']+)["']"""),
        re.compile(r"fn%28%22([A-Za-z0-9]+)%22%29"),
    ],
    "logid": [
        re.compile(r'"dp-logid"\s*:\s*"([^"]+)"'),
        re.compile(r"'dp-logid'\s*:\s*'([^']+)'"),
        re.compile(r"""dp-logid\s*[:=]\s*["']?([0-9A-Za-z]+)"""),
        re.compile(r"""window\.logid\s*=\s*["']([^"']+)["']"""),
        re.compile(r'"logid"\s*:\s*"?([0-9A-Za-z]+)'),
    ],
    "bdstoken": [
        re.compile(r'"bdstoken"\s*:\s*"([^"]+)"'),
        re.compile(r"'bdstoken'\s*:\s*'([^']+)'"),
        re.compile(r"""bdstoken\s*[:=]\s*["']?([0-9A-Za-z]+)"""),
        re.compile(r"""window\.bdstoken\s*=\s*["']([^"']+)["']"""),
    ],
}

INITIAL_STATE_PATTERNS: List[Pattern[str]] = [
    re.compile(r"window\.__INITIAL_STATE__\s*=\s*(\{.*?\})\s*;?\s*</script>", re.DOTALL),
    re.compile(r"locals\.mset\((\{.*?\})\);", re.DOTALL),
    re.compile(r"<script[^>]+id=[\"']__NEXT_DATA__[\"'][^>]*>\s*(\{.*?\})\s*</script>", re.DOTALL),
]

MEDIA_URL_PATTERNS: List[Pattern[str]] = [
    re.compile(r'"dlink"\s*:\s*"(https?:[^"]+)"'),
    re.compile(r'"play_url"\s*:\s*"(https?:[^"]+)"'),
    re.compile(r'sources\s*:\s*\[\s*"(https?:[^"]+)"'),
    re.compile(r'"video_url"\s*:\s*"(https?:[^"]+)"'),
    re.compile(r"""videoUrl["']?\s*:\s*["']([^"']+)"""),
    re.compile(r'"download_url"\s*:\s*"(https?:[^"]+)"'),
    re.compile(r'"downloadUrl"\s*:\s*"(https?:[^"]+)"'),
    re.compile(r'"stream_url"\s*:\s*"(https?:[^"]+)"'),
    re.compile(r"""src["']?\s*:\s*["']([^"']+\.""" + _MEDIA_EXT + r"""[^"']*)""", re.IGNORECASE),
    re.compile(r'"url"\s*:\s*"(https?:[^"]+\.' + _MEDIA_EXT + r'[^"]*)"', re.IGNORECASE),
    re.compile(r"""href=["']([^"']*\.""" + _MEDIA_EXT + r"""[^"']*)""", re.IGNORECASE),
    re.compile(r"""<source[^>]+src=["']([^"']+\.""" + _MEDIA_EXT + r"""[^"']*)""", re.IGNORECASE),
    re.compile(r"""(https?://[^\s"'<>\\]+\.""" + _MEDIA_EXT + r"""(?:\?[^\s"'<>]*)?)""", re.IGNORECASE),
]

FILENAME_PATTERNS: List[Pattern[str]] = [
    re.compile(r'"server_filename"\s*:\s*"([^"]+)"'),
    re.compile(r"""<meta[^>]+property=["']og:title["'][^>]+content=["']([^"']+)["']""", re.IGNORECASE),
]

THUMBNAIL_PATTERNS: List[Pattern[str]] = [
    re.compile(r"""<meta[^>]+property=["']og:image["'][^>]+content=["']([^"']+)["']""", re.IGNORECASE),
    re.compile(r'"url3"\s*:\s*"(https?:[^"]+)"'),
]


def extract_share_id(url: str) -> str:
    """
    Return the share identifier embedded in a share URL.

    Raises:
        IdentifierError: If no pattern matches.
    """
    for pattern in SHARE_ID_PATTERNS:
        match = pattern.search(url or "")
        if match:
            return match.group(1)
    raise IdentifierError("Could not extract share identifier from URL")


def first_match(patterns: List[Pattern[str]], text: str) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(text)
        if match and match.group(1):
            return match.group(1)
    return None


def find_tokens(html: str) -> Dict[str, Optional[str]]:
    """Search the page for every token in ``TOKEN_PATTERNS``. Missing tokens map to None."""
    tokens = {name: first_match(patterns, html) for name, patterns in TOKEN_PATTERNS.items()}
    if tokens["jsToken"]:
        tokens["jsToken"] = unquote(tokens["jsToken"])
    return tokens


def unescape_url(candidate: str) -> str:
    """Undo JSON/JS escaping commonly found around scraped URLs."""
    cleaned = candidate.replace("\\u0026", "&").replace("\\u002F", "/").replace("\\/", "/")
    return cleaned.replace("\\", "").strip()


def accept_candidate(candidate: str) -> Optional[str]:
    """
    Validate a scraped URL.

    The URL must be a well formed http(s) URL and contain either a video
    indicating substring or a media file extension. Returns the cleaned URL
    or None.
    """
    url = unescape_url(candidate)
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None

    lowered = url.lower()
    if any(ext in lowered for ext in MEDIA_EXTENSIONS) or any(word in lowered for word in VIDEO_INDICATORS):
        return url
    return None


def scan_for_media_url(text: str) -> Optional[Tuple[str, str]]:
    """
    Run ``MEDIA_URL_PATTERNS`` over ``text`` in order.

    Returns:
        (url, pattern) for the first accepted candidate, or None.
    """
    for pattern in MEDIA_URL_PATTERNS:
        for match in pattern.finditer(text):
            url = accept_candidate(match.group(1))
            if url:
                return url, pattern.pattern
    return None


def iter_inline_scripts(html: str) -> Iterator[str]:
    """Yield the body of every inline ``<script>`` block."""
    soup = BeautifulSoup(html, "html.parser", parse_only=SoupStrainer("script"))
    for script in soup.find_all("script"):
        if script.get("src"):
            continue
        body = script.get_text()
        if body and body.strip():
            yield body


def find_dlink_in_state(state: Any) -> Optional[Dict[str, Any]]:
    """Depth-first search for the first file entry carrying a non-empty ``dlink``."""
    if isinstance(state, dict):
        dlink = state.get("dlink")
        if isinstance(dlink, str) and dlink:
            return state
        children = state.values()
    elif isinstance(state, list):
        children = state
    else:
        return None

    for child in children:
        found = find_dlink_in_state(child)
        if found is not None:
            return found
    return None


def find_initial_state_entry(html: str) -> Optional[Dict[str, Any]]:
    """Return the first file entry with a download link from an embedded state blob."""
    for pattern in INITIAL_STATE_PATTERNS:
        for match in pattern.finditer(html):
            try:
                state = json.loads(match.group(1))
            except json.JSONDecodeError:
                logger.debug(f"Embedded state blob did not parse as JSON ({pattern.pattern})")
                continue
            entry = find_dlink_in_state(state)
            if entry is not None:
                return entry
    return None
