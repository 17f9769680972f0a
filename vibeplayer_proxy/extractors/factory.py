from typing import Dict, List, Optional, Type

import httpx

from vibeplayer_proxy.configs import ResolverConfig
from vibeplayer_proxy.extractors.base import BaseExtractor, ExtractorError
from vibeplayer_proxy.extractors.terabox import DirectApiExtractor, PageScrapeExtractor, RelayExtractor


class ExtractorFactory:
    """Factory for creating resolution methods."""

    _extractors: Dict[str, Type[BaseExtractor]] = {
        "direct_api": DirectApiExtractor,
        "page_scrape": PageScrapeExtractor,
        "relay": RelayExtractor,
    }

    # methods run by every resolution, in order
    pipeline_order: List[str] = ["direct_api", "page_scrape"]

    @classmethod
    def get_extractor(
        cls,
        name: str,
        config: ResolverConfig,
        request_headers: Optional[dict] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> BaseExtractor:
        """Get the extractor instance registered under ``name``."""
        extractor_class = cls._extractors.get(name)
        if not extractor_class:
            raise ExtractorError(f"Unsupported extraction method: {name}")
        return extractor_class(config, request_headers, transport)

    @classmethod
    def build_pipeline(
        cls,
        config: ResolverConfig,
        request_headers: Optional[dict] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> List[BaseExtractor]:
        return [cls.get_extractor(name, config, request_headers, transport) for name in cls.pipeline_order]
