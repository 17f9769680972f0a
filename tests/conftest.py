"""
Pytest configuration for the resolver and proxy tests.

Live share URLs are loaded from environment variables for privacy.
Locally, add them to your .env file. For CI/CD, configure GitHub Secrets.
Everything else runs against an in-process mock upstream.
"""

import os
from pathlib import Path

import httpx
import pytest
from dotenv import load_dotenv
from fastapi.testclient import TestClient

from vibeplayer_proxy.configs import ResolverConfig, Settings
from vibeplayer_proxy.main import create_app

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


class UpstreamStub:
    """
    Routes outbound requests by (host, path) to canned responses.

    A route value is an ``httpx.Response``, a callable taking the request, or
    an exception instance to raise. Unrouted requests get a 404.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, host: str, path: str, handler):
        self.routes[(host, path)] = handler

    def calls_to(self, host: str) -> list:
        return [request for request in self.requests if request.url.host == host]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.url.host, request.url.path))
        if handler is None:
            return httpx.Response(404, text="not found")
        if isinstance(handler, Exception):
            raise handler
        if isinstance(handler, httpx.Response):
            # a response object can only be sent once
            return httpx.Response(handler.status_code, headers=handler.headers, content=handler.content)
        return handler(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def upstream():
    return UpstreamStub()


@pytest.fixture
def resolver_config(tmp_path):
    return ResolverConfig(
        cache_dir=tmp_path / "cache",
        block_private_addresses=False,
        retry_backoff=0,
        candidate_api_hosts=["www.terabox.com"],
        relay_urls=["https://relay.example/raw?url="],
    )


@pytest.fixture
def test_settings(resolver_config):
    return Settings(api_password=None, resolver=resolver_config)


@pytest.fixture
def client(test_settings, upstream):
    app = create_app(test_settings, transport=upstream.transport)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def get_test_url():
    """
    Factory fixture that returns a function to get test URLs from environment.

    Usage:
        def test_something(get_test_url):
            url = get_test_url("Terabox")
            if url is None:
                pytest.skip("TEST_URL_TERABOX not set")
    """

    def _get_url(extractor_name: str) -> str | None:
        env_var = f"TEST_URL_{extractor_name.upper()}"
        return os.environ.get(env_var)

    return _get_url
