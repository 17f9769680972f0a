import httpx
import pytest
from fastapi.testclient import TestClient

from vibeplayer_proxy.configs import Settings
from vibeplayer_proxy.main import create_app

SHARE_URL = "https://www.terabox.com/s/1abcDEF"
LISTING = {"errno": 0, "list": [{"server_filename": "a.mp4", "size": 10, "dlink": "https://d.terabox.com/file/a.mp4"}]}


@pytest.fixture
def listing_upstream(upstream):
    upstream.add("www.terabox.com", "/share/list", httpx.Response(200, json=LISTING))
    return upstream


def test_resolve_get_success(client, listing_upstream):
    response = client.get("/resolve", params={"url": SHARE_URL})

    assert response.status_code == 200
    body = response.json()
    assert body == {
        "success": True,
        "url": "https://d.terabox.com/file/a.mp4",
        "metadata": {"name": "a.mp4", "size": 10, "mime": "video/mp4"},
        "thumbnail": "",
        "method": "direct_api",
        "cached": False,
        "cache_hit": False,
    }
    assert response.headers["access-control-allow-origin"] == "*"


def test_resolve_second_call_hits_cache(client, listing_upstream):
    client.get("/resolve", params={"url": SHARE_URL})
    response = client.get("/resolve", params={"url": SHARE_URL})

    assert response.json()["cached"] is True
    assert len(listing_upstream.requests) == 1

    refreshed = client.get("/resolve", params={"url": SHARE_URL, "refresh": "true"})
    assert refreshed.json()["cached"] is False
    assert len(listing_upstream.requests) == 2


@pytest.mark.parametrize("payload", [{"url": SHARE_URL}, {"link": SHARE_URL}])
def test_resolve_post(client, listing_upstream, payload):
    response = client.post("/resolve", json=payload)

    assert response.status_code == 200
    assert response.json()["success"] is True


@pytest.mark.parametrize(
    "url",
    [None, "not-a-url", "https://example.com/s/1abc", "http://127.0.0.1/s/1abc"],
)
def test_resolve_rejects_invalid_urls(client, upstream, url):
    params = {"url": url} if url else {}
    response = client.get("/resolve", params=params)

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_url"
    assert upstream.requests == []


def test_resolve_without_identifier(client, upstream):
    response = client.get("/resolve", params={"url": "https://www.terabox.com/main?category=all"})

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "identifier_not_found"
    assert body["success"] is False
    assert upstream.requests == []


def test_resolve_failure_is_502(client, upstream):
    upstream.add("www.terabox.com", "/share/list", httpx.Response(200, json={"errno": 2, "list": []}))
    upstream.add("www.terabox.com", "/s/1abcDEF", httpx.Response(200, text="<html></html>"))

    response = client.get("/resolve", params={"url": SHARE_URL})

    assert response.status_code == 502
    body = response.json()
    assert body["success"] is False
    assert body["retry_after"] == 30
    assert len(body["errors"]) == 2


def test_resolve_rate_limit(test_settings, upstream):
    test_settings.resolver.rate_limit_requests = 2
    with TestClient(create_app(test_settings, transport=upstream.transport)) as client:
        for _ in range(2):
            assert client.get("/resolve").status_code == 400

        response = client.get("/resolve")

    assert response.status_code == 429
    body = response.json()
    assert body["error"] == "rate_limit_exceeded"
    assert body["retry_after"] >= 1
    assert response.headers["retry-after"] == str(body["retry_after"])


def test_rate_limit_uses_forwarded_address(test_settings, upstream):
    test_settings.resolver.rate_limit_requests = 1
    with TestClient(create_app(test_settings, transport=upstream.transport)) as client:
        assert client.get("/resolve", headers={"X-Forwarded-For": "203.0.113.1, 10.0.0.1"}).status_code == 400
        assert client.get("/resolve", headers={"X-Forwarded-For": "203.0.113.2"}).status_code == 400
        assert client.get("/resolve", headers={"X-Forwarded-For": "203.0.113.1"}).status_code == 429


def test_health(client):
    for path in ("/health", "/?health"):
        response = client.get(path)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["cache_dir"] is True
        assert body["cache_stats"]["files_count"] == 0


def test_root_descriptor(client):
    response = client.get("/")

    assert response.status_code == 200
    assert "/resolve" in response.json()["endpoints"]


def test_root_resolve_flag(client, listing_upstream):
    response = client.get("/", params={"resolve": "", "url": SHARE_URL})

    assert response.status_code == 200
    assert response.json()["method"] == "direct_api"


def test_root_json_post_resolves(client, listing_upstream):
    response = client.post("/", json={"link": SHARE_URL})

    assert response.status_code == 200
    assert response.json()["success"] is True


def test_root_stream_and_download_flags(client, upstream):
    upstream.add("cdn.example.com", "/clip.mp4", httpx.Response(200, content=b"0123456789"))

    streamed = client.get("/", params={"stream": "", "url": "https://cdn.example.com/clip.mp4"})
    assert streamed.status_code == 200
    assert streamed.content == b"0123456789"

    downloaded = client.get("/", params={"download": "", "url": "https://cdn.example.com/clip.mp4", "filename": "a b.mp4"})
    assert downloaded.headers["content-disposition"] == 'attachment; filename="a_b.mp4"'


def test_api_password_is_enforced(resolver_config, upstream):
    protected = Settings(api_password="s3cret", resolver=resolver_config)
    with TestClient(create_app(protected, transport=upstream.transport)) as client:
        assert client.get("/resolve", params={"url": SHARE_URL}).status_code == 403
        assert client.get("/").status_code == 403
        assert client.get("/", params={"api_password": "s3cret"}).status_code == 200
        assert client.get("/", headers={"api_password": "s3cret"}).status_code == 200
        assert client.get("/health").status_code == 200


def test_resolve_survives_mistyped_metadata(client, upstream):
    listing = {"list": [{"dlink": "https://d.terabox.com/x.mp4", "server_filename": 12345}]}
    upstream.add("www.terabox.com", "/share/list", httpx.Response(200, json=listing))

    response = client.get("/resolve", params={"url": SHARE_URL})

    assert response.status_code == 200
    assert response.json()["metadata"]["name"] == "video.mp4"
