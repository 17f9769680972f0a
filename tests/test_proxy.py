"""
Stream and download proxy tests against a mock media host.
"""

import re

import httpx
import pytest
from fastapi.testclient import TestClient

from vibeplayer_proxy.handlers import build_download_filename
from vibeplayer_proxy.main import create_app

MEDIA_HOST = "cdn.example.com"
MEDIA = bytes(range(256)) * 4
RANGE_RE = re.compile(r"bytes=(\d+)-(\d*)")


def serve_media(request: httpx.Request) -> httpx.Response:
    headers = {"content-type": "video/mp4", "etag": '"v1"', "x-internal": "secret"}
    match = RANGE_RE.fullmatch(request.headers.get("range", ""))
    if not match:
        return httpx.Response(200, content=MEDIA, headers=headers)

    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else len(MEDIA) - 1
    headers["content-range"] = f"bytes {start}-{end}/{len(MEDIA)}"
    return httpx.Response(206, content=MEDIA[start : end + 1], headers=headers)


@pytest.fixture
def media_upstream(upstream):
    upstream.add(MEDIA_HOST, "/videos/clip.mp4", serve_media)
    return upstream


def test_range_request_is_relayed(client, media_upstream):
    response = client.get(
        "/proxy/stream", params={"url": "https://cdn.example.com/videos/clip.mp4"}, headers={"Range": "bytes=100-199"}
    )

    assert response.status_code == 206
    assert response.headers["content-range"] == "bytes 100-199/1024"
    assert response.headers["accept-ranges"] == "bytes"
    assert response.headers["access-control-allow-origin"] == "*"
    assert response.content == MEDIA[100:200]
    assert media_upstream.requests[0].headers["range"] == "bytes=100-199"


def test_full_request_is_relayed(client, media_upstream):
    response = client.get("/proxy/stream", params={"url": "https://cdn.example.com/videos/clip.mp4"})

    assert response.status_code == 200
    assert response.headers["content-length"] == str(len(MEDIA))
    assert response.headers["content-type"] == "video/mp4"
    assert response.headers["etag"] == '"v1"'
    assert "x-internal" not in response.headers
    assert "content-disposition" not in response.headers
    assert response.content == MEDIA


def test_upstream_request_headers(client, media_upstream):
    client.get("/proxy/stream", params={"url": "https://cdn.example.com/videos/clip.mp4"}, headers={"Cookie": "a=b"})

    sent = media_upstream.requests[0].headers
    assert "Mozilla" in sent["user-agent"]
    assert sent["referer"] == "https://www.terabox.com/"
    assert sent["accept-encoding"] == "identity"
    assert "cookie" not in sent


def test_head_request_returns_headers_only(client, media_upstream):
    response = client.head("/proxy/stream", params={"url": "https://cdn.example.com/videos/clip.mp4"})

    assert response.status_code == 200
    assert response.headers["content-length"] == str(len(MEDIA))
    assert response.content == b""


def test_download_sets_attachment_headers(client, media_upstream):
    response = client.get(
        "/proxy/download",
        params={"url": "https://cdn.example.com/videos/clip.mp4", "filename": "My Holiday (1).mp4"},
    )

    assert response.status_code == 200
    assert response.headers["content-disposition"] == 'attachment; filename="My_Holiday__1_.mp4"'
    assert response.headers["cache-control"] == "no-cache, must-revalidate"
    assert response.content == MEDIA


def test_download_filename_from_url(client, media_upstream):
    response = client.get("/proxy/download", params={"url": "https://cdn.example.com/videos/clip.mp4"})

    assert response.headers["content-disposition"] == 'attachment; filename="clip.mp4"'


@pytest.mark.parametrize(
    "status, expected",
    [(404, 404), (410, 404), (403, 502), (500, 502)],
)
def test_upstream_errors_are_mapped(client, upstream, status, expected):
    upstream.add(MEDIA_HOST, "/videos/gone.mp4", httpx.Response(status))

    response = client.get("/proxy/stream", params={"url": "https://cdn.example.com/videos/gone.mp4"})

    assert response.status_code == expected
    assert "error" in response.json()
    assert response.headers["access-control-allow-origin"] == "*"


def test_transport_error_is_500(client, upstream):
    upstream.add(MEDIA_HOST, "/videos/clip.mp4", httpx.ConnectError("Connection refused"))

    response = client.get("/proxy/stream", params={"url": "https://cdn.example.com/videos/clip.mp4"})

    assert response.status_code == 500
    assert response.json()["error"].startswith("Streaming failed")


@pytest.mark.parametrize("params", [{}, {"url": "javascript:alert(1)"}, {"url": "cdn.example.com/clip.mp4"}])
def test_missing_or_invalid_url(client, upstream, params):
    response = client.get("/proxy/stream", params=params)

    assert response.status_code == 400
    assert response.json() == {"error": "Missing or invalid video URL"}
    assert upstream.requests == []


@pytest.mark.parametrize(
    "url, filename, expected",
    [
        ("https://cdn.example.com/a/clip.mp4", None, "clip.mp4"),
        ("https://cdn.example.com/a/My%20Clip%21.webm", None, "My_Clip_.webm"),
        ("https://cdn.example.com/a/clip.mp4", "../../etc/passwd.mkv", ".._.._etc_passwd.mkv"),
        ("https://cdn.example.com/a/file", None, "video_1700000000.mp4"),
        ("https://cdn.example.com/", None, "video_1700000000.mp4"),
        ("https://cdn.example.com/a/clip.mp4", "noextension", "video_1700000000.mp4"),
    ],
)
def test_build_download_filename(url, filename, expected):
    assert build_download_filename(url, filename, clock=lambda: 1700000000.5) == expected


def drop_after(prefix: bytes):
    """Upstream whose connection resets after sending ``prefix``."""

    async def body():
        if prefix:
            yield prefix
        raise httpx.ReadError("connection reset")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "video/mp4"}, content=body())

    return handler


def test_connection_lost_mid_stream_ends_body(client, upstream):
    upstream.add(MEDIA_HOST, "/videos/flaky.mp4", drop_after(b"x" * 10))

    response = client.get("/proxy/stream", params={"url": "https://cdn.example.com/videos/flaky.mp4"})

    assert response.status_code == 200
    assert response.content == b"x" * 10


def test_connection_lost_before_data_ends_body(client, upstream):
    upstream.add(MEDIA_HOST, "/videos/flaky.mp4", drop_after(b""))

    response = client.get("/proxy/stream", params={"url": "https://cdn.example.com/videos/flaky.mp4"})

    assert response.content == b""


def test_query_params_do_not_inject_headers(client, media_upstream):
    response = client.get(
        "/proxy/stream",
        params={
            "url": "https://cdn.example.com/videos/clip.mp4",
            "h_cookie": "session=stolen",
            "h_referer": "https://evil.example/",
            "r_content-type": "text/html",
        },
    )

    sent = media_upstream.requests[0].headers
    assert "cookie" not in sent
    assert sent["referer"] == "https://www.terabox.com/"
    assert response.headers["content-type"] == "video/mp4"


@pytest.fixture
def guarded_client(test_settings, upstream, monkeypatch):
    async def fake_is_public_host(hostname):
        return hostname != "127.0.0.1"

    monkeypatch.setattr("vibeplayer_proxy.routes.proxy.is_public_host", fake_is_public_host)
    monkeypatch.setattr("vibeplayer_proxy.utils.http_utils.is_public_host", fake_is_public_host)
    test_settings.resolver.block_private_addresses = True
    with TestClient(create_app(test_settings, transport=upstream.transport)) as test_client:
        yield test_client


def test_redirect_to_private_host_is_blocked(guarded_client, upstream):
    upstream.add(
        MEDIA_HOST, "/videos/moved.mp4", httpx.Response(302, headers={"location": "http://127.0.0.1/secret.mp4"})
    )
    upstream.add("127.0.0.1", "/secret.mp4", httpx.Response(200, content=b"internal"))

    response = guarded_client.get("/proxy/stream", params={"url": "https://cdn.example.com/videos/moved.mp4"})

    assert response.status_code == 400
    assert response.json() == {"error": "Video URL host is not allowed"}
    assert upstream.calls_to("127.0.0.1") == []


def test_redirect_to_public_host_is_followed(guarded_client, upstream):
    upstream.add(
        MEDIA_HOST, "/videos/moved.mp4", httpx.Response(302, headers={"location": "https://edge.example.com/a.mp4"})
    )
    upstream.add("edge.example.com", "/a.mp4", httpx.Response(200, content=b"public"))

    response = guarded_client.get("/proxy/stream", params={"url": "https://cdn.example.com/videos/moved.mp4"})

    assert response.status_code == 200
    assert response.content == b"public"


def test_direct_private_host_is_rejected(guarded_client, upstream):
    response = guarded_client.get("/proxy/stream", params={"url": "http://127.0.0.1/secret.mp4"})

    assert response.status_code == 400
    assert upstream.requests == []
