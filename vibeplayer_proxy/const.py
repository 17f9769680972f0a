VERSION = "2.0.0"

SUPPORTED_RESPONSE_HEADERS = [
    "accept-ranges",
    "content-type",
    "content-length",
    "content-range",
    "last-modified",
    "etag",
]

CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": "GET, HEAD, OPTIONS",
    "access-control-allow-headers": "Range, Content-Type",
    "access-control-expose-headers": "Content-Length, Content-Range, Accept-Ranges, Content-Disposition",
}

DEFAULT_MEDIA_TYPE = "video/mp4"

MEDIA_EXTENSIONS = (".mp4", ".webm", ".avi", ".mov", ".mkv")

# Substrings that mark a scraped URL as pointing at media.
VIDEO_INDICATORS = ("video", "stream", "dlink", "download", "play")

# Error text that points at outbound network restrictions rather than a bad share.
NETWORK_ERROR_MARKERS = (
    "could not resolve host",
    "name or service not known",
    "connection error",
    "connection refused",
    "connection timed out",
    "timed out",
    "http 0",
)

SUPPORTED_REQUEST_HEADERS = [
    "range",
    "if-range",
]
