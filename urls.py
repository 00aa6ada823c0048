# ========================================================
# ================  urls.py  =============================
# ========================================================
from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

# byte-range params Instagram & co. append to progressive mp4 fetches
_BYTE_RANGE_AMP_RE = re.compile(r"&byte(?:start|end)=[^&#]*", re.IGNORECASE)
_BYTE_RANGE_QS_RE = re.compile(r"\?byte(?:start|end)=[^&#]*&?", re.IGNORECASE)
_DANGLING_QS_RE = re.compile(r"\?(?=#|$)")

_JUNK_SCHEMES = ("blob:", "data:")

EMBEDDED_HEADERS_PARAM = "headers"

# relays that already fetch on the user's behalf; never wrap these again
RELAY_PATTERNS = (
    re.compile(r"m3u8-proxy\?url=", re.IGNORECASE),
    re.compile(r"pipe\.sideby\.me", re.IGNORECASE),
    re.compile(r"/proxy/\?url=", re.IGNORECASE),
)

DIRECT_PLAY_MARKERS = (
    "youtube.com/watch",
    "youtube.com/shorts/",
    "youtu.be/",
)


def normalize_url(url: Any) -> Any:
    """
    Strip ``bytestart``/``byteend`` query parameters (and a dangling ``?``)
    so that ranged fetches of one resource collapse to a single key.

    Idempotent. Scheme, host, path and other parameters are left untouched.
    Never raises: non-strings and unparseable URLs are returned unchanged.
    """
    if not isinstance(url, str):
        return url
    try:
        urlsplit(url)
    except ValueError:
        return url
    out = _BYTE_RANGE_AMP_RE.sub("", url)
    out = _BYTE_RANGE_QS_RE.sub("?", out)
    out = _DANGLING_QS_RE.sub("", out)
    return out


def has_byte_range(url: str) -> bool:
    u = (url or "").lower()
    return "bytestart=" in u or "byteend=" in u


def is_junk_scheme(url: Optional[str]) -> bool:
    u = (url or "").strip().lower()
    return any(u.startswith(p) for p in _JUNK_SCHEMES)


def is_http_url(value: Any) -> bool:
    if not value or not isinstance(value, str):
        return False
    try:
        p = urlsplit(value)
        return p.scheme in ("http", "https") and bool(p.netloc)
    except ValueError:
        return False


def is_absolute_url(value: Any) -> bool:
    if not value or not isinstance(value, str):
        return False
    try:
        p = urlsplit(value)
        return bool(p.scheme) and bool(p.netloc)
    except ValueError:
        return False


def url_origin(url: str) -> str:
    try:
        p = urlsplit(url)
    except ValueError:
        return ""
    if not p.scheme or not p.netloc:
        return ""
    return f"{p.scheme}://{p.netloc}"


def url_hostname(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def has_embedded_headers(url: str) -> bool:
    return f"{EMBEDDED_HEADERS_PARAM}=" in (url or "")


def is_relayed_url(url: str) -> bool:
    return any(p.search(url or "") for p in RELAY_PATTERNS)


def is_direct_platform_url(url: str) -> bool:
    u = (url or "").lower()
    return any(m in u for m in DIRECT_PLAY_MARKERS)


def embed_headers(video_url: str, referer: Optional[str], origin: Optional[str]) -> str:
    """
    Stamp the page's referer/origin into ``video_url`` as a ``headers`` query
    parameter holding a compact JSON object, for a downstream relay to replay.

    Returns ``video_url`` unchanged when it already carries embedded headers,
    when it is not an absolute URL, or when neither referer nor origin is a
    valid http(s) URL.
    """
    if not referer and not origin:
        return video_url
    if has_embedded_headers(video_url):
        return video_url

    headers: Dict[str, str] = {}
    if referer and is_http_url(referer):
        headers["referer"] = referer
    if origin and is_http_url(origin):
        headers["origin"] = origin
    if not headers:
        return video_url

    if not is_absolute_url(video_url):
        return video_url
    try:
        parts = urlsplit(video_url)
        query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
                 if k != EMBEDDED_HEADERS_PARAM]
        query.append((EMBEDDED_HEADERS_PARAM, json.dumps(headers, separators=(",", ":"))))
        return urlunsplit(parts._replace(query=urlencode(query)))
    except ValueError:
        return video_url


def extract_embedded_headers(url: str) -> Dict[str, str]:
    """Inverse of ``embed_headers``: what a relay would read back ({} if none)."""
    try:
        for k, v in parse_qsl(urlsplit(url).query, keep_blank_values=True):
            if k == EMBEDDED_HEADERS_PARAM:
                data = json.loads(v)
                if isinstance(data, dict):
                    return {str(a): str(b) for a, b in data.items()}
    except (ValueError, TypeError):
        pass
    return {}
