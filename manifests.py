# ========================================================
# ================  manifests.py  ========================
# ========================================================
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urljoin

HLS_HEADER = "#EXTM3U"
STREAM_INF = "#EXT-X-STREAM-INF:"

HLS_CONTENT_TYPES = (
    "audio/mpegurl",
    "application/mpegurl",
    "application/x-mpegurl",
    "audio/x-mpegurl",
    "application/vnd.apple.mpegurl",
    "application/vnd.apple.mpegurl.audio",
)

_RESOLUTION_RE = re.compile(r"RESOLUTION=(\d+)x(\d+)", re.IGNORECASE)
_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")


@dataclass(frozen=True)
class ManifestVariant:
    url: str
    quality: Optional[str] = None


def quality_value(quality: Optional[str]) -> int:
    """Leading integer of a quality label ("720p" -> 720); 0 when unparsable."""
    if not quality:
        return 0
    m = _LEADING_INT_RE.match(str(quality))
    if not m:
        return 0
    return int(m.group(1))


def is_hls_content_type(content_type: Optional[str]) -> bool:
    ct = (content_type or "").lower()
    return any(t in ct for t in HLS_CONTENT_TYPES)


def looks_like_manifest(url: str, content_type: Optional[str] = None) -> bool:
    return ".m3u8" in (url or "") or is_hls_content_type(content_type)


def _quality_from_attrs(line: str) -> Optional[str]:
    m = _RESOLUTION_RE.search(line)
    if not m:
        return None
    return f"{min(int(m.group(1)), int(m.group(2)))}p"


def parse_manifest(body: str, manifest_url: str) -> List[ManifestVariant]:
    """
    Parse an HLS playlist body into playable variants.

    - No ``#EXTM3U`` header: not a manifest, returns [].
    - Master playlist: one variant per ``#EXT-X-STREAM-INF`` block, using the
      block's RESOLUTION (lesser side + "p") and the first following
      non-comment line as URI, resolved against ``manifest_url``. Sorted by
      quality, highest first; ties keep document order.
    - Media playlist: the manifest itself is the stream, so a single variant
      pointing at ``manifest_url``.

    Pure function: fetching the body is the caller's job.
    """
    if not body or not isinstance(body, str) or HLS_HEADER not in body:
        return []

    if STREAM_INF not in body:
        return [ManifestVariant(url=manifest_url, quality=None)]

    variants: List[ManifestVariant] = []
    lines = [ln.strip() for ln in body.splitlines()]
    i = 0
    while i < len(lines):
        ln = lines[i]
        i += 1
        if not ln.startswith(STREAM_INF):
            continue
        quality = _quality_from_attrs(ln)
        uri = None
        while i < len(lines):
            nxt = lines[i]
            if nxt.startswith(STREAM_INF):
                break
            i += 1
            if not nxt or nxt.startswith("#"):
                continue
            uri = nxt
            break
        if not uri:
            continue
        variants.append(ManifestVariant(url=urljoin(manifest_url, uri), quality=quality))

    # sorted() is stable, so equal qualities keep manifest order
    return sorted(variants, key=lambda v: quality_value(v.quality), reverse=True)
