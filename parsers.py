# ========================================================
# ================  parsers.py  ==========================
# ========================================================
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from config import DetectionConfig
from loggers import DEBUG_LOGGER
from manifests import HLS_HEADER, parse_manifest
from models import (
    SOURCE_API,
    SOURCE_HLS,
    SOURCE_INSTAGRAM,
    SOURCE_TWITTER,
    SOURCE_VIMEO,
    RawCandidate,
)
from registry import SITE_PARSERS
from urls import has_byte_range, normalize_url, url_hostname, url_origin

# Untyped JSON as produced by json.loads
JSONValue = Union[None, bool, int, float, str, List["JSONValue"], Dict[str, "JSONValue"]]

MAX_JSON_DEPTH = 64

_XSSI_PREFIX_RE = re.compile(r"^for\s*\(;;\);?")


# ======================================================================
# JSON helpers
# ======================================================================

def loads_json(text: str, *, strip_xssi: bool = False) -> Optional[JSONValue]:
    """json.loads for untrusted page text; None on anything malformed."""
    if not text or not isinstance(text, str):
        return None
    if strip_xssi:
        text = _XSSI_PREFIX_RE.sub("", text.lstrip())
    try:
        return json.loads(text)
    except (ValueError, TypeError, RecursionError):
        return None


def _visit(value: JSONValue, key: str, depth: int, max_depth: int,
           out: List[Tuple[JSONValue, Optional[str]]]) -> None:
    if depth > max_depth:
        return
    if isinstance(value, dict):
        for k, v in value.items():
            if k == key and v:
                out.append((v, _caption_text(value)))
            if isinstance(v, (dict, list)):
                _visit(v, key, depth + 1, max_depth, out)
    elif isinstance(value, list):
        for item in value:
            if isinstance(item, (dict, list)):
                _visit(item, key, depth + 1, max_depth, out)


def _caption_text(obj: Dict[str, JSONValue]) -> Optional[str]:
    caption = obj.get("caption")
    if isinstance(caption, dict):
        text = caption.get("text")
        if isinstance(text, str) and text.strip():
            return text.strip()
    return None


def search_key_with_context(value: JSONValue, key: str,
                            max_depth: int = MAX_JSON_DEPTH) -> List[Tuple[JSONValue, Optional[str]]]:
    """
    Every truthy value stored under ``key`` anywhere in ``value``, paired with
    the sibling ``caption.text`` of the object that held it (Instagram puts
    the post caption next to ``video_versions``). Depth-bounded.
    """
    out: List[Tuple[JSONValue, Optional[str]]] = []
    _visit(value, key, 0, max_depth, out)
    return out


def search_key(value: JSONValue, key: str, max_depth: int = MAX_JSON_DEPTH) -> List[JSONValue]:
    return [v for v, _ in search_key_with_context(value, key, max_depth)]


def dig(value: JSONValue, *path: Union[str, int]) -> JSONValue:
    """Safe nested lookup: dig(d, "request", "files", "hls") -> None on any miss."""
    cur = value
    for p in path:
        if isinstance(p, int):
            if not isinstance(cur, list) or not -len(cur) <= p < len(cur):
                return None
            cur = cur[p]
        else:
            if not isinstance(cur, dict):
                return None
            cur = cur.get(p)
    return cur


def _num(v: Any) -> float:
    if isinstance(v, bool):
        return 0
    if isinstance(v, (int, float)):
        return v
    try:
        return float(str(v))
    except (TypeError, ValueError):
        return 0


def _width_quality(width: Any) -> Optional[str]:
    w = int(_num(width))
    return f"{w}p" if w > 0 else None


# ======================================================================
# Site parsers
# ======================================================================

@dataclass
class PageInfo:
    """Where the page-context sniffer currently is."""
    href: str
    title: str = ""

    @property
    def hostname(self) -> str:
        return url_hostname(self.href)

    @property
    def origin(self) -> str:
        return url_origin(self.href)


class SiteParser:
    """
    Parses an intercepted response body into candidates.

    ``origins`` restricts the parser to matching page hosts (plain strings
    match by equality or substring, patterns by search). Empty = every site.
    Parsers never raise on malformed bodies; they return [].
    """
    name = ""
    source = ""
    origins: Sequence[Union[str, "re.Pattern[str]"]] = ()

    def __init__(self, config: Optional[DetectionConfig] = None, logger=None):
        self.cfg = config or DetectionConfig()
        self.logger = logger or DEBUG_LOGGER

    def _log(self, msg: str, log_list: Optional[List[str]]) -> None:
        full = f"[{type(self).__name__}] {msg}"
        try:
            if log_list is not None:
                log_list.append(full)
            if self.logger is not None:
                self.logger.log_message(full)
        except Exception:
            pass

    def applies_to(self, hostname: str) -> bool:
        if not self.origins:
            return True
        host = (hostname or "").lower()
        for o in self.origins:
            if isinstance(o, str):
                if host == o or o in host:
                    return True
            elif o.search(host):
                return True
        return False

    def _candidate(self, url: str, page: PageInfo, *, quality: Optional[str] = None,
                   title: Optional[str] = None, is_playlist: bool = False,
                   source: Optional[str] = None) -> RawCandidate:
        return RawCandidate(
            context_id=None,
            url=url,
            source=source or self.source,
            quality=quality,
            title=title or page.title or None,
            is_playlist=is_playlist,
        )

    def on_load(self, body: str, url: str, page: PageInfo,
                log: Optional[List[str]] = None) -> List[RawCandidate]:
        raise NotImplementedError


class InstagramParser(SiteParser):
    name = "instagram"
    source = SOURCE_INSTAGRAM
    origins = ("www.instagram.com", "instagram.com", re.compile(r"instagram\.com"))

    def on_load(self, body, url, page, log=None):
        if "video_versions" not in (body or ""):
            return []
        data = loads_json(body, strip_xssi=True)
        if data is None:
            self._log(f"Unparseable body from {url}", log)
            return []

        out: List[RawCandidate] = []
        for versions, caption in search_key_with_context(data, "video_versions"):
            if not isinstance(versions, list) or not versions:
                continue
            ranked = sorted(
                (v for v in versions if isinstance(v, dict)),
                key=lambda v: _num(v.get("width")),
                reverse=True,
            )
            for v in ranked:
                v_url = v.get("url")
                if isinstance(v_url, str) and v_url:
                    out.append(self._candidate(
                        normalize_url(v_url), page,
                        quality=_width_quality(v.get("width")),
                        title=caption,
                    ))
                    break  # best width only
        return out


SITE_PARSERS.register("instagram", InstagramParser)


class TwitterParser(SiteParser):
    name = "twitter"
    source = SOURCE_TWITTER
    origins = (re.compile(r"twitter\.com"), re.compile(r"x\.com"))

    AVC1_RE = re.compile(r"avc1/(\d+)x(\d+)")

    def on_load(self, body, url, page, log=None):
        if "video_info" not in (body or ""):
            return []
        data = loads_json(body)
        if data is None:
            return []

        out: List[RawCandidate] = []
        for info in search_key(data, "video_info"):
            variants = info.get("variants") if isinstance(info, dict) else None
            if not isinstance(variants, list):
                continue
            mp4s = [
                v for v in variants
                if isinstance(v, dict)
                and isinstance(v.get("url"), str) and v.get("url")
                and v.get("content_type") != "application/x-mpegURL"
                and ".m3u8" not in v["url"]
            ]
            if not mp4s:
                continue
            best = max(mp4s, key=lambda v: _num(v.get("bitrate")))
            quality = None
            m = self.AVC1_RE.search(best["url"])
            if m:
                quality = f"{min(int(m.group(1)), int(m.group(2)))}p"
            out.append(self._candidate(best["url"], page, quality=quality))
        return out


SITE_PARSERS.register("twitter", TwitterParser)


class VimeoParser(SiteParser):
    name = "vimeo"
    source = SOURCE_VIMEO
    origins = (re.compile(r"vimeo\.com"),)

    EXCLUDED_CDN = "cme-media.vimeocdn.com"
    SUBTITLES_RE = re.compile(r"/subtitles/.*/")

    def on_load(self, body, url, page, log=None):
        if "/config" not in (url or ""):
            return []
        data = loads_json(body)
        if data is None:
            return []

        progressive = dig(data, "request", "files", "progressive")
        if isinstance(progressive, list) and progressive:
            out: List[RawCandidate] = []
            ranked = sorted(
                (p for p in progressive if isinstance(p, dict)),
                key=lambda p: _num(p.get("width")),
                reverse=True,
            )
            for p in ranked:
                p_url = p.get("url")
                if isinstance(p_url, str) and p_url:
                    out.append(self._candidate(p_url, page, quality=_width_quality(p.get("width"))))
            return out

        cdns = dig(data, "request", "files", "hls", "cdns")
        if not isinstance(cdns, dict):
            return []
        height = int(_num(dig(data, "video", "height")))
        quality = f"{height}p" if height > 0 else None
        out = []
        for cdn in cdns.values():
            cdn_url = cdn.get("url") if isinstance(cdn, dict) else None
            if not isinstance(cdn_url, str) or not cdn_url or self.EXCLUDED_CDN in cdn_url:
                continue
            out.append(self._candidate(
                self.SUBTITLES_RE.sub("/", cdn_url), page,
                quality=quality, is_playlist=True,
            ))
        return out


SITE_PARSERS.register("vimeo", VimeoParser)


class HLSPlaylistParser(SiteParser):
    """Any site: an intercepted .m3u8 body is expanded in place, no refetch."""
    name = "hls"
    source = SOURCE_HLS

    def on_load(self, body, url, page, log=None):
        if HLS_HEADER not in (body or "") or ".m3u8" not in (url or ""):
            return []
        variants = parse_manifest(body, url)[: max(1, int(self.cfg.max_manifest_variants))]
        if variants:
            self._log(f"{url} -> {len(variants)} variant(s)", log)
        return [self._candidate(v.url, page, quality=v.quality, is_playlist=True) for v in variants]


SITE_PARSERS.register("hls", HLSPlaylistParser)


class GenericJSONParser(SiteParser):
    """Any site: media-looking string values under common player keys."""
    name = "generic"
    source = SOURCE_API

    VIDEO_KEYS = (
        "file", "video_url", "video", "source", "src",
        "stream_url", "download_url", "url",
    )
    MEDIA_URL_RE = re.compile(r"\.(mp4|m3u8)(\?|$)", re.IGNORECASE)
    SEGMENT_NAME_RE = re.compile(r"seg-\d+|chunk-\d+|fragment-\d+", re.IGNORECASE)

    def on_load(self, body, url, page, log=None):
        data = loads_json(body)
        if not isinstance(data, (dict, list)):
            return []

        out: List[RawCandidate] = []
        for key in self.VIDEO_KEYS:
            for value in search_key(data, key):
                if not isinstance(value, str) or not self.MEDIA_URL_RE.search(value):
                    continue
                if has_byte_range(value) or self.SEGMENT_NAME_RE.search(value):
                    continue
                out.append(self._candidate(value, page))
        return out


SITE_PARSERS.register("generic", GenericJSONParser)
