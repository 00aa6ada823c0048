# ========================================================
# ================  sniffers.py  =========================
# ========================================================
from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from classifier import CandidateClassifier
from config import DetectionConfig
from loggers import DEBUG_LOGGER
from manifests import looks_like_manifest
from models import (
    SOURCE_DOM,
    SOURCE_DOM_PLAYING,
    SOURCE_HLS,
    SOURCE_INSTAGRAM_JSON,
    SOURCE_OG_VIDEO,
    SOURCE_TIKTOK,
    SOURCE_WEB_REQUEST,
    SOURCE_YOUTUBE,
    Candidate,
    ContextId,
    NavigationChanged,
    ObservedResponse,
    RawCandidate,
)
from parsers import PageInfo, SiteParser, dig, loads_json, search_key
from registry import SITE_PARSERS, SNIFFERS
from submanagers import HLSSubManager, NavigationWatcher
from urls import (
    embed_headers,
    has_byte_range,
    has_embedded_headers,
    is_absolute_url,
    is_junk_scheme,
    is_direct_platform_url,
    is_relayed_url,
    normalize_url,
    url_hostname,
)


def valid_context_id(context_id: Any) -> bool:
    """Browser tab ids are non-negative ints; background requests report -1."""
    if context_id is None or isinstance(context_id, bool):
        return False
    if isinstance(context_id, int):
        return context_id >= 0
    return bool(str(context_id).strip())


class _BaseSniffer:
    """Shared plumbing: registry handle, config, ``[Name]``-prefixed logging."""

    name = ""

    def __init__(self, registry, config: Optional[DetectionConfig] = None, logger=None):
        self.registry = registry
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

    def _merge(self, context_id: ContextId, url: str, source: str, *,
               quality: Optional[str] = None, title: Optional[str] = None,
               is_playlist: bool = False, log: Optional[List[str]] = None) -> bool:
        if not valid_context_id(context_id) or not url or is_junk_scheme(url):
            return False
        self.registry.merge(context_id, Candidate(
            url=url, source=source, quality=quality, title=title, is_playlist=is_playlist,
        ), log=log)
        return True

    def forget(self, context_id: ContextId) -> None:
        """Drop per-context bookkeeping (navigation / close)."""


# ======================================================================
# Network observations
# ======================================================================

class NetworkSniffer(_BaseSniffer):
    """
    Completed network responses -> candidates.

    Manifests (.m3u8 URL or an HLS content type) are stored as ``hls``
    playlists and handed to ``HLSSubManager`` for background expansion.
    Anything else needs a video/segment extension or a video content type and
    is stored as a ``webRequest`` candidate carrying its size. Whether it is
    actually playable is decided later, at query time.
    """

    name = "network"

    def __init__(self, registry, hls: Optional[HLSSubManager] = None,
                 config: Optional[DetectionConfig] = None, logger=None):
        super().__init__(registry, config=config, logger=logger)
        self.hls = hls
        self._classifier = CandidateClassifier(self.cfg, logger=self.logger)

    def on_response(self, msg: ObservedResponse, log: Optional[List[str]] = None) -> bool:
        if not valid_context_id(msg.context_id):
            return False
        url = (msg.url or "").strip()
        if not url or is_junk_scheme(url):
            return False
        ctype = (msg.content_type or "").strip()

        if looks_like_manifest(url, ctype):
            self.registry.merge(msg.context_id, Candidate(
                url=url,
                source=SOURCE_HLS,
                content_type=ctype or None,
                is_playlist=True,
            ), log=log)
            if self.hls is not None:
                self.hls.schedule(msg.context_id, normalize_url(url), log)
            return True

        lower = url.lower()
        has_ext = self._classifier.has_video_extension(lower) or self._classifier.has_segment_extension(lower)
        if not has_ext and not self._classifier.has_video_content_type(ctype):
            return False

        self.registry.merge(msg.context_id, Candidate(
            url=url,
            source=SOURCE_WEB_REQUEST,
            size=msg.size,
            content_type=ctype or None,
        ), log=log)
        return True


# ======================================================================
# Page context (intercepted XHR/fetch bodies)
# ======================================================================

class PageSniffer(_BaseSniffer):
    """
    Runs inside one page: feeds intercepted response bodies through the
    registered site parsers and dispatches what they find.

    Every dispatched URL is remembered until the page navigates. URLs that
    already point at a relay are flagged and passed through untouched; all
    others get the page's referer/origin embedded so a relay can replay them.

    A detected navigation is reported to ``on_navigate`` (the pipeline's
    ``dispatch``) so every other detector forgets the old page too.
    """

    name = "page"

    PARSEABLE_CTYPES = ("json", "text", "mpegurl")
    MIN_BODY_CHARS = 10

    def __init__(self, registry, context_id: ContextId, href: str, title: str = "",
                 parsers: Optional[List[SiteParser]] = None,
                 config: Optional[DetectionConfig] = None, logger=None,
                 on_navigate: Optional[Callable[[NavigationChanged], Any]] = None):
        super().__init__(registry, config=config, logger=logger)
        self.context_id = context_id
        self.page = PageInfo(href=href, title=title or "")
        if parsers is None:
            parsers = SITE_PARSERS.create_all(config=self.cfg, logger=self.logger)
        self.parsers = parsers
        self.on_navigate = on_navigate
        self._found: Set[str] = set()

    def _absolute(self, url: str) -> str:
        if not url or is_absolute_url(url):
            return url
        return urljoin(self.page.href, url)

    def on_response(self, body: str, url: str, content_type: Optional[str] = None,
                    log: Optional[List[str]] = None) -> List[RawCandidate]:
        if content_type is not None:
            ct = content_type.lower()
            if not any(t in ct for t in self.PARSEABLE_CTYPES):
                return []
        if not body or len(body) < self.MIN_BODY_CHARS:
            return []

        url = self._absolute(url or "")
        host = self.page.hostname
        out: List[RawCandidate] = []
        for parser in self.parsers:
            if not parser.applies_to(host):
                continue
            try:
                found = parser.on_load(body, url, self.page, log)
            except Exception as e:
                self._log(f"{type(parser).__name__} failed on {url}: {e}", log)
                continue
            for raw in found:
                sent = self.dispatch(raw, log)
                if sent is not None:
                    out.append(sent)
        return out

    def dispatch(self, raw: RawCandidate, log: Optional[List[str]] = None) -> Optional[RawCandidate]:
        url = raw.url
        if not url or url in self._found:
            return None

        relayed = is_relayed_url(url)
        if relayed:
            self._log(f"Already relayed: {url}", log)
        elif not has_embedded_headers(url):
            url = embed_headers(url, self.page.href, self.page.origin)

        self._found.add(raw.url)
        self._found.add(url)

        out = replace(raw, context_id=self.context_id, url=url, already_relayed=relayed,
                      title=raw.title or self.page.title or None)
        self.registry.merge(self.context_id, out.as_candidate(), log=log)
        return out

    def check_location(self, href: str, title: Optional[str] = None) -> Optional[NavigationChanged]:
        if title is not None:
            self.page.title = title
        if href == self.page.href:
            return None
        self._log(f"ctx={self.context_id} navigated {self.page.href} -> {href}", None)
        self.page.href = href
        self._found.clear()
        self.registry.clear(self.context_id)
        msg = NavigationChanged(context_id=self.context_id)
        if self.on_navigate is not None:
            self.on_navigate(msg)
        return msg

    def watch(self, get_location: Callable[[], str]) -> NavigationWatcher:
        return NavigationWatcher(get_location, self.check_location, config=self.cfg,
                                 logger=self.logger, initial=self.page.href)

    def forget(self, context_id: ContextId) -> None:
        if context_id == self.context_id:
            self._found.clear()


# ======================================================================
# Page HTML / DOM
# ======================================================================

@dataclass
class DomRecord:
    """What the DOM inspection utility reports for one <video> source."""
    url: str
    visible: bool = False
    playing: bool = False

    @classmethod
    def from_any(cls, rec: Union["DomRecord", Mapping[str, Any]]) -> Optional["DomRecord"]:
        if isinstance(rec, DomRecord):
            return rec
        if not isinstance(rec, Mapping):
            return None
        url = rec.get("url")
        if not isinstance(url, str) or not url.strip():
            return None
        return cls(url=url.strip(), visible=bool(rec.get("visible")), playing=bool(rec.get("playing")))


def _page_title(soup: BeautifulSoup, title: Optional[str]) -> Optional[str]:
    if title:
        return title
    if soup.title and soup.title.string:
        return soup.title.string.strip() or None
    return None


class DomSniffer(_BaseSniffer):
    """<video>/<source> elements -> ``dom-playing`` (visible and playing) or ``dom``."""

    name = "dom"

    def __init__(self, registry, config: Optional[DetectionConfig] = None, logger=None):
        super().__init__(registry, config=config, logger=logger)
        self._seen: Dict[ContextId, Set[Tuple[str, str]]] = {}

    def on_elements(self, context_id: ContextId, records: Iterable[Union[DomRecord, Mapping[str, Any]]],
                    title: Optional[str] = None, log: Optional[List[str]] = None) -> int:
        if not valid_context_id(context_id):
            return 0
        seen = self._seen.setdefault(context_id, set())
        added = 0
        for item in records or ():
            rec = DomRecord.from_any(item)
            if rec is None or is_junk_scheme(rec.url):
                continue
            url = normalize_url(rec.url)
            if has_byte_range(url):
                continue
            source = SOURCE_DOM_PLAYING if rec.visible and rec.playing else SOURCE_DOM
            # keyed on source too, so a video that starts playing still upgrades
            if (url, source) in seen:
                continue
            seen.add((url, source))
            if self._merge(context_id, url, source, title=title, log=log):
                added += 1
        return added

    def scan_html(self, context_id: ContextId, soup: BeautifulSoup, page_url: str,
                  title: Optional[str] = None, log: Optional[List[str]] = None) -> int:
        records: List[DomRecord] = []
        for v in soup.find_all("video"):
            if v.get("src"):
                records.append(DomRecord(url=urljoin(page_url, v["src"])))
            for s in v.find_all("source", src=True):
                records.append(DomRecord(url=urljoin(page_url, s["src"])))
        return self.on_elements(context_id, records, title=_page_title(soup, title), log=log)

    def forget(self, context_id: ContextId) -> None:
        self._seen.pop(context_id, None)


SNIFFERS.register("dom", DomSniffer)


class MetaTagSniffer(_BaseSniffer):
    """Open Graph video meta tags -> ``og:video``."""

    name = "meta"

    OG_PROPERTIES = ("og:video", "og:video:url", "og:video:secure_url")

    def scan_html(self, context_id: ContextId, soup: BeautifulSoup, page_url: str,
                  title: Optional[str] = None, log: Optional[List[str]] = None) -> int:
        title = _page_title(soup, title)
        added = 0
        for prop in self.OG_PROPERTIES:
            tag = soup.find("meta", attrs={"property": prop})
            content = (tag.get("content") or "").strip() if tag else ""
            if not content:
                continue
            if self._merge(context_id, urljoin(page_url, content), SOURCE_OG_VIDEO, title=title, log=log):
                added += 1
        return added


SNIFFERS.register("meta", MetaTagSniffer)


class ScriptSniffer(_BaseSniffer):
    """
    Embedded JSON in <script> tags.

    - Instagram: ``application/json`` scripts holding ``video_versions``;
      the widest version wins (``instagram-json``).
    - TikTok: the ``__UNIVERSAL_DATA_FOR_REHYDRATION__`` blob; first play
      address that is not a ``v16-webapp-prime`` mirror (``tiktok``).

    Each script body is processed once per context (sha1 of its text).
    """

    name = "script"

    TIKTOK_SCRIPT_ID = "__UNIVERSAL_DATA_FOR_REHYDRATION__"
    TIKTOK_EXCLUDED_MIRROR = "v16-webapp-prime"
    INSTAGRAM_HOST_RE = re.compile(r"instagram\.com")
    TIKTOK_HOST_RE = re.compile(r"tiktok\.com")

    def __init__(self, registry, config: Optional[DetectionConfig] = None, logger=None):
        super().__init__(registry, config=config, logger=logger)
        self._processed: Dict[ContextId, Set[str]] = {}

    @staticmethod
    def _digest(text: str) -> str:
        return hashlib.sha1(text.encode("utf-8", errors="ignore")).hexdigest()

    def _once(self, context_id: ContextId, text: str) -> Optional[str]:
        h = self._digest(text)
        if h in self._processed.get(context_id, ()):
            return None
        return h

    def _mark(self, context_id: ContextId, digest: str) -> None:
        self._processed.setdefault(context_id, set()).add(digest)

    def scan_html(self, context_id: ContextId, soup: BeautifulSoup, page_url: str,
                  title: Optional[str] = None, log: Optional[List[str]] = None) -> int:
        if not valid_context_id(context_id):
            return 0
        host = url_hostname(page_url)
        title = _page_title(soup, title)
        added = 0
        if self.INSTAGRAM_HOST_RE.search(host):
            added += self._scan_instagram(context_id, soup, title, log)
        if self.TIKTOK_HOST_RE.search(host):
            added += self._scan_tiktok(context_id, soup, title, log)
        return added

    def _scan_instagram(self, context_id, soup, title, log) -> int:
        added = 0
        for script in soup.find_all("script", attrs={"type": "application/json"}):
            text = script.string or script.get_text() or ""
            if "video_versions" not in text:
                continue
            digest = self._once(context_id, text)
            if digest is None:
                continue
            data = loads_json(text)
            if data is None:
                self._log("Skipping unparseable application/json script", log)
                continue
            for versions in search_key(data, "video_versions"):
                if not isinstance(versions, list) or not versions:
                    continue
                dicts = [v for v in versions if isinstance(v, dict)]
                if not dicts:
                    continue
                best = max(dicts, key=lambda v: v.get("width") if isinstance(v.get("width"), (int, float)) else 0)
                url = best.get("url")
                if not isinstance(url, str) or not url:
                    continue
                width = best.get("width")
                quality = f"{int(width)}p" if isinstance(width, (int, float)) and width > 0 else None
                if self._merge(context_id, normalize_url(url), SOURCE_INSTAGRAM_JSON,
                               quality=quality, title=title, log=log):
                    added += 1
            self._mark(context_id, digest)
        return added

    def _scan_tiktok(self, context_id, soup, title, log) -> int:
        script = soup.find(id=self.TIKTOK_SCRIPT_ID)
        if script is None:
            return 0
        text = script.string or script.get_text() or ""
        digest = self._once(context_id, text)
        if digest is None:
            return 0
        data = loads_json(text)
        if data is None:
            self._log("Skipping unparseable rehydration script", log)
            return 0
        self._mark(context_id, digest)

        item = dig(data, "__DEFAULT_SCOPE__", "webapp.video-detail", "itemInfo", "itemStruct")
        play_addr = dig(item, "video", "bitrateInfo", 0, "PlayAddr")
        urls = play_addr.get("UrlList") if isinstance(play_addr, dict) else None
        if not isinstance(urls, list):
            return 0
        usable = [u for u in urls if isinstance(u, str) and u and self.TIKTOK_EXCLUDED_MIRROR not in u]
        if not usable:
            return 0
        width = play_addr.get("Width")
        quality = f"{int(width)}p" if isinstance(width, (int, float)) and width > 0 else None
        desc = item.get("desc") if isinstance(item, dict) else None
        desc = desc.strip() if isinstance(desc, str) else ""
        return int(self._merge(context_id, usable[0], SOURCE_TIKTOK,
                               quality=quality, title=desc or title, log=log))

    def forget(self, context_id: ContextId) -> None:
        self._processed.pop(context_id, None)


SNIFFERS.register("script", ScriptSniffer)


class DirectUrlSniffer(_BaseSniffer):
    """The page URL itself is the candidate on direct-play platforms (YouTube)."""

    name = "direct"

    TITLE_SUFFIX = " - YouTube"

    def check(self, context_id: ContextId, page_url: str, title: Optional[str] = None,
              log: Optional[List[str]] = None) -> bool:
        if not is_direct_platform_url(page_url or ""):
            return False
        clean_title = (title or "").replace(self.TITLE_SUFFIX, "").strip() or None
        return self._merge(context_id, page_url, SOURCE_YOUTUBE, title=clean_title, log=log)

    def scan_html(self, context_id: ContextId, soup: BeautifulSoup, page_url: str,
                  title: Optional[str] = None, log: Optional[List[str]] = None) -> int:
        return int(self.check(context_id, page_url, _page_title(soup, title), log))


SNIFFERS.register("direct", DirectUrlSniffer)
