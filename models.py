# ========================================================
# ================  models.py  ===========================
# ========================================================
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

# --------------------------------------------------------------------------
# Source tags
# --------------------------------------------------------------------------
SOURCE_INSTAGRAM = "instagram"
SOURCE_TWITTER = "twitter"
SOURCE_VIMEO = "vimeo"
SOURCE_TIKTOK = "tiktok"
SOURCE_YOUTUBE = "youtube"
SOURCE_INSTAGRAM_JSON = "instagram-json"
SOURCE_API = "api"
SOURCE_HLS = "hls"
SOURCE_OG_VIDEO = "og:video"
SOURCE_DOM_PLAYING = "dom-playing"
SOURCE_DOM = "dom"
SOURCE_WEB_REQUEST = "webRequest"

# Higher = more relevant. Used as merge tie-breaker and as the dominant score term.
SOURCE_PRIORITY: Dict[str, int] = {
    SOURCE_INSTAGRAM: 100,
    SOURCE_TWITTER: 100,
    SOURCE_VIMEO: 100,
    SOURCE_TIKTOK: 100,
    SOURCE_YOUTUBE: 100,
    SOURCE_INSTAGRAM_JSON: 95,
    SOURCE_API: 90,
    SOURCE_HLS: 85,
    SOURCE_OG_VIDEO: 80,
    SOURCE_DOM_PLAYING: 75,
    SOURCE_DOM: 50,
    SOURCE_WEB_REQUEST: 40,
}


def source_priority(source: Optional[str]) -> int:
    """Priority for a source tag; unknown or missing tags rank lowest (0)."""
    if not source:
        return 0
    return SOURCE_PRIORITY.get(str(source), 0)


ContextId = Union[int, str]


# --------------------------------------------------------------------------
# Candidates
# --------------------------------------------------------------------------

@dataclass
class Candidate:
    """
    One observed reference to a video resource, as stored in a context map.

    ``url`` is always the normalized key. Fields other than ``url`` are only
    ever upgraded by ``ContextRegistry.merge``.
    """
    url: str
    source: str = ""
    size: Optional[int] = None
    content_type: Optional[str] = None
    quality: Optional[str] = None
    title: Optional[str] = None
    is_playlist: bool = False
    first_seen_at: float = 0.0


@dataclass(frozen=True)
class CandidateView:
    """Read-only ranked projection handed to consumers."""
    url: str
    score: int
    source: str
    size: Optional[int]
    content_type: Optional[str]
    quality: Optional[str]
    title: Optional[str]
    is_playlist: bool
    first_seen_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "size": self.size,
            "score": self.score,
            "timestamp": self.first_seen_at,
            "quality": self.quality,
            "source": self.source,
            "title": self.title,
            "playlist": self.is_playlist,
        }


# --------------------------------------------------------------------------
# Boundary messages
# --------------------------------------------------------------------------

@dataclass
class ObservedResponse:
    """A completed network exchange that looked media-related."""
    context_id: Optional[ContextId]
    url: str
    content_type: Optional[str] = None
    size: Optional[int] = None


@dataclass
class RawCandidate:
    """A candidate from DOM scans, embedded scripts or page-level capture."""
    context_id: Optional[ContextId]
    url: str
    source: str
    quality: Optional[str] = None
    title: Optional[str] = None
    is_playlist: bool = False
    # set by the page-context sniffer when the URL already points at a relay
    already_relayed: bool = False

    def as_candidate(self) -> Candidate:
        return Candidate(
            url=self.url,
            source=self.source,
            quality=self.quality,
            title=self.title,
            is_playlist=self.is_playlist,
        )


@dataclass
class NavigationChanged:
    context_id: Optional[ContextId]


@dataclass
class ContextClosed:
    context_id: Optional[ContextId]


@dataclass
class CandidatesRequested:
    context_id: Optional[ContextId]
    limit: Optional[int] = None


@dataclass
class RankedCandidates:
    context_id: Optional[ContextId]
    items: List[CandidateView] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"context_id": self.context_id, "videos": [c.to_dict() for c in self.items]}


Message = Union[ObservedResponse, RawCandidate, NavigationChanged, ContextClosed, CandidatesRequested]

_TYPE_ALIASES: Dict[str, str] = {
    "observed_response": "observed_response",
    "web_request": "observed_response",
    "raw_candidate": "raw_candidate",
    "add_video": "raw_candidate",
    "navigation_changed": "navigation_changed",
    "clear_videos": "navigation_changed",
    "context_closed": "context_closed",
    "tab_removed": "context_closed",
    "get_candidates": "get_candidates",
    "get_videos": "get_candidates",
}


def _first(d: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in d and d[k] is not None:
            return d[k]
    return None


def _as_int(v: Any) -> Optional[int]:
    if v is None or isinstance(v, bool):
        return None
    try:
        return int(str(v).strip())
    except (TypeError, ValueError):
        return None


def _as_str(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def message_from_dict(data: Any) -> Optional[Message]:
    """
    Decode an untrusted message dict. Accepts snake_case and camelCase field
    names as well as the extension's wire names (``ADD_VIDEO``, ``GET_VIDEOS``,
    ``CLEAR_VIDEOS``). Returns ``None`` for anything malformed.
    """
    if not isinstance(data, dict):
        return None
    kind = _TYPE_ALIASES.get(str(data.get("type") or "").strip().lower())
    if kind is None:
        return None

    ctx = _first(data, "context_id", "contextId", "tabId", "tab_id")
    if isinstance(ctx, str) and ctx.strip().lstrip("-").isdigit():
        ctx = int(ctx.strip())

    if kind == "observed_response":
        url = _as_str(data.get("url"))
        if url is None:
            return None
        return ObservedResponse(
            context_id=ctx,
            url=url,
            content_type=_as_str(_first(data, "content_type", "contentType")),
            size=_as_int(data.get("size")),
        )
    if kind == "raw_candidate":
        url = _as_str(data.get("url"))
        if url is None:
            return None
        return RawCandidate(
            context_id=ctx,
            url=url,
            source=_as_str(data.get("source")) or "",
            quality=_as_str(data.get("quality")),
            title=_as_str(data.get("title")),
            is_playlist=bool(_first(data, "is_playlist", "isPlaylist", "playlist")),
            already_relayed=bool(_first(data, "already_relayed", "alreadyProxied")),
        )
    if kind == "navigation_changed":
        return NavigationChanged(context_id=ctx)
    if kind == "context_closed":
        return ContextClosed(context_id=ctx)
    return CandidatesRequested(context_id=ctx, limit=_as_int(data.get("limit")))
