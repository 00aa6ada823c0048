# ======================= stores.py =======================
from __future__ import annotations

import re
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from classifier import CandidateClassifier
from config import DetectionConfig
from loggers import DEBUG_LOGGER
from manifests import quality_value
from models import Candidate, CandidateView, ContextId, source_priority
from scoring import CandidateScorer
from urls import is_junk_scheme, normalize_url

_VIDEO_CTYPE_RE = re.compile(r"^(video/|application/(vnd\.apple\.mpegurl|x-mpegurl))", re.IGNORECASE)


def _positive_int(v: Any) -> Optional[int]:
    if v is None or isinstance(v, bool):
        return None
    try:
        n = int(v)
    except (TypeError, ValueError):
        return None
    return n if n > 0 else None


def _ctype_rank(ct: str):
    return bool(_VIDEO_CTYPE_RE.search(ct)), ct


def _clean_text(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


class ContextRegistry:
    """
    Per-context candidate store: ``{context_id: {normalized_url: Candidate}}``.

    Owns all mutable detection state. Adapters only ever write through
    ``merge``; the UI reads through ``query``. Nothing is shared between
    contexts, and there is no global ranking.

    merge semantics (monotonic, so repeated/reordered merges converge):
      - source: replaced only by a higher-priority tag (ties: larger tag name)
      - size: replaced only by a larger declared size
      - content_type: filled when empty; a video type replaces a non-video one
      - quality: filled when empty or replaced by a higher quality
        (equal values: larger label)
      - title: filled when empty, never overwritten
      - is_playlist: sticky once true

    Entries expire ``entry_ttl_seconds`` after ``first_seen_at``. Expiry is
    lazy: expired entries are deleted on the next ``query`` for that context.

    Every ``clear``/``destroy`` bumps the context's generation. Background
    writers capture ``generation(ctx)`` up front and pass it back to
    ``merge``; a stale generation means the page they belonged to is gone.
    """

    def __init__(
        self,
        config: Optional[DetectionConfig] = None,
        classifier: Optional[CandidateClassifier] = None,
        scorer: Optional[CandidateScorer] = None,
        clock: Callable[[], float] = time.time,
        logger=None,
    ):
        self.cfg = config or DetectionConfig()
        self.logger = logger or DEBUG_LOGGER
        self.classifier = classifier or CandidateClassifier(self.cfg, logger=self.logger)
        self.scorer = scorer or CandidateScorer()
        self.clock = clock
        self._contexts: Dict[ContextId, Dict[str, Candidate]] = {}
        self._generations: Dict[ContextId, int] = {}
        self._lock = threading.RLock()

    # ---------- logging helper ----------
    def _log(self, msg: str, log_list: Optional[List[str]] = None) -> None:
        full = f"[ContextRegistry] {msg}"
        try:
            if log_list is not None:
                log_list.append(full)
            if self.logger is not None:
                self.logger.log_message(full)
        except Exception:
            pass

    # -------------------- Writes -------------------- #
    def merge(self, context_id: Optional[ContextId], candidate: Candidate,
              log: Optional[List[str]] = None, generation: Optional[int] = None) -> bool:
        """
        Insert ``candidate`` under ``context_id`` or upgrade the existing entry
        for its normalized URL. Returns True when a new entry was created.

        Missing context id / URL and ``blob:``/``data:`` URLs are ignored, as
        is a merge whose ``generation`` no longer matches the context's.
        """
        if context_id is None or context_id == "" or isinstance(context_id, bool):
            return False
        url = _clean_text(getattr(candidate, "url", None))
        if not url or is_junk_scheme(url):
            return False

        key = normalize_url(url)
        with self._lock:
            if generation is not None and generation != self._generations.get(context_id, 0):
                self._log(f"ctx={context_id} stale generation {generation}, dropped {key}", log)
                return False
            entries = self._contexts.setdefault(context_id, {})
            existing = entries.get(key)
            if existing is None:
                entries[key] = Candidate(
                    url=key,
                    source=_clean_text(candidate.source) or "",
                    size=_positive_int(candidate.size),
                    content_type=_clean_text(candidate.content_type),
                    quality=_clean_text(candidate.quality),
                    title=_clean_text(candidate.title),
                    is_playlist=bool(candidate.is_playlist),
                    first_seen_at=self.clock(),
                )
                self._log(f"ctx={context_id} + [{candidate.source}] {key}", log)
                return True
            self._upgrade(existing, candidate)
            return False

    def _upgrade(self, existing: Candidate, incoming: Candidate) -> None:
        source = _clean_text(incoming.source)
        if source and (source_priority(source), source) > (source_priority(existing.source), existing.source):
            existing.source = source

        size = _positive_int(incoming.size)
        if size and (existing.size is None or size > existing.size):
            existing.size = size

        ctype = _clean_text(incoming.content_type)
        if ctype:
            if existing.content_type is None or _ctype_rank(ctype) > _ctype_rank(existing.content_type):
                existing.content_type = ctype

        quality = _clean_text(incoming.quality)
        if quality and (not existing.quality
                        or (quality_value(quality), quality) > (quality_value(existing.quality), existing.quality)):
            existing.quality = quality

        title = _clean_text(incoming.title)
        if title and not existing.title:
            existing.title = title

        if incoming.is_playlist:
            existing.is_playlist = True

    def clear(self, context_id: Optional[ContextId]) -> None:
        """Drop every entry for the context but keep its slot (navigation)."""
        with self._lock:
            self._bump(context_id)
            entries = self._contexts.get(context_id)
            if entries:
                self._log(f"ctx={context_id} cleared ({len(entries)} entries)")
                entries.clear()

    def destroy(self, context_id: Optional[ContextId]) -> None:
        """Forget the context entirely (tab/context closed)."""
        with self._lock:
            self._bump(context_id)
            if self._contexts.pop(context_id, None) is not None:
                self._log(f"ctx={context_id} destroyed")

    def _bump(self, context_id: Optional[ContextId]) -> None:
        # kept after destroy so a reused id never matches an old generation
        self._generations[context_id] = self._generations.get(context_id, 0) + 1

    def generation(self, context_id: Optional[ContextId]) -> int:
        with self._lock:
            return self._generations.get(context_id, 0)

    # -------------------- Reads -------------------- #
    def query(self, context_id: Optional[ContextId], limit: Optional[int] = None,
              log: Optional[List[str]] = None) -> List[CandidateView]:
        """
        Ranked, playable candidates for one context, best first.

        Evicts expired entries, filters through the classifier, scores the
        survivors and sorts by score then recency. Unknown contexts yield [].
        """
        cap = self.cfg.max_results if limit is None else limit
        cap = max(0, int(cap))

        now = self.clock()
        ttl = float(self.cfg.entry_ttl_seconds)
        with self._lock:
            entries = self._contexts.get(context_id)
            if not entries:
                return []
            expired = [u for u, c in entries.items() if now - c.first_seen_at > ttl]
            for u in expired:
                del entries[u]
            if expired:
                self._log(f"ctx={context_id} expired {len(expired)} entries", log)
            snapshot = [replace(c) for c in entries.values()]

        views: List[CandidateView] = []
        for c in snapshot:
            if not self.classifier.is_playable(c.url, c.content_type, c.size, c.source, log=log):
                continue
            views.append(CandidateView(
                url=c.url,
                score=self.scorer.score(c.url, c.size, c.source, c.quality),
                source=c.source,
                size=c.size,
                content_type=c.content_type,
                quality=c.quality,
                title=c.title,
                is_playlist=c.is_playlist,
                first_seen_at=c.first_seen_at,
            ))

        views.sort(key=lambda v: (v.score, v.first_seen_at), reverse=True)
        return views[:cap]

    def get(self, context_id: Optional[ContextId], url: str) -> Optional[Candidate]:
        """Copy of the raw stored entry for ``url`` (no TTL or classifier applied)."""
        with self._lock:
            c = (self._contexts.get(context_id) or {}).get(normalize_url(url))
            return replace(c) if c is not None else None

    def urls(self, context_id: Optional[ContextId]) -> List[str]:
        with self._lock:
            return list((self._contexts.get(context_id) or {}).keys())

    def size(self, context_id: Optional[ContextId]) -> int:
        with self._lock:
            return len(self._contexts.get(context_id) or {})

    def has_context(self, context_id: Optional[ContextId]) -> bool:
        with self._lock:
            return context_id in self._contexts

    def contexts(self) -> List[ContextId]:
        with self._lock:
            return list(self._contexts.keys())
