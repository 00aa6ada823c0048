# ========================================================
# ================  pipeline.py  =========================
# ========================================================
from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional

from bs4 import BeautifulSoup

from config import DetectionConfig
from loggers import DEBUG_LOGGER
from manifests import looks_like_manifest
from models import (
    SOURCE_HLS,
    CandidatesRequested,
    ContextClosed,
    ContextId,
    Message,
    NavigationChanged,
    ObservedResponse,
    RankedCandidates,
    RawCandidate,
    message_from_dict,
)
from registry import SNIFFERS
from sniffers import DomSniffer, NetworkSniffer, PageSniffer, valid_context_id
from stores import ContextRegistry
from submanagers import HLSSubManager, NavigationWatcher
from urls import normalize_url


class DetectionPipeline:
    """
    Owns the context registry and wires every detector to it.

    Messages from untrusted producers enter through ``dispatch`` (typed) or
    ``dispatch_dict`` (decoded JSON). Neither ever raises: malformed or
    failing messages are logged and dropped.

      ObservedResponse     -> NetworkSniffer (may schedule manifest expansion)
      RawCandidate         -> merged as-is (manifests also expanded)
      NavigationChanged    -> context emptied
      ContextClosed        -> context removed
      CandidatesRequested  -> RankedCandidates
    """

    def __init__(self, config: Optional[DetectionConfig] = None, http: Any = None,
                 clock: Callable[[], float] = time.time, logger=None):
        self.cfg = config or DetectionConfig()
        self.logger = logger or DEBUG_LOGGER
        self.registry = ContextRegistry(self.cfg, clock=clock, logger=self.logger)
        self.hls = HLSSubManager(self.registry, http=http, config=self.cfg, logger=self.logger)
        self.network = NetworkSniffer(self.registry, hls=self.hls, config=self.cfg, logger=self.logger)
        self.html_sniffers = SNIFFERS.create_all(registry=self.registry, config=self.cfg, logger=self.logger)
        self._pages: Dict[ContextId, PageSniffer] = {}

    # ---------- logging helper ----------
    def _log(self, msg: str, log_list: Optional[List[str]] = None) -> None:
        full = f"[Pipeline] {msg}"
        try:
            if log_list is not None:
                log_list.append(full)
            if self.logger is not None:
                self.logger.log_message(full)
        except Exception:
            pass

    def _sniffer(self, cls):
        for s in self.html_sniffers:
            if isinstance(s, cls):
                return s
        return None

    def _forget(self, context_id: ContextId) -> None:
        for s in self.html_sniffers:
            s.forget(context_id)
        page = self._pages.get(context_id)
        if page is not None:
            page.forget(context_id)

    # -------------------- Messages -------------------- #
    def dispatch(self, message: Message, log: Optional[List[str]] = None) -> Optional[RankedCandidates]:
        try:
            return self._dispatch(message, log)
        except Exception as e:
            self._log(f"Dropped {type(message).__name__}: {e}", log)
            return None

    def _dispatch(self, message: Message, log: Optional[List[str]]) -> Optional[RankedCandidates]:
        if isinstance(message, ObservedResponse):
            self.network.on_response(message, log)
            return None

        if isinstance(message, RawCandidate):
            if not valid_context_id(message.context_id):
                return None
            self.registry.merge(message.context_id, message.as_candidate(), log=log)
            if message.url and (message.source == SOURCE_HLS or looks_like_manifest(message.url)):
                if self.registry.get(message.context_id, message.url) is not None:
                    self.hls.schedule(message.context_id, normalize_url(message.url), log)
            return None

        if isinstance(message, NavigationChanged):
            self.registry.clear(message.context_id)
            self._forget(message.context_id)
            return None

        if isinstance(message, ContextClosed):
            self.registry.destroy(message.context_id)
            self._forget(message.context_id)
            self._pages.pop(message.context_id, None)
            return None

        if isinstance(message, CandidatesRequested):
            items = self.registry.query(message.context_id, limit=message.limit, log=log)
            return RankedCandidates(context_id=message.context_id, items=items)

        self._log(f"Unknown message type {type(message).__name__}", log)
        return None

    def dispatch_dict(self, data: Any, log: Optional[List[str]] = None) -> Optional[RankedCandidates]:
        msg = message_from_dict(data)
        if msg is None:
            self._log(f"Malformed message: {str(data)[:120]}", log)
            return None
        return self.dispatch(msg, log)

    # -------------------- Page-level helpers -------------------- #
    def page(self, context_id: ContextId, href: str, title: str = "") -> PageSniffer:
        """Page-context sniffer for ``context_id``, created on first use."""
        sniffer = self._pages.get(context_id)
        if sniffer is None:
            sniffer = PageSniffer(self.registry, context_id, href, title,
                                  config=self.cfg, logger=self.logger, on_navigate=self.dispatch)
            self._pages[context_id] = sniffer
        else:
            # a navigation comes back through dispatch(NavigationChanged)
            sniffer.check_location(href, title or None)
        return sniffer

    def watch(self, context_id: ContextId, href: str,
              get_location: Callable[[], str], title: str = "") -> NavigationWatcher:
        """Location watcher for the page in ``context_id`` (start it on a running loop)."""
        return self.page(context_id, href, title).watch(get_location)

    def dom_elements(self, context_id: ContextId, records, title: Optional[str] = None,
                     log: Optional[List[str]] = None) -> int:
        dom = self._sniffer(DomSniffer)
        return dom.on_elements(context_id, records, title=title, log=log) if dom else 0

    def scan_html(self, context_id: ContextId, html: str, page_url: str,
                  title: Optional[str] = None, log: Optional[List[str]] = None) -> int:
        """Run every HTML sniffer (dom, meta, script, direct) over one page."""
        if not valid_context_id(context_id):
            return 0
        soup = BeautifulSoup(html or "", "html.parser")
        added = 0
        for s in self.html_sniffers:
            try:
                added += s.scan_html(context_id, soup, page_url, title=title, log=log)
            except Exception as e:
                self._log(f"{type(s).__name__} failed on {page_url}: {e}", log)
        self._log(f"ctx={context_id} {page_url}: {added} candidate(s) from page HTML", log)
        return added

    def query(self, context_id: ContextId, limit: Optional[int] = None) -> RankedCandidates:
        return RankedCandidates(context_id=context_id, items=self.registry.query(context_id, limit=limit))

    async def drain(self) -> None:
        """Wait for background manifest expansions (CLI / tests only)."""
        await self.hls.drain()
