from __future__ import annotations

import asyncio
import ssl
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import urlparse

import aiohttp
from aiohttp import ClientTimeout

from config import DetectionConfig
from loggers import DEBUG_LOGGER
from manifests import ManifestVariant, parse_manifest
from models import SOURCE_HLS, Candidate, ContextId
from urls import extract_embedded_headers


# ======================================================================
# HTTPS
# ======================================================================

@dataclass
class _HTTPResult:
    ok: bool
    status: Optional[int]
    headers: Dict[str, str]
    final_url: str
    body: bytes
    error: str = ""


class HTTPSSubmanager:
    """
    Shared HTTPS client (aiohttp-only) for manifest and page fetches.

    - Single pooled ClientSession + TCPConnector
    - Per-host concurrency semaphores
    - Browser-like headers
    - Safe bounded reads (max_bytes) with streaming accumulation
    - TLS controls: verify on/off + custom CA bundle

    One attempt per request: a failed manifest fetch is simply dropped, the
    next observation of the same manifest will try again.
    """

    def __init__(
        self,
        user_agent: str = "Mozilla/5.0 SidebyPass/1.0",
        timeout: float = 8.0,
        max_conn_per_host: int = 4,
        verify: bool = True,
        ca_bundle: Optional[str] = None,
        max_bytes: int = 2_000_000,
        max_text_chars: int = 600_000,
        enable_cookies: bool = True,
        allow_redirects: bool = True,
    ):
        self.ua = user_agent
        self.timeout = float(timeout)
        self.max_conn_per_host = int(max_conn_per_host)

        self.verify = bool(verify)
        self.ca_bundle = ca_bundle

        self.max_bytes = int(max_bytes)
        self.max_text_chars = int(max_text_chars)
        self.enable_cookies = bool(enable_cookies)
        self.allow_redirects = bool(allow_redirects)

        self._session: Optional[aiohttp.ClientSession] = None
        self._connector: Optional[aiohttp.TCPConnector] = None
        self._ssl_context: Optional[ssl.SSLContext] = None
        self._host_sem: Dict[str, asyncio.Semaphore] = {}

    @classmethod
    def from_config(cls, cfg: DetectionConfig) -> "HTTPSSubmanager":
        return cls(
            user_agent=cfg.user_agent,
            timeout=cfg.manifest_timeout,
            max_bytes=cfg.max_manifest_bytes,
        )

    # ------------------------------------------------------------- #
    # Context manager
    # ------------------------------------------------------------- #
    async def __aenter__(self):
        self._ssl_context = self._build_ssl_context()
        self._connector = aiohttp.TCPConnector(
            ssl=self._ssl_context if self._ssl_context is not None else True,
            limit_per_host=self.max_conn_per_host,
            ttl_dns_cache=300,
        )
        jar = aiohttp.CookieJar(unsafe=True) if self.enable_cookies else None
        self._session = aiohttp.ClientSession(
            connector=self._connector,
            cookie_jar=jar,
            headers=self._base_browser_headers(),
            auto_decompress=True,
            trust_env=True,
        )
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._session:
            await self._session.close()
        self._session = None
        self._connector = None
        self._ssl_context = None
        self._host_sem.clear()

    # ------------------------------------------------------------- #
    # SSL / TLS helpers
    # ------------------------------------------------------------- #
    def _build_ssl_context(self) -> Optional[ssl.SSLContext]:
        if self.verify and not self.ca_bundle:
            return None
        if self.verify:
            return ssl.create_default_context(cafile=self.ca_bundle)
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        return ctx

    # ------------------------------------------------------------- #
    # Host helpers
    # ------------------------------------------------------------- #
    def _host(self, url: str) -> str:
        try:
            return urlparse(url).netloc.lower()
        except ValueError:
            return ""

    def _get_host_semaphore(self, host: str) -> asyncio.Semaphore:
        return self._host_sem.setdefault(host or "_", asyncio.Semaphore(self.max_conn_per_host))

    def _base_browser_headers(self) -> Dict[str, str]:
        return {
            "User-Agent": self.ua,
            "Accept": "*/*",
            "Accept-Language": "en-US,en;q=0.9",
            "Accept-Encoding": "gzip, deflate",
            "Connection": "keep-alive",
        }

    # ------------------------------------------------------------- #
    # Safe bounded read
    # ------------------------------------------------------------- #
    async def _read_bounded(self, resp: aiohttp.ClientResponse, max_bytes: int) -> bytes:
        buf = bytearray()
        try:
            async for chunk in resp.content.iter_chunked(64 * 1024):
                if not chunk:
                    break
                buf.extend(chunk)
                if len(buf) >= max_bytes:
                    break
        except (aiohttp.ClientError, asyncio.TimeoutError):
            pass
        return bytes(buf[:max_bytes])

    # ------------------------------------------------------------- #
    # Core request (never returns a closed aiohttp response)
    # ------------------------------------------------------------- #
    async def _get(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        max_bytes: Optional[int] = None,
    ) -> _HTTPResult:
        if not self._session:
            raise RuntimeError("HTTPSSubmanager must be used in an async context (async with HTTPSSubmanager(...) as http).")

        max_bytes = self.max_bytes if max_bytes is None else int(max_bytes)
        sem = self._get_host_semaphore(self._host(url))

        try:
            async with sem:
                async with self._session.get(
                    url,
                    allow_redirects=self.allow_redirects,
                    timeout=ClientTimeout(total=self.timeout),
                    headers=headers or {},
                ) as resp:
                    status = int(resp.status)
                    hdrs = dict(resp.headers) if resp.headers else {}
                    body = await self._read_bounded(resp, max_bytes)
                    return _HTTPResult(
                        ok=200 <= status < 300,
                        status=status,
                        headers=hdrs,
                        final_url=str(resp.url),
                        body=body,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError, ssl.SSLError, ValueError) as e:
            return _HTTPResult(False, None, {}, url, b"", error=str(e) or type(e).__name__)

    # ------------------------------------------------------------- #
    # Public helpers
    # ------------------------------------------------------------- #
    async def get_text(self, url: str, headers: Optional[Dict[str, str]] = None) -> str:
        """
        GET url and return decoded text ("" on non-2xx or error).
        """
        r = await self._get(url, headers=headers)
        if not r.ok or not r.body:
            return ""
        txt = r.body.decode("utf-8", errors="ignore")
        if len(txt) > self.max_text_chars:
            txt = txt[: self.max_text_chars]
        return txt


# ======================================================================
# HLS
# ======================================================================

class HLSSubManager:
    """
    Expands HLS master playlists into per-quality candidates.

    ``schedule`` starts a background task per observed manifest and returns
    immediately; nobody awaits the result. The task fetches the playlist,
    parses it and merges the best ``max_manifest_variants`` variants back into
    the registry as ``hls`` playlists. Fetch/parse failures are logged and
    dropped. ``drain`` lets headless callers (CLI, tests) wait for stragglers.

    ``http`` can be an ``HTTPSSubmanager`` (or anything exposing
    ``get_text``) or a plain ``aiohttp.ClientSession``. When omitted, each
    expansion opens a short-lived ``HTTPSSubmanager``.
    """

    def __init__(self, registry, http: Any = None,
                 config: Optional[DetectionConfig] = None, logger=None):
        self.registry = registry
        self.http = http
        self.cfg = config or DetectionConfig()
        self.logger = logger or DEBUG_LOGGER
        self._tasks: Set[asyncio.Task] = set()
        self._in_flight: Set[Tuple[ContextId, str, int]] = set()

    # ---- helpers -----------------------------------------------------

    def _log(self, msg: str, log_list: Optional[List[str]] = None) -> None:
        full = f"[HLS] {msg}"
        try:
            if log_list is not None:
                log_list.append(full)
            if self.logger is not None:
                self.logger.log_message(full)
        except Exception:
            pass

    @staticmethod
    def _relay_headers(url: str) -> Dict[str, str]:
        # page referer/origin stamped into the URL by the page sniffer
        embedded = extract_embedded_headers(url)
        return {k.title(): v for k, v in embedded.items() if k in ("referer", "origin")}

    async def _fetch_text(self, session: Any, url: str, log: Optional[List[str]]) -> str:
        """
        Fetch text either via:
           HTTPSSubmanager-style wrapper (has get_text)
           raw aiohttp.ClientSession (has .get)
        """
        headers = self._relay_headers(url)
        if hasattr(session, "get_text"):
            text = await (session.get_text(url, headers=headers) if headers else session.get_text(url))
            if not text:
                self._log(f"Empty response for manifest {url}", log)
            return text or ""

        async with session.get(
            url,
            headers=headers or None,
            timeout=aiohttp.ClientTimeout(total=self.cfg.manifest_timeout),
            allow_redirects=True,
        ) as r:
            if r.status >= 400:
                self._log(f"HTTP {r.status} for manifest {url}", log)
                return ""
            raw = await r.content.read(int(self.cfg.max_manifest_bytes))
            return raw.decode("utf-8", errors="ignore")

    async def _fetch_manifest(self, url: str, log: Optional[List[str]]) -> str:
        if self.http is not None:
            return await self._fetch_text(self.http, url, log)
        async with HTTPSSubmanager.from_config(self.cfg) as http:
            return await self._fetch_text(http, url, log)

    # ---- public ------------------------------------------------------

    async def expand(self, context_id: ContextId, manifest_url: str,
                     log: Optional[List[str]] = None,
                     generation: Optional[int] = None) -> List[ManifestVariant]:
        """
        Fetch + parse ``manifest_url`` and merge its best variants into
        ``context_id``. Returns the merged variants ([] on any failure).

        Variants are dropped when the context was cleared (navigation) or
        destroyed after ``generation`` was taken.
        """
        if generation is None:
            generation = self.registry.generation(context_id)
        try:
            body = await asyncio.wait_for(
                self._fetch_manifest(manifest_url, log),
                timeout=float(self.cfg.manifest_timeout),
            )
        except asyncio.TimeoutError:
            self._log(f"Timed out fetching {manifest_url}", log)
            return []
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log(f"Error fetching manifest {manifest_url}: {e}", log)
            return []

        variants = parse_manifest(body, manifest_url)
        if not variants:
            return []
        if len(variants) == 1 and variants[0].url == manifest_url:
            # media playlist: the manifest itself is already stored
            return []

        # the context may have been closed or navigated while we were fetching
        if not self.registry.has_context(context_id) or self.registry.generation(context_id) != generation:
            self._log(f"ctx={context_id} changed, dropping {len(variants)} variant(s) of {manifest_url}", log)
            return []

        best = variants[: max(0, int(self.cfg.max_manifest_variants))]
        for v in best:
            self.registry.merge(context_id, Candidate(
                url=v.url,
                source=SOURCE_HLS,
                quality=v.quality,
                is_playlist=True,
            ), log=log, generation=generation)
        self._log(f"{manifest_url} -> {len(best)}/{len(variants)} variant(s) for ctx={context_id}", log)
        return best

    def schedule(self, context_id: ContextId, manifest_url: str,
                 log: Optional[List[str]] = None) -> Optional[asyncio.Task]:
        """Fire-and-forget ``expand``. Needs a running event loop; otherwise skipped."""
        generation = self.registry.generation(context_id)
        key = (context_id, manifest_url, generation)
        if key in self._in_flight:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._log(f"No running event loop, not expanding {manifest_url}", log)
            return None

        self._in_flight.add(key)
        task = loop.create_task(self.expand(context_id, manifest_url, log, generation=generation))
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            self._in_flight.discard(key)

        task.add_done_callback(_done)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


# ======================================================================
# Navigation
# ======================================================================

class NavigationWatcher:
    """
    Polls a location getter every ``navigation_poll_interval`` seconds and
    calls ``on_change(new_href)`` whenever the value differs from the last
    one seen. Single-page apps rewrite history without reloading, so there
    is no event to hook; polling is best-effort by nature.

    ``initial`` is the location the caller already knows about; without it
    the first poll only records the current value.
    """

    def __init__(self, get_location: Callable[[], str], on_change: Callable[[str], Any],
                 interval: Optional[float] = None, config: Optional[DetectionConfig] = None,
                 logger=None, initial: Optional[str] = None):
        self.cfg = config or DetectionConfig()
        self.get_location = get_location
        self.on_change = on_change
        self.interval = float(self.cfg.navigation_poll_interval if interval is None else interval)
        self.logger = logger or DEBUG_LOGGER
        self._last: Optional[str] = initial
        self._task: Optional[asyncio.Task] = None

    def _log(self, msg: str) -> None:
        try:
            if self.logger is not None:
                self.logger.log_message(f"[NavigationWatcher] {msg}")
        except Exception:
            pass

    def poll_once(self) -> bool:
        href = self.get_location()
        if self._last is None:
            self._last = href
            return False
        if href == self._last:
            return False
        self._last = href
        self.on_change(href)
        return True

    async def run(self) -> None:
        while True:
            try:
                self.poll_once()
            except Exception as e:
                self._log(f"poll failed: {e}")
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
