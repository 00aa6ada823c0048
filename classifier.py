# ========================================================
# ================  classifier.py  =======================
# ========================================================
from __future__ import annotations

import re
from typing import List, Optional

from config import DetectionConfig
from loggers import DEBUG_LOGGER
from models import source_priority
from urls import is_direct_platform_url


class CandidateClassifier:
    """
    Decides whether a stored candidate is a plausible full video.

    Cheap, source-trusted signals short-circuit the URL heuristics. Size is
    only ever a negative signal: collaborators often cannot observe it, so a
    missing size never disqualifies.

    Decision order (first match wins):
      1. trusted source (priority >= threshold)           -> playable
      2. direct-play platform URL (YouTube watch/shorts)   -> playable
      3. non-video container (.webm, .m4s)                 -> rejected
      4. segment extension (.ts/.m4s/.m4a)                 -> rejected, unless the
         declared size exceeds 2x the minimum (likely a mistagged full file)
      5. no video extension and no video content type     -> rejected
      6. segment / fragment / init / byte-range naming     -> rejected
      7. audio-only naming                                 -> rejected
      8. declared size below the minimum                   -> rejected
      9. otherwise                                         -> playable
    """

    VIDEO_EXTENSIONS_RE = re.compile(r"\.(mp4|m4v|mov|m3u8)(\?|#|$)", re.IGNORECASE)
    SEGMENT_EXTENSIONS_RE = re.compile(r"\.(ts|m4s|m4a)(\?|#|$)", re.IGNORECASE)
    NON_VIDEO_EXTENSIONS_RE = re.compile(r"\.(webm|m4s)(\?|#|$)", re.IGNORECASE)
    VIDEO_CONTENT_TYPES_RE = re.compile(r"^(video/|application/(vnd\.apple\.mpegurl|x-mpegurl))", re.IGNORECASE)

    SEGMENT_PATTERNS = (
        re.compile(r"[_\-/](seg|segment|frag|fragment|chunk|part)[_\-]?\d+", re.IGNORECASE),
        re.compile(r"[_\-/]init[_\-]?\d*\.(mp4|m4s)", re.IGNORECASE),
        re.compile(r"[&?]range=\d+[_\-]\d+", re.IGNORECASE),
        re.compile(r"/range/\d+", re.IGNORECASE),
        re.compile(r"[&?]bytestart=", re.IGNORECASE),
        re.compile(r"[&?]byteend=", re.IGNORECASE),
    )

    AUDIO_ONLY_PATTERNS = (
        re.compile(r"[_\-/]audio[_\-/]", re.IGNORECASE),
        re.compile(r"audio[_\-]only", re.IGNORECASE),
        re.compile(r"\.m4a(\?|#|$)", re.IGNORECASE),
        re.compile(r"\.aac(\?|#|$)", re.IGNORECASE),
    )

    def __init__(self, config: Optional[DetectionConfig] = None, logger=None):
        self.cfg = config or DetectionConfig()
        self.logger = logger or DEBUG_LOGGER

    def _log(self, msg: str, log_list: Optional[List[str]]) -> None:
        full = f"[Classifier] {msg}"
        try:
            if log_list is not None:
                log_list.append(full)
            if self.logger is not None:
                self.logger.log_message(full)
        except Exception:
            pass

    # ------------------------------ signals ------------------------------ #

    def has_video_extension(self, url: str) -> bool:
        return bool(self.VIDEO_EXTENSIONS_RE.search(url or ""))

    def has_segment_extension(self, url: str) -> bool:
        return bool(self.SEGMENT_EXTENSIONS_RE.search(url or ""))

    def has_video_content_type(self, content_type: Optional[str]) -> bool:
        return bool(content_type) and bool(self.VIDEO_CONTENT_TYPES_RE.search(content_type.strip()))

    def looks_like_segment(self, url: str) -> bool:
        return any(p.search(url or "") for p in self.SEGMENT_PATTERNS)

    def looks_like_audio(self, url: str) -> bool:
        return any(p.search(url or "") for p in self.AUDIO_ONLY_PATTERNS)

    # ------------------------------ public ------------------------------ #

    def is_playable(
        self,
        url: str,
        content_type: Optional[str] = None,
        size: Optional[int] = None,
        source: Optional[str] = None,
        log: Optional[List[str]] = None,
    ) -> bool:
        lower = (url or "").lower()
        min_size = int(self.cfg.min_video_size_bytes)

        if source and source_priority(source) >= int(self.cfg.trusted_priority_threshold):
            return True

        if is_direct_platform_url(lower):
            return True

        if self.NON_VIDEO_EXTENSIONS_RE.search(lower):
            self._log(f"Rejected non-video container: {url}", log)
            return False

        # Known precision/recall trade-off: a long high-bitrate segment can slip through here.
        rescued_segment = False
        if self.has_segment_extension(lower):
            if size and size > min_size * 2:
                rescued_segment = True
            else:
                self._log(f"Rejected segment extension: {url}", log)
                return False

        if not rescued_segment and not self.has_video_extension(lower) \
                and not self.has_video_content_type(content_type):
            return False

        if self.looks_like_segment(lower):
            self._log(f"Rejected segment naming: {url}", log)
            return False

        if self.looks_like_audio(lower):
            self._log(f"Rejected audio-only: {url}", log)
            return False

        if size and size < min_size:
            self._log(f"Rejected undersized ({size} bytes): {url}", log)
            return False

        return True
