# ========================================================
# ================  config.py  ===========================
# ========================================================
from __future__ import annotations

import json as _json
import os as _os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv

from loggers import DEBUG_LOGGER

load_dotenv()

ENV_PREFIX = "SIDEBY_"

_UA = (
    "Mozilla/5.0 (X11; Linux x86_64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0 Safari/537.36"
)


@dataclass(frozen=True)
class DetectionConfig:
    """
    Tunables shared by the classifier, scorer, registry and adapters.

    Every field can be overridden from the environment (``SIDEBY_<FIELD>``,
    e.g. ``SIDEBY_ENTRY_TTL_SECONDS=120``) or from CLI extras
    (``--extra entry_ttl_seconds=120``).
    """
    min_video_size_bytes: int = 500_000
    max_results: int = 5
    entry_ttl_seconds: float = 600.0

    # adaptive streams
    max_manifest_variants: int = 3
    max_manifest_bytes: int = 512 * 1024
    manifest_timeout: float = 8.0

    # sources at or above this priority skip the playability heuristics
    trusted_priority_threshold: int = 75

    navigation_poll_interval: float = 0.5
    user_agent: str = _UA

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, logger=None) -> "DetectionConfig":
        env = _os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            overrides[f.name] = raw
        return cls().with_overrides(overrides, logger=logger)

    def with_overrides(self, overrides: Mapping[str, Any], logger=None) -> "DetectionConfig":
        """
        Return a copy with ``overrides`` applied. Unknown keys are ignored and
        values that cannot be coerced keep the current setting.
        """
        log = logger or DEBUG_LOGGER
        known = {f.name: f for f in fields(self)}
        clean: Dict[str, Any] = {}
        for key, value in (overrides or {}).items():
            f = known.get(str(key).strip().lower())
            if f is None:
                continue
            current = getattr(self, f.name)
            try:
                if isinstance(current, bool):
                    clean[f.name] = _coerce(value) is True
                elif isinstance(current, int):
                    clean[f.name] = int(float(value))
                elif isinstance(current, float):
                    clean[f.name] = float(value)
                else:
                    clean[f.name] = str(value)
            except (TypeError, ValueError):
                try:
                    log.log_message(f"[Config] Ignoring invalid value for {f.name}: {value!r}")
                except Exception:
                    pass
        return replace(self, **clean) if clean else self


def _coerce(v: str) -> Any:
    if not isinstance(v, str):
        return v
    s = v.strip()
    low = s.lower()
    if low in ("true", "false"):
        return low == "true"
    try:
        if s.isdigit():
            return int(s)
        return float(s)
    except Exception:
        pass
    if (s.startswith("'") and s.endswith("'")) or (s.startswith('"') and s.endswith('"')):
        return s[1:-1]
    if (s.startswith("{") and s.endswith("}")) or (s.startswith("[") and s.endswith("]")):
        try:
            return _json.loads(s)
        except Exception:
            return s
    return s


def parse_extras(items: List[str]) -> Dict[str, Dict[str, Any]]:
    """
    Parse ``key=val`` / ``group.key=val`` CLI extras into ``{group: {key: val}}``.
    Keys without a group land in ``"all"``.
    """
    out: Dict[str, Dict[str, Any]] = {}
    for item in items:
        if "=" not in item:
            continue
        k, v = item.split("=", 1)
        if "." in k:
            group, key = k.split(".", 1)
        else:
            group, key = "all", k
        group = group.strip().lower()
        key = key.strip()
        out.setdefault(group, {})[key] = _coerce(v)
    return out


def load_config(extras: Optional[Dict[str, Dict[str, Any]]] = None,
                environ: Optional[Mapping[str, str]] = None) -> DetectionConfig:
    cfg = DetectionConfig.from_env(environ)
    if extras:
        merged: Dict[str, Any] = {}
        merged.update(extras.get("all", {}))
        merged.update(extras.get("config", {}))
        cfg = cfg.with_overrides(merged)
    return cfg
