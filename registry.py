# ========================================================
# ================  registry.py  =========================
# ========================================================
from __future__ import annotations
from typing import Any, Dict, List
import sys as _sys


class Registry:
    """Central name -> class registry (site parsers, HTML sniffers)."""

    def __init__(self, kind: str = "entry") -> None:
        self.kind = kind
        self._by_name: Dict[str, type] = {}

    def register(self, name: str, cls: type) -> None:
        key = name.strip().lower()
        if key in self._by_name:
            print(f"[Registry] Warning: Overwriting {self.kind} '{key}'", file=_sys.stderr)
        self._by_name[key] = cls

    def names(self) -> List[str]:
        return list(self._by_name.keys())

    def get(self, name: str) -> type:
        key = name.strip().lower()
        if key not in self._by_name:
            raise KeyError(f"Unknown {self.kind} '{name}'. Available: {', '.join(self.names()) or '(none)'}")
        return self._by_name[key]

    def create(self, name: str, **kwargs: Any):
        return self.get(name)(**kwargs)

    def create_all(self, **kwargs: Any) -> List[Any]:
        # registration order is significant: site-specific parsers run before generic ones
        return [cls(**kwargs) for cls in self._by_name.values()]


SITE_PARSERS = Registry("site parser")
SNIFFERS = Registry("sniffer")
