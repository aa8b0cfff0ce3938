from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


def _expand(p: str) -> str:
    return os.path.expandvars(os.path.expanduser(p))


def _opt_str(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


@dataclass(frozen=True)
class CasConfig:
    """Client settings; everything lives under the top-level `cas` key."""

    raw: Dict[str, Any]

    @property
    def _cas(self) -> Dict[str, Any]:
        return self.raw.get("cas") or {}

    # -------------------------
    # Endpoints (first configured wins: gRPC, HTTP, local)
    # -------------------------
    @property
    def remote_cache(self) -> Optional[str]:
        return _opt_str(self._cas.get("remote_cache"))

    @property
    def remote_http_cache(self) -> Optional[str]:
        return _opt_str(self._cas.get("remote_http_cache"))

    @property
    def local_cache(self) -> Optional[Path]:
        p = _opt_str(self._cas.get("local_cache"))
        return Path(_expand(p)).resolve() if p else None

    @property
    def instance_name(self) -> str:
        return str(self._cas.get("instance_name") or "")

    # -------------------------
    # Transfer controls
    # -------------------------
    @property
    def timeout_s(self) -> float:
        return float(self._cas.get("timeout_s", 60))

    @property
    def digest_function(self) -> str:
        return str(self._cas.get("digest_function", "sha256")).lower()

    @property
    def chunk_size(self) -> int:
        return int(self._cas.get("chunk_size", 64 * 1024))

    @property
    def max_workers(self) -> int:
        return max(1, int(self._cas.get("max_workers", 1)))

    # -------------------------
    # Tree fetch
    # -------------------------
    @property
    def max_tree_depth(self) -> int:
        return int(self._cas.get("max_tree_depth", 512))

    @property
    def get_tree_page_size(self) -> int:
        return int(self._cas.get("get_tree_page_size", 1000))

    @property
    def use_get_tree(self) -> bool:
        return bool(self._cas.get("use_get_tree", True))

    # -------------------------
    # Logging
    # -------------------------
    @property
    def log_level(self) -> str:
        return str(self.raw.get("logging", {}).get("level", "WARNING")).upper()

    def with_overrides(self, **values: Any) -> "CasConfig":
        """Copy with `cas.<key>` replaced for every value that is not None."""
        raw = copy.deepcopy(self.raw)
        cas = raw.setdefault("cas", {})
        for k, v in values.items():
            if v is not None:
                cas[k] = v
        return CasConfig(raw)


def default_config_path() -> Path:
    return (Path(__file__).resolve().parents[1] / "config" / "cas_client.yaml").resolve()


def load_config(path: str | Path) -> CasConfig:
    p = Path(path).resolve()
    raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if "cas" not in raw:
        raise ValueError("invalid_config: missing top-level 'cas' key")
    return CasConfig(raw)
