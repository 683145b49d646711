# lfsmeta/config.py
# -*- coding: utf-8 -*-
"""
lfsmeta central configuration loader

Features:
- Read YAML/JSON config from multiple locations (explicit, env override, cwd, user, system)
- Merge with authoritative DEFAULTS, normalize/coerce types (human sizes to bytes)
- Validate structure and types, warn or raise ConfigError (fatal optional)
- Typed access via Config dataclass (get_config(), get(), as_dict())
- Layout: every filesystem location the build engine touches, derived from `paths`
"""

from __future__ import annotations

import os
import json
import logging
import threading
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from lfsmeta.errors import ConfigError

logger = logging.getLogger("lfsmeta.config")

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
# Path values may reference other path keys with {name}; they are resolved in
# declaration order by _resolve_paths().
DEFAULTS: Dict[str, Any] = {
    "paths": {
        "lfs": "/mnt/lfs",
        "sources_cache": "{lfs}/sources/cache",
        "build_dir": "{lfs}/build",
        "log_dir": "{lfs}/var/log",
        "progress_dir": "{log_dir}/.progress",
        "lock_dir": "{log_dir}/locks",
        "pkgdb_dir": "{lfs}/var/lib/lfs-packages",
        "tools_dir": "{lfs}/tools",
    },
    "fetch": {
        "retries": 3,
        "backoff": 5,
        "timeout": 300,
        "connect_timeout": 15,
        "allow_no_checksum": False,
        "tools": ["curl", "wget"],
    },
    "build": {
        "jobs": os.cpu_count() or 1,
        "min_disk": "1G",
        "patch_fallback": True,
        "trust_hooks": False,
    },
    "logging": {
        "level": "INFO",
        "file": None,
        "file_level": "DEBUG",
        "color": True,
        "max_size": "10M",
        "backups": 5,
        "format": None,
        "datefmt": "%H:%M:%S",
    },
}

_PATH_ORDER = ("lfs", "sources_cache", "build_dir", "log_dir", "progress_dir",
               "lock_dir", "pkgdb_dir", "tools_dir")


# ----------------------------
# Dataclass to hold config
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # values loaded from file (if any)
    merged: Dict[str, Any] = field(default_factory=dict)  # merged with DEFAULTS
    path: Optional[Path] = None

    def get(self, path: str, default: Any = None) -> Any:
        """Dot-separated getter for merged config."""
        parts = path.split(".") if path else []
        cur: Any = self.merged
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)

    @property
    def layout(self) -> "Layout":
        return Layout.from_config(self)


@dataclass(frozen=True)
class Layout:
    """Filesystem locations used by the engine, keyed by package identity."""
    lfs: Path
    sources_cache: Path
    build_dir: Path
    log_dir: Path
    progress_dir: Path
    lock_dir: Path
    pkgdb_dir: Path
    tools_dir: Path

    @classmethod
    def from_config(cls, cfg: Config) -> "Layout":
        paths = cfg.get("paths", {}) or {}
        return cls(**{k: Path(paths[k]) for k in _PATH_ORDER})

    def source_cache(self, name: str, version: str) -> Path:
        return self.sources_cache / f"{name}-{version}"

    def work_dir(self, name: str, version: str) -> Path:
        return self.build_dir / f"{name}-{version}"

    def log_file(self, name: str, version: str) -> Path:
        return self.log_dir / f"{name}-{version}.log"

    def build_log_file(self, name: str, version: str) -> Path:
        return self.log_dir / f"{name}-{version}.build.log"

    def lock_file(self, name: str, version: str, purpose: str) -> Path:
        return self.lock_dir / f"{name}-{version}.{purpose}.lock"

    def progress_file(self, name: str, version: str) -> Path:
        return self.progress_dir / f"{name}-{version}.stage"

    def manifest_file(self, name: str, version: str) -> Path:
        return self.pkgdb_dir / f"{name}-{version}.files"

    def meta_file(self, name: str, version: str) -> Path:
        return self.pkgdb_dir / f"{name}-{version}.meta"

    def failed_patch_file(self, name: str, index: int) -> Path:
        return self.log_dir / f"{name}.patch.fail-{index}"


# ----------------------------
# Module state
# ----------------------------
_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()


# ----------------------------
# Utilities
# ----------------------------
def _human_size_to_bytes(val: Union[str, int, None]) -> Optional[int]:
    if val is None:
        return None
    if isinstance(val, int):
        return val
    s = str(val).strip().upper()
    units = {"KB": 1024, "MB": 1024**2, "GB": 1024**3, "TB": 1024**4,
             "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}
    try:
        for suffix, mul in units.items():
            if s.endswith(suffix):
                num = float(s[: -len(suffix)].strip())
                return int(num * mul)
        return int(float(s))
    except ValueError:
        logger.warning("config: cannot parse human size '%s'", val)
        return None


def _expand_path(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(os.path.expandvars(val)))


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = deepcopy(a)
    for k, v in b.items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = deepcopy(v)
    return res


def _find_candidates(explicit: Optional[str] = None) -> List[Path]:
    candidates: List[Path] = []
    env = os.environ.get("LFSMETA_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "lfsmeta.yaml",
        Path.cwd() / "lfsmeta.yml",
        Path.cwd() / "lfsmeta.json",
        Path.home() / ".config" / "lfsmeta" / "config.yaml",
        Path("/etc") / "lfsmeta" / "config.yaml",
    ])
    return candidates


def _load_file(path: Path) -> Dict[str, Any]:
    try:
        txt = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read config file: {e}", path=str(path)) from e
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(txt)
        else:
            data = yaml.safe_load(txt)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot parse config file: {e}", path=str(path)) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("config file must contain a mapping", path=str(path))
    return data


def _resolve_paths(paths: Dict[str, Any], raw_paths: Dict[str, Any]) -> Dict[str, Any]:
    """Expand {name} references between path keys and normalize them."""
    out = dict(paths)
    env_lfs = os.environ.get("LFS")
    if env_lfs and "lfs" not in raw_paths:
        out["lfs"] = env_lfs
    resolved: Dict[str, str] = {}
    for key in _PATH_ORDER:
        val = str(out.get(key) or DEFAULTS["paths"][key])
        try:
            val = val.format(**resolved)
        except KeyError as e:
            raise ConfigError(f"unknown path reference {e} in paths.{key}") from e
        resolved[key] = _expand_path(val)
    out.update(resolved)
    return out


def _normalize_and_coerce(cfg: Dict[str, Any], raw: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize path fields, convert human sizes and coerce basic types."""
    out = deepcopy(cfg)
    out["paths"] = _resolve_paths(out.get("paths", {}), raw.get("paths", {}) or {})

    if out["logging"].get("file"):
        out["logging"]["file"] = _expand_path(out["logging"]["file"])
    out["logging"]["max_size_bytes"] = _human_size_to_bytes(out["logging"].get("max_size"))

    build = out["build"]
    build["min_disk_bytes"] = _human_size_to_bytes(build.get("min_disk"))
    try:
        build["jobs"] = int(build.get("jobs") or 1)
        fetch = out["fetch"]
        for key in ("retries", "backoff", "timeout", "connect_timeout"):
            fetch[key] = int(fetch[key])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid numeric config value: {e}") from e
    if isinstance(out["fetch"].get("tools"), str):
        out["fetch"]["tools"] = [t.strip() for t in out["fetch"]["tools"].split(",") if t.strip()]
    return out


def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list). Non-fatal warnings unless called with fatal=True in load."""
    warnings: List[str] = []
    for k in cfg.keys():
        if k not in DEFAULTS:
            warnings.append(f"Unknown top-level config key: {k}")
    if cfg["build"]["jobs"] < 1:
        warnings.append("build.jobs must be integer >= 1")
    if cfg["fetch"]["retries"] < 1:
        warnings.append("fetch.retries must be integer >= 1")
    if not isinstance(cfg["fetch"].get("tools"), list) or not cfg["fetch"]["tools"]:
        warnings.append("fetch.tools should be a non-empty list")
    if cfg["build"].get("min_disk") is not None and cfg["build"]["min_disk_bytes"] is None:
        warnings.append("build.min_disk must be a size such as 512M or 2G")
    return (len(warnings) == 0, warnings)


# ----------------------------
# Loading / reloading
# ----------------------------
def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    if explicit and not Path(explicit).exists():
        raise ConfigError("config file not found", path=explicit)
    for p in _find_candidates(explicit):
        if p.exists():
            return p
    return None


def _check_sections(raw: Dict[str, Any], path: Optional[Path] = None) -> Dict[str, Any]:
    """Drop empty known sections; a known section must otherwise be a mapping."""
    out: Dict[str, Any] = {}
    for key, value in raw.items():
        if key in DEFAULTS and value is None:
            continue
        if key in DEFAULTS and not isinstance(value, dict):
            raise ConfigError(f"config section '{key}' must be a mapping",
                              path=str(path) if path else None, section=key)
        out[key] = value
    return out


def build_config(overrides: Optional[Dict[str, Any]] = None, fatal: bool = False,
                 path: Optional[Path] = None) -> Config:
    """Merge `overrides` onto DEFAULTS without touching the filesystem."""
    raw = _check_sections(overrides or {}, path)
    merged = _deep_merge(DEFAULTS, raw)
    normalized = _normalize_and_coerce(merged, raw)
    ok, issues = _validate_structure(normalized)
    if not ok:
        msg = f"config: validation issues: {issues}"
        if fatal:
            raise ConfigError(msg)
        logger.warning(msg)
    return Config(raw=raw, merged=normalized, path=path)


def load(explicit_path: Optional[str] = None, fatal: bool = False) -> Config:
    """
    Load and merge config. If fatal=True then structural validation failures raise.
    Returns Config object and installs it as the process-wide config.
    """
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path)
        raw = _load_file(cfg_path) if cfg_path else {}
        cfg_obj = build_config(raw, fatal=fatal, path=cfg_path)
        _CONFIG = cfg_obj
        logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
        return cfg_obj


def get_config() -> Config:
    global _CONFIG
    with _CONFIG_LOCK:
        if _CONFIG is None:
            _CONFIG = load()
        return _CONFIG


def set_config(cfg: Optional[Config]) -> None:
    """Install `cfg` as the process-wide config (None resets to lazy loading)."""
    global _CONFIG
    with _CONFIG_LOCK:
        _CONFIG = cfg


def reload(explicit_path: Optional[str] = None) -> Config:
    return load(explicit_path)


def get(path: str, default: Any = None) -> Any:
    return get_config().get(path, default)
