# lfsmeta/logging.py
# -*- coding: utf-8 -*-
"""
lfsmeta logging

Features:
 - Configuration from lfsmeta.config (`logging` section)
 - Console color formatter
 - Rotating file handler
 - Module-level LoggerAdapter injecting 'lfsmeta_module' into records
 - Per-package build log attached for the duration of a build (open_build_log)
 - WarningLog: soft failures are logged and recorded so callers can inspect them
"""

from __future__ import annotations

import sys
import logging
import logging.handlers
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from lfsmeta.errors import BuildWarning

_logger = logging.getLogger("lfsmeta.logging")

DEFAULT_FORMAT = "[%(asctime)s] [%(levelname)s] [%(lfsmeta_module)s] %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)s [%(lfsmeta_module)s] %(message)s"


# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",    # light gray
        logging.INFO: "\033[36m",     # cyan
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",    # red
        logging.CRITICAL: "\033[41;37m",  # white on red
    }
    RESET = "\033[0m"

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, color: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.color = color

    def format(self, record):
        msg = super().format(record)
        if self.color:
            color = self.COLORS.get(record.levelno, "")
            return f"{color}{msg}{self.RESET}"
        return msg


class _ModuleDefaultFilter(logging.Filter):
    """Records emitted through plain loggers get the logger name as module."""

    def filter(self, record):
        if not hasattr(record, "lfsmeta_module"):
            record.lfsmeta_module = record.name.rsplit(".", 1)[-1]
        return True


# ----------------------
# LfsmetaLogger (singleton)
# ----------------------
class LfsmetaLogger:
    _instance = None
    _singleton_lock = threading.Lock()

    def __new__(cls):
        with cls._singleton_lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._inited = False
        return cls._instance

    def __init__(self):
        if self._inited:
            return
        self._lock = threading.RLock()
        self._root = logging.getLogger("lfsmeta")
        self._handlers: List[logging.Handler] = []
        self._inited = True

    def configure(self, cfg: Dict[str, Any]) -> None:
        """Replace console/file handlers according to a `logging` config section."""
        with self._lock:
            for h in list(self._handlers):
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()

            level = getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO)
            datefmt = cfg.get("datefmt", "%H:%M:%S")

            ch = logging.StreamHandler(sys.stderr)
            ch.setLevel(level)
            ch.addFilter(_ModuleDefaultFilter())
            ch.setFormatter(ColorFormatter(cfg.get("format") or DEFAULT_FORMAT, datefmt=datefmt,
                                           color=bool(cfg.get("color", True)) and sys.stderr.isatty()))
            self._root.addHandler(ch)
            self._handlers.append(ch)

            if cfg.get("file"):
                file_path = Path(cfg["file"]).expanduser()
                file_path.parent.mkdir(parents=True, exist_ok=True)
                fh = logging.handlers.RotatingFileHandler(
                    str(file_path),
                    maxBytes=cfg.get("max_size_bytes") or 10 * 1024 * 1024,
                    backupCount=int(cfg.get("backups", 5)),
                    encoding="utf-8",
                )
                fh.setLevel(getattr(logging, str(cfg.get("file_level", "DEBUG")).upper(), logging.DEBUG))
                fh.addFilter(_ModuleDefaultFilter())
                fh.setFormatter(logging.Formatter(cfg.get("format") or FILE_FORMAT, datefmt=datefmt))
                self._root.addHandler(fh)
                self._handlers.append(fh)

            file_level = logging.DEBUG if cfg.get("file") else level
            self._root.setLevel(min(level, file_level))
            self._root.propagate = False
            _logger.debug("logging: configuration applied")

    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'lfsmeta_module' into records."""
        base = logging.getLogger(f"lfsmeta.{module_name}")
        return logging.LoggerAdapter(base, {"lfsmeta_module": module_name})

    @contextmanager
    def build_log(self, path: Path) -> Iterator[logging.Handler]:
        """Mirror every lfsmeta record into a package build log while active."""
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(str(path), encoding="utf-8")
        handler.setLevel(logging.DEBUG)
        handler.addFilter(_ModuleDefaultFilter())
        handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S"))
        with self._lock:
            self._root.addHandler(handler)
        try:
            yield handler
        finally:
            with self._lock:
                self._root.removeHandler(handler)
            handler.close()


# ----------------------
# Soft-failure bookkeeping
# ----------------------
class WarningLog:
    """Collects BuildWarning records while logging them at WARNING level."""

    def __init__(self, logger: Optional[logging.LoggerAdapter] = None):
        self._logger = logger or get_logger("warnings")
        self.items: List[BuildWarning] = []

    def warn(self, source: str, message: str, /, **context: Any) -> BuildWarning:
        w = BuildWarning(source=source, message=message, context=context)
        self.items.append(w)
        if context:
            ctx = ", ".join(f"{k}={v}" for k, v in context.items())
            self._logger.warning("%s (%s)", message, ctx)
        else:
            self._logger.warning("%s", message)
        return w

    def extend(self, other: "WarningLog") -> None:
        self.items.extend(other.items)

    def __iter__(self):
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)


# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER = LfsmetaLogger()


def get_logger(module: str) -> logging.LoggerAdapter:
    return _GLOBAL_LOGGER.get_logger(module)


def configure(cfg: Optional[Dict[str, Any]] = None) -> None:
    if cfg is None:
        from lfsmeta.config import get_config
        cfg = get_config().get("logging", {}) or {}
    _GLOBAL_LOGGER.configure(cfg)


def open_build_log(path: Path):
    return _GLOBAL_LOGGER.build_log(path)
