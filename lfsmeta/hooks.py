# lfsmeta/hooks.py

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from lfsmeta.config import Config, get_config
from lfsmeta.descriptor import Descriptor
from lfsmeta.errors import HookError
from lfsmeta.logging import WarningLog, get_logger
from lfsmeta.runner import CommandRunner

logger = get_logger("hooks")

HOOK_STAGES = ("fetch", "prepare", "configure", "build", "check", "install")
EVENTS = tuple(f"{when}-{stage}" for stage in HOOK_STAGES for when in ("pre", "post"))


def normalize_event(name: str) -> Optional[str]:
    """'pre_build', 'pre-build.sh' and 'PRE-BUILD' all map to 'pre-build'."""
    ev = name.strip().lower()
    for ext in (".sh", ".bash"):
        if ev.endswith(ext):
            ev = ev[: -len(ext)]
    ev = ev.replace("_", "-")
    return ev if ev in EVENTS else None


@dataclass
class Hook:
    event: str
    name: str
    path: str
    origin: str  # "descriptor" or "dir"
    enabled: bool = True


class HookManager:
    def __init__(self, desc: Descriptor, *, config: Optional[Config] = None,
                 runner: Optional[CommandRunner] = None, warnings: Optional[WarningLog] = None):
        self.desc = desc
        self.config = config or get_config()
        self.layout = self.config.layout
        self.runner = runner or CommandRunner()
        self.warnings = warnings if warnings is not None else WarningLog(logger)
        self.trusted = bool(self.config.get("build.trust_hooks", False))
        self.build_log = desc.build_log or self.layout.build_log_file(desc.name, desc.version)
        self.hooks: Dict[str, List[Hook]] = {}
        self.load_from_descriptor()
        if desc.dir is not None:
            self.load_from_dir(desc.dir)

    # -----------------------------
    # Loading
    # -----------------------------
    def load_from_descriptor(self) -> None:
        for key, path in self.desc.hooks.items():
            event = normalize_event(key)
            if event is None:
                self.warnings.warn("hooks", f"Unknown hook event '{key}' ignored", package=self.desc.key)
                continue
            self.register(event, key, path, origin="descriptor")

    def load_from_dir(self, pkg_dir: Path) -> None:
        hooks_dir = Path(pkg_dir) / "hooks"
        if not hooks_dir.is_dir():
            return
        for fname in sorted(os.listdir(hooks_dir)):
            event = normalize_event(fname)
            if event is None or not (hooks_dir / fname).is_file():
                continue
            self.register(event, fname, str(Path("hooks") / fname), origin="dir")

    def register(self, event: str, name: str, path: str, origin: str = "runtime") -> Hook:
        hook = Hook(event=event, name=name, path=path, origin=origin)
        self.hooks.setdefault(event, []).append(hook)
        return hook

    def list(self, event: Optional[str] = None) -> List[Hook]:
        if event:
            return list(self.hooks.get(event, []))
        return [h for ev in EVENTS for h in self.hooks.get(ev, [])]

    # -----------------------------
    # Execution
    # -----------------------------
    def environment(self, build_dir: Optional[Path]) -> Dict[str, str]:
        return {
            "PATH": f"/bin:/usr/bin:{self.layout.tools_dir}/bin",
            "PKG_NAME": self.desc.name,
            "PKG_VERSION": self.desc.version,
            "PKG_DIR": str(self.desc.dir or ""),
            "BUILD_DIR": str(build_dir or ""),
            "LFS": str(self.layout.lfs),
        }

    def _resolve(self, hook: Hook) -> Path:
        p = Path(hook.path)
        if p.is_absolute():
            if not self.trusted:
                raise HookError("absolute hook path refused; set build.trust_hooks to allow it",
                                hook=hook.name, path=hook.path)
            return p
        return (self.desc.dir or Path.cwd()) / p

    def _run_one(self, hook: Hook, build_dir: Optional[Path]) -> None:
        path = self._resolve(hook)
        if not path.is_file():
            raise HookError("hook file not found", hook=hook.name, path=str(path))
        logger.info("Running hook %s: %s", hook.event, path)
        cwd = build_dir if build_dir is not None and Path(build_dir).is_dir() else self.desc.dir
        res = self.runner.run(["bash", "-e", str(path)], cwd=cwd, env=self.environment(build_dir),
                              log_path=self.build_log)
        if not res.ok:
            raise HookError(f"hook failed (rc={res.returncode})", hook=hook.name, path=str(path),
                            log=str(self.build_log))

    def run(self, event: str, build_dir: Optional[Path] = None) -> bool:
        """Run every hook registered for `event`. Failures become warnings; returns False if any failed."""
        hooks = [h for h in self.hooks.get(event, []) if h.enabled]
        if not hooks:
            logger.debug("No hook configured: %s", event)
            return True
        ok = True
        for hook in hooks:
            try:
                self._run_one(hook, build_dir)
            except HookError as e:
                ok = False
                self.warnings.warn("hooks", f"{event}: {e.message}", package=self.desc.key, **e.context)
        return ok
