# lfsmeta/buildsystem.py
# -*- coding: utf-8 -*-
"""
buildsystem.py - build toolchain detection and stage execution

API:
  system = detect_build_system(workdir)
  bd = BuildDispatcher(descriptor, workdir, config=cfg, runner=runner)
  bd.configure(); bd.build(); bd.check(); bd.install(destdir)

Behaviour:
  - An explicit [build] system in the descriptor wins; "auto" inspects the
    working tree for marker files.
  - Each stage runs the descriptor override command when present, otherwise
    the toolchain default template.
  - configure/build failures raise BuildSystemError, install failures raise
    InstallError, check failures are recorded as warnings.
  - A successful install produces the manifest of regular files under the
    destination directory.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from lfsmeta.config import Config, get_config
from lfsmeta.descriptor import Descriptor
from lfsmeta.errors import BuildSystemError, InstallError, MissingWorkDir
from lfsmeta.logging import WarningLog, get_logger
from lfsmeta.runner import CommandRunner

logger = get_logger("buildsystem")

BUILD_SYSTEMS = ("autotools", "make", "cmake", "cargo", "python", "node", "unknown")
BUILD_STAGES = ("configure", "build", "check", "install")

# first match wins
_MARKERS: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("configure", "autogen.sh"), "autotools"),
    (("CMakeLists.txt",), "cmake"),
    (("pyproject.toml", "setup.py"), "python"),
    (("package.json",), "node"),
    (("Cargo.toml",), "cargo"),
    (("Makefile", "makefile", "GNUmakefile"), "make"),
)

# None means the toolchain has no such step
DEFAULT_COMMANDS: Dict[str, Dict[str, Optional[str]]] = {
    "autotools": {
        "configure": "./configure --prefix={prefix} {options}",
        "build": "make -j{jobs}",
        "check": "make check",
        "install": "make install DESTDIR={destdir}",
    },
    "make": {
        "configure": None,
        "build": "make -j{jobs}",
        "check": "make check",
        "install": "make install DESTDIR={destdir}",
    },
    "cmake": {
        "configure": "cmake -S . -B build -DCMAKE_INSTALL_PREFIX={prefix} {options}",
        "build": "cmake --build build -j{jobs}",
        "check": "ctest --test-dir build",
        "install": "DESTDIR={destdir} cmake --install build",
    },
    "cargo": {
        "configure": None,
        "build": "cargo build --release -j{jobs}",
        "check": "cargo test --release",
        "install": "cargo install --root {destdir} --path .",
    },
    "python": {
        "configure": None,
        "build": "python -m build --wheel",
        "check": "python -m pytest",
        "install": "python -m pip install --root={destdir} --prefix={prefix} .",
    },
    "node": {
        "configure": "npm ci",
        "build": "npm run build",
        "check": "npm test",
        "install": "npm install --prefix {destdir}",
    },
    "unknown": {
        "configure": None,
        "build": None,
        "check": None,
        "install": None,
    },
}


# --- detect build system ---
def detect_build_system(workdir: Path) -> str:
    """
    Heuristics on the top level of workdir:
      configure/autogen.sh, CMakeLists.txt, pyproject.toml/setup.py,
      package.json, Cargo.toml, Makefile; otherwise 'unknown'.
    """
    p = Path(workdir)
    for markers, system in _MARKERS:
        if any((p / m).is_file() for m in markers):
            return system
    return "unknown"


def resolve_build_system(desc: Descriptor, workdir: Path) -> str:
    system = (desc.build.system or "auto").strip().lower()
    if system and system != "auto":
        return system
    return detect_build_system(workdir)


def generate_manifest(destdir: Path) -> List[str]:
    """Regular files under destdir, relative to it, sorted."""
    root = Path(destdir)
    files: List[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in filenames:
            full = Path(dirpath) / name
            if full.is_file() and not full.is_symlink():
                files.append(full.relative_to(root).as_posix())
    return sorted(files)


@dataclass
class StageResult:
    stage: str
    system: str
    command: Optional[str] = None
    returncode: Optional[int] = None
    skipped: bool = False
    manifest: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.skipped or self.returncode == 0


class BuildDispatcher:
    def __init__(self, desc: Descriptor, workdir: Path, *, config: Optional[Config] = None,
                 runner: Optional[CommandRunner] = None, jobs: Optional[int] = None,
                 warnings: Optional[WarningLog] = None):
        self.desc = desc
        self.workdir = Path(workdir)
        self.config = config or get_config()
        self.runner = runner or CommandRunner()
        self.jobs = int(jobs or self.config.get("build.jobs", 1) or 1)
        self.warnings = warnings if warnings is not None else WarningLog(logger)
        layout = self.config.layout
        self.build_log = desc.build_log or layout.build_log_file(desc.name, desc.version)
        self._system: Optional[str] = None

    @property
    def system(self) -> str:
        if self._system is None:
            self._require_workdir("detect")
            self._system = resolve_build_system(self.desc, self.workdir)
            logger.info("Detected build system: %s", self._system)
        return self._system

    def _require_workdir(self, stage: str) -> None:
        if not self.workdir.is_dir():
            raise MissingWorkDir("working directory does not exist; run the prepare stage first",
                                 stage=stage, path=str(self.workdir), package=self.desc.key)

    # --- environment assembly ---
    def environment(self, destdir: Optional[Path] = None) -> Dict[str, str]:
        env = dict(self.desc.environment)
        env.setdefault("JOBS", str(self.jobs))
        env.setdefault("MAKEFLAGS", f"-j{self.jobs}")
        env.setdefault("PREFIX", self.desc.build.prefix)
        if destdir is not None:
            env["DESTDIR"] = str(destdir)
        return env

    def command_for(self, stage: str, destdir: Optional[Path] = None) -> Optional[str]:
        """Descriptor override first, then the toolchain template; None when no step exists."""
        if stage not in BUILD_STAGES:
            raise ValueError(f"unknown build stage '{stage}'")
        override = self.desc.build.command(stage)
        if override:
            return override
        template = DEFAULT_COMMANDS.get(self.system, DEFAULT_COMMANDS["unknown"]).get(stage)
        if template is None:
            return None
        return template.format(
            prefix=shlex.quote(self.desc.build.prefix),
            options=self.desc.build.options,
            jobs=self.jobs,
            destdir=shlex.quote(str(destdir)) if destdir is not None else "",
        ).strip()

    def _execute(self, stage: str, cmd: str, destdir: Optional[Path] = None) -> StageResult:
        logger.info("Running %s (%s): %s", stage, self.system, cmd)
        res = self.runner.run(cmd, cwd=self.workdir, env=self.environment(destdir), log_path=self.build_log)
        return StageResult(stage=stage, system=self.system, command=cmd, returncode=res.returncode)

    def _skipped(self, stage: str, warn: bool) -> StageResult:
        if warn:
            self.warnings.warn("buildsystem", f"No {stage} command for build system '{self.system}'; skipping {stage}",
                               package=self.desc.key, stage=stage)
        else:
            logger.info("No %s step for %s-based project", stage, self.system)
        return StageResult(stage=stage, system=self.system, skipped=True)

    # --- stages ---
    def configure(self) -> StageResult:
        self._require_workdir("configure")
        if self.system == "autotools" and not self.desc.build.configure:
            self._autogen()
        cmd = self.command_for("configure")
        if cmd is None:
            return self._skipped("configure", warn=self.system == "unknown")
        result = self._execute("configure", cmd)
        if not result.ok:
            raise BuildSystemError("configure failed", stage="configure", returncode=result.returncode,
                                   package=self.desc.key, command=cmd, log=str(self.build_log))
        logger.info("Configure step completed")
        return result

    def _autogen(self) -> None:
        if (self.workdir / "configure").is_file() or not (self.workdir / "autogen.sh").is_file():
            return
        res = self.runner.run("sh autogen.sh", cwd=self.workdir, env=self.environment(), log_path=self.build_log)
        if not res.ok:
            self.warnings.warn("buildsystem", "autogen.sh failed", package=self.desc.key,
                               returncode=res.returncode)

    def build(self) -> StageResult:
        self._require_workdir("build")
        cmd = self.command_for("build")
        if cmd is None:
            return self._skipped("build", warn=True)
        result = self._execute("build", cmd)
        if not result.ok:
            raise BuildSystemError("build failed", stage="build", returncode=result.returncode,
                                   package=self.desc.key, command=cmd, log=str(self.build_log))
        logger.info("Build step completed")
        return result

    def check(self) -> StageResult:
        self._require_workdir("check")
        cmd = self.command_for("check")
        if cmd is None:
            logger.info("No check step defined")
            return StageResult(stage="check", system=self.system, skipped=True)
        result = self._execute("check", cmd)
        if not result.ok:
            self.warnings.warn("buildsystem", "Check failed; continuing", package=self.desc.key,
                               command=cmd, returncode=result.returncode, log=str(self.build_log))
        else:
            logger.info("Check succeeded")
        return result

    def install(self, destdir: Path) -> StageResult:
        self._require_workdir("install")
        destdir = Path(destdir)
        destdir.mkdir(parents=True, exist_ok=True)
        cmd = self.command_for("install", destdir=destdir)
        if cmd is None:
            result = self._skipped("install", warn=True)
        else:
            result = self._execute("install", cmd, destdir=destdir)
            if not result.ok:
                raise InstallError("install failed", returncode=result.returncode, package=self.desc.key,
                                   command=cmd, destdir=str(destdir), log=str(self.build_log))
        result.manifest = generate_manifest(destdir)
        logger.info("Installation completed (%d files)", len(result.manifest))
        return result

    def run_stage(self, stage: str, destdir: Optional[Path] = None) -> StageResult:
        if stage == "install":
            if destdir is None:
                raise ValueError("install stage needs a destination directory")
            return self.install(destdir)
        return getattr(self, stage)()
