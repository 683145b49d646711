# lfsmeta/construction.py
# -*- coding: utf-8 -*-
"""
construction.py - stage orchestration for one package

Sequence: prepare (fetch, extract, patch) -> configure -> build -> check -> install

- Stage selection keeps the canonical order whatever order the caller lists
  them in; unknown names are warned about and skipped.
- Disk space is checked before the build lock is taken and before anything is
  fetched.
- The build lock is held for the whole run; contention is fatal.
- A progress checkpoint is written after each completed stage so a later run
  can resume after it.
- On success the package database gets a `.meta` record and, when install
  ran, a `.files` manifest.
"""

from __future__ import annotations

import os
import time
import shutil
import tarfile
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

from lfsmeta import descriptor as descriptor_mod
from lfsmeta.buildsystem import BuildDispatcher
from lfsmeta.config import Config, get_config
from lfsmeta.descriptor import Descriptor
from lfsmeta.errors import BuildWarning, DiskSpaceError, MissingWorkDir, UnknownSource
from lfsmeta.fetcher import SourceFetcher
from lfsmeta.fingerprint import compute_fingerprint
from lfsmeta.hooks import HookManager
from lfsmeta.locks import PackageLock
from lfsmeta.logging import WarningLog, get_logger, open_build_log
from lfsmeta.patches import PatchApplier
from lfsmeta.runner import CommandRunner

logger = get_logger("construction")

STAGES = ("prepare", "configure", "build", "check", "install")
ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar.xz", ".txz", ".tar.bz2", ".tbz2", ".tar", ".zip")


# -----------------------------
# Helpers
# -----------------------------
def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


def _split_stages(stages: Union[str, Iterable[str], None]) -> List[str]:
    if stages is None:
        return list(STAGES)
    if isinstance(stages, str):
        stages = stages.split(",")
    return [s.strip().lower() for s in stages if s and s.strip()]


def select_stages(stages: Union[str, Iterable[str], None] = None, from_stage: Optional[str] = None,
                  warnings: Optional[WarningLog] = None) -> List[str]:
    """Requested stages in canonical order, optionally starting at `from_stage`."""
    warnings = warnings if warnings is not None else WarningLog(logger)
    requested = _split_stages(stages)
    for name in requested:
        if name not in STAGES:
            warnings.warn("construction", f"Unknown stage: {name}", stage=name)
    selected = [s for s in STAGES if s in requested]
    if from_stage:
        start = from_stage.strip().lower()
        if start not in STAGES:
            warnings.warn("construction", f"Unknown stage: {from_stage}; ignoring --from", stage=from_stage)
        else:
            selected = [s for s in selected if STAGES.index(s) >= STAGES.index(start)]
    return selected


def is_archive(path: Path) -> bool:
    name = path.name.lower()
    return path.is_file() and name.endswith(ARCHIVE_SUFFIXES)


def extract_archive(archive: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    if archive.name.lower().endswith(".zip"):
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(dest)
        return
    with tarfile.open(str(archive), "r:*") as tar:
        tar.extractall(dest, filter="tar")


def source_root(workdir: Path) -> Path:
    """The single top-level directory of an unpacked tree, else the tree itself."""
    entries = list(workdir.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return workdir


def _nearest_existing(path: Path) -> Path:
    p = path
    while not p.exists() and p.parent != p:
        p = p.parent
    return p


@dataclass
class ConstructionResult:
    package: str
    fingerprint: str
    ran: List[str] = field(default_factory=list)
    warnings: List[BuildWarning] = field(default_factory=list)
    workdir: Optional[Path] = None
    manifest: List[str] = field(default_factory=list)
    manifest_path: Optional[Path] = None
    meta_path: Optional[Path] = None


# -----------------------------
# Orchestrator
# -----------------------------
class Construction:
    def __init__(self, desc: Descriptor, *, config: Optional[Config] = None,
                 runner: Optional[CommandRunner] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.desc = desc
        self.config = config or get_config()
        self.layout = self.config.layout
        self.runner = runner or CommandRunner()
        self.sleep = sleep
        self.warnings = WarningLog(logger)
        self.hooks = HookManager(desc, config=self.config, runner=self.runner, warnings=self.warnings)
        self.workdir = self.layout.work_dir(desc.name, desc.version)
        self.progress_file = self.layout.progress_file(desc.name, desc.version)
        self._fetched: List[Path] = []

    # --- preflight ---
    def preflight(self) -> None:
        needed = self.config.get("build.min_disk_bytes")
        if not needed:
            return
        probe = _nearest_existing(self.layout.build_dir)
        free = shutil.disk_usage(str(probe)).free
        logger.debug("Preflight: %d bytes free on %s, %d required", free, probe, needed)
        if free < needed:
            raise DiskSpaceError(f"Insufficient disk space in {self.layout.build_dir}: "
                                 f"{free // (1024 * 1024)}MB < {needed // (1024 * 1024)}MB",
                                 path=str(probe), free=free, required=needed, package=self.desc.key)

    # --- progress checkpoint ---
    def last_completed(self) -> Optional[str]:
        try:
            stage = self.progress_file.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        return stage if stage in STAGES else None

    def _checkpoint(self, stage: str) -> None:
        _atomic_write(self.progress_file, stage + "\n")

    def _resume_point(self) -> Optional[str]:
        last = self.last_completed()
        if last is None or last == STAGES[-1]:
            logger.info("No resumable checkpoint for %s; starting from the beginning", self.desc.key)
            return None
        nxt = STAGES[STAGES.index(last) + 1]
        logger.info("Resuming %s after '%s' at '%s'", self.desc.key, last, nxt)
        return nxt

    # --- working tree ---
    def _source_dir(self, stage: str) -> Path:
        if not self.workdir.is_dir():
            raise MissingWorkDir("working directory does not exist; run the prepare stage first",
                                 stage=stage, path=str(self.workdir), package=self.desc.key)
        return source_root(self.workdir)

    def _hook_dir(self) -> Optional[Path]:
        return source_root(self.workdir) if self.workdir.is_dir() else None

    def _populate(self) -> None:
        archives = [p for p in self._fetched if is_archive(p)]
        checkouts = [p for p in self._fetched if p.is_dir()]
        if archives:
            logger.info("Extracting %s into %s", archives[0], self.workdir)
            try:
                extract_archive(archives[0], self.workdir)
            except (tarfile.TarError, zipfile.BadZipFile, OSError) as e:
                raise UnknownSource(f"cannot extract source archive: {e}", path=str(archives[0]),
                                    package=self.desc.key) from e
        elif checkouts:
            logger.info("Copying git checkout %s -> %s", checkouts[0], self.workdir)
            shutil.copytree(checkouts[0], self.workdir, dirs_exist_ok=True,
                            ignore=shutil.ignore_patterns(".git"))
        elif self.desc.dir is not None and self.desc.dir.is_dir():
            self.warnings.warn("construction", "No archive or git checkout found in cache; "
                                               "using the descriptor directory as source",
                               package=self.desc.key, path=str(self.desc.dir))
            shutil.copytree(self.desc.dir, self.workdir, dirs_exist_ok=True)
        else:
            self.warnings.warn("construction", "No sources to unpack", package=self.desc.key)

    # --- stages ---
    def _prepare(self, force: bool) -> None:
        self.hooks.run("pre-fetch", self._hook_dir())
        fetcher = SourceFetcher(self.desc, config=self.config, runner=self.runner, sleep=self.sleep,
                                warnings=self.warnings)
        self._fetched = fetcher.fetch_all(force=force).files
        self.hooks.run("post-fetch", self._hook_dir())

        if self.workdir.exists():
            shutil.rmtree(self.workdir)
        self.workdir.mkdir(parents=True)
        self._populate()
        root = source_root(self.workdir)
        PatchApplier(self.desc, config=self.config, runner=self.runner, sleep=self.sleep).apply_all(root)
        logger.info("Prepared build directory %s", root)

    def _dispatcher(self, stage: str, jobs: Optional[int]) -> BuildDispatcher:
        return BuildDispatcher(self.desc, self._source_dir(stage), config=self.config, runner=self.runner,
                               jobs=jobs, warnings=self.warnings)

    def _write_records(self, result: ConstructionResult, installed: bool) -> None:
        if installed:
            path = self.layout.manifest_file(self.desc.name, self.desc.version)
            _atomic_write(path, "".join(f"{f}\n" for f in result.manifest))
            result.manifest_path = path
            logger.info("Installation completed; manifest at %s", path)
        meta = self.layout.meta_file(self.desc.name, self.desc.version)
        lines = [
            f"name={self.desc.name}",
            f"version={self.desc.version}",
            f"build_date={datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')}",
            f"origin={self.desc.www or 'unknown'}",
            f"fingerprint={result.fingerprint}",
        ]
        _atomic_write(meta, "\n".join(lines) + "\n")
        result.meta_path = meta

    def run(self, stages: Union[str, Iterable[str], None] = None, from_stage: Optional[str] = None,
            resume: bool = False, force: bool = False, destdir: Optional[Path] = None,
            jobs: Optional[int] = None) -> ConstructionResult:
        result = ConstructionResult(package=self.desc.key, fingerprint=compute_fingerprint(self.desc))
        if resume and not from_stage:
            from_stage = self._resume_point()
        selected = select_stages(stages, from_stage, warnings=self.warnings)
        destdir = Path(destdir) if destdir else self.layout.lfs

        self.preflight()
        lock = PackageLock(self.layout, self.desc.name, self.desc.version, "build").acquire()
        try:
            with open_build_log(self.desc.log or self.layout.log_file(self.desc.name, self.desc.version)):
                logger.info("Construction of %s: stages=%s", self.desc.key, ",".join(selected) or "<none>")
                for stage in selected:
                    self.hooks.run(f"pre-{stage}", self._hook_dir())
                    if stage == "prepare":
                        self._prepare(force)
                    elif stage == "install":
                        outcome = self._dispatcher(stage, jobs).install(destdir)
                        result.manifest = outcome.manifest
                    else:
                        self._dispatcher(stage, jobs).run_stage(stage)
                    self.hooks.run(f"post-{stage}", self._hook_dir())
                    self._checkpoint(stage)
                    result.ran.append(stage)
                result.workdir = self._hook_dir()
                if not result.ran:
                    logger.info("No stages selected for %s; nothing recorded", self.desc.key)
                else:
                    self._write_records(result, installed="install" in result.ran)
                    logger.info("Construction finished for %s", self.desc.key)
        finally:
            lock.release()
        result.warnings = list(self.warnings.items)
        return result


def mf_construction(desc: Union[Descriptor, str, Path], *, config: Optional[Config] = None,
                    runner: Optional[CommandRunner] = None, sleep: Callable[[float], None] = time.sleep,
                    stages: Union[str, Iterable[str], None] = None, from_stage: Optional[str] = None,
                    resume: bool = False, force: bool = False, destdir: Optional[Path] = None,
                    jobs: Optional[int] = None) -> ConstructionResult:
    cfg = config or get_config()
    if not isinstance(desc, Descriptor):
        desc = descriptor_mod.load(desc, layout=cfg.layout)
    return Construction(desc, config=cfg, runner=runner, sleep=sleep).run(
        stages=stages, from_stage=from_stage, resume=resume, force=force, destdir=destdir, jobs=jobs)
