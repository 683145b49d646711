# lfsmeta/patches.py
"""
patches.py - ordered patch application for a prepared working tree

Responsibilities:
- Resolve patch references: URLs are downloaded into the source cache as
  patch-<n>.patch, other references are relative to the descriptor directory.
- Apply patches strictly in declared order with `patch -p1` first and, when
  build.patch_fallback is on, -p0 and -p2 as recovery attempts.
- Every strip level is checked with --dry-run before the real run, so a
  failed attempt never leaves half-applied hunks behind.
- A failing patch is copied to the log directory and reported with its index;
  later patches are not attempted.
"""

from __future__ import annotations

import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from lfsmeta.config import Config, get_config
from lfsmeta.descriptor import Descriptor
from lfsmeta.errors import DownloadError, NoDownloadTool, PatchApplyError
from lfsmeta.fetcher import download_file
from lfsmeta.logging import get_logger
from lfsmeta.runner import CommandRunner

logger = get_logger("patches")

_REMOTE_RE = re.compile(r"^(https?|ftp)://")
STRICT_STRIP = 1
FALLBACK_STRIPS = (0, 2)


@dataclass(frozen=True)
class AppliedPatch:
    index: int      # 1-based, as reported in logs
    ref: str        # reference as written in the descriptor
    path: Path
    strip: int


class PatchApplier:
    def __init__(self, desc: Descriptor, *, config: Optional[Config] = None,
                 runner: Optional[CommandRunner] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.desc = desc
        self.config = config or get_config()
        self.layout = self.config.layout
        self.runner = runner or CommandRunner()
        self.sleep = sleep
        self.fallback = bool(self.config.get("build.patch_fallback", True))
        self.build_log = desc.build_log or self.layout.build_log_file(desc.name, desc.version)

    def strip_levels(self) -> List[int]:
        levels = [STRICT_STRIP]
        if self.fallback:
            levels.extend(FALLBACK_STRIPS)
        return levels

    def resolve(self, index: int, ref: str) -> Path:
        if _REMOTE_RE.match(ref):
            cache = self.desc.source_cache_dir or self.layout.source_cache(self.desc.name, self.desc.version)
            path = cache / f"patch-{index}.patch"
            if not path.is_file():
                logger.info("Downloading patch %s", ref)
                try:
                    download_file(self.desc, ref, path, config=self.config, runner=self.runner, sleep=self.sleep)
                except (DownloadError, NoDownloadTool) as e:
                    raise PatchApplyError(f"could not download patch: {e.message}", index=index, patch=ref,
                                          package=self.desc.key) from e
            return path
        path = Path(ref).expanduser()
        if not path.is_absolute() and self.desc.dir is not None:
            path = self.desc.dir / path
        return path

    def _patch(self, strip: int, path: Path, workdir: Path, dry_run: bool) -> bool:
        argv = ["patch", f"-p{strip}", "--batch", "--forward", "-i", str(path)]
        if dry_run:
            argv.insert(1, "--dry-run")
        return self.runner.run(argv, cwd=workdir, log_path=self.build_log).ok

    def _save_failed(self, index: int, path: Path) -> Path:
        dest = self.layout.failed_patch_file(self.desc.name, index)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, dest)
        except OSError as e:
            logger.warning("could not save failed patch %s: %s", path, e)
        return dest

    def apply_one(self, index: int, ref: str, workdir: Path) -> AppliedPatch:
        logger.info("Applying patch #%d: %s", index, ref)
        path = self.resolve(index, ref)
        if not path.is_file():
            raise PatchApplyError("Patch not found", index=index, patch=str(path), package=self.desc.key)
        if not self.runner.which("patch"):
            raise PatchApplyError("patch tool not available", index=index, patch=str(path), package=self.desc.key)
        for strip in self.strip_levels():
            if self._patch(strip, path, workdir, dry_run=True) and self._patch(strip, path, workdir, dry_run=False):
                logger.info("Patch applied with -p%d", strip)
                return AppliedPatch(index=index, ref=ref, path=path, strip=strip)
            logger.debug("Patch -p%d failed for %s", strip, path)
        saved = self._save_failed(index, path)
        raise PatchApplyError("Failed to apply patch", index=index, patch=str(path),
                              package=self.desc.key, saved=str(saved), log=str(self.build_log))

    def apply_all(self, workdir: Path) -> List[AppliedPatch]:
        if not self.desc.patches:
            logger.debug("No patches to apply")
            return []
        applied = [self.apply_one(i, ref, workdir) for i, ref in enumerate(self.desc.patches, start=1)]
        logger.info("All patches applied (%d)", len(applied))
        return applied


def apply_patches(desc: Descriptor, workdir: Path, *, config: Optional[Config] = None,
                  runner: Optional[CommandRunner] = None,
                  sleep: Callable[[float], None] = time.sleep) -> List[AppliedPatch]:
    return PatchApplier(desc, config=config, runner=runner, sleep=sleep).apply_all(Path(workdir))
