# lfsmeta/fetcher.py
"""
fetcher.py - source download/cache/verify layer

Features:
- Source variants: http(s)/ftp/file URLs, mirror:: URLs, git:: repositories, local files
- Per-package source cache ({sources_cache}/{name}-{version}); cached artifacts reused unless forced
- Downloads go to a .part sibling and are renamed into place only on success
- Bounded retries with a fixed backoff; first available of curl/wget
- Checksum verification (sha256 by default, "sha512:"/"blake2b:" prefixes accepted)
- git checkouts archived deterministically so they can be checksummed
- Best-effort download lock: contention is a warning, not an error
"""

from __future__ import annotations

import os
import time
import shutil
import hashlib
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlsplit, unquote

from lfsmeta.config import Config, Layout, get_config
from lfsmeta.descriptor import Descriptor, GitSource, LocalSource, MirrorSource, Source, UrlSource
from lfsmeta.errors import BuildWarning, ChecksumMismatch, DownloadError, LockBusy, NoDownloadTool, UnknownSource
from lfsmeta.locks import PackageLock
from lfsmeta.logging import WarningLog, get_logger
from lfsmeta.runner import CommandRunner

logger = get_logger("fetcher")

_HASHES = {
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
    "blake2b": hashlib.blake2b,
}


# -----------------------------------------------------------------------
# Checksum helpers
# -----------------------------------------------------------------------
def normalize_checksum(value: str) -> Tuple[str, str]:
    """Accept "hex" (sha256) or "algo:hex"; return (algo, lowercase hex)."""
    s = value.strip()
    if ":" in s:
        algo, digest = s.split(":", 1)
        algo = algo.strip().lower()
    else:
        algo, digest = "sha256", s
    if algo not in _HASHES:
        raise ValueError(f"unsupported checksum algorithm '{algo}'")
    return algo, digest.strip().lower()


def file_digest(path: Path, algo: str = "sha256") -> str:
    h = _HASHES[algo]()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def verify_checksum(path: Path, expected: str, **context) -> str:
    """Raise ChecksumMismatch unless `path` hashes to `expected`. Returns the digest."""
    try:
        algo, want = normalize_checksum(expected)
    except ValueError as e:
        raise ChecksumMismatch(str(e), expected=expected, path=str(path), **context) from e
    got = file_digest(path, algo)
    if got != want:
        raise ChecksumMismatch(f"checksum mismatch for {path.name}", expected=want, got=got,
                               path=str(path), **context)
    logger.debug("%s %s verified for %s", algo, got, path)
    return got


def url_basename(url: str) -> str:
    """Destination filename for a URL (query/fragment stripped)."""
    parts = urlsplit(url)
    return os.path.basename(unquote(parts.path).rstrip("/"))


# -----------------------------------------------------------------------
# Deterministic archive of a checkout
# -----------------------------------------------------------------------
def _normalized_info(tar: tarfile.TarFile, path: Path, arcname: str) -> tarfile.TarInfo:
    ti = tar.gettarinfo(str(path), arcname=arcname)
    ti.mtime = 0
    ti.uid = ti.gid = 0
    ti.uname = ti.gname = ""
    if ti.isdir():
        ti.mode = 0o755
    elif ti.isreg():
        ti.mode = 0o755 if ti.mode & 0o111 else 0o644
    return ti


def archive_tree(src: Path, out: Path) -> Path:
    """Write src (minus .git) to out as a reproducible .tar.xz."""
    entries: List[str] = []
    for root, dirs, files in os.walk(src):
        dirs[:] = sorted(d for d in dirs if d != ".git")
        rel_root = os.path.relpath(root, src)
        for name in dirs + sorted(files):
            entries.append(os.path.normpath(os.path.join(rel_root, name)))
    entries.sort()
    tmp = out.with_name(out.name + ".part")
    try:
        with tarfile.open(str(tmp), "w:xz", format=tarfile.GNU_FORMAT) as tar:
            for rel in entries:
                full = src / rel
                ti = _normalized_info(tar, full, rel)
                if ti.isreg():
                    with open(full, "rb") as fh:
                        tar.addfile(ti, fh)
                else:
                    tar.addfile(ti)
        os.replace(tmp, out)
    finally:
        if tmp.exists():
            tmp.unlink()
    return out


# -----------------------------------------------------------------------
# Fetcher
# -----------------------------------------------------------------------
@dataclass
class FetchResult:
    files: List[Path] = field(default_factory=list)
    warnings: List[BuildWarning] = field(default_factory=list)
    lock_acquired: bool = False


class SourceFetcher:
    """Materializes every source of one descriptor into its cache directory."""

    def __init__(self, desc: Descriptor, *, config: Optional[Config] = None,
                 runner: Optional[CommandRunner] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 warnings: Optional[WarningLog] = None):
        self.desc = desc
        self.config = config or get_config()
        self.layout: Layout = self.config.layout
        self.runner = runner or CommandRunner()
        self.sleep = sleep
        self.warnings = warnings if warnings is not None else WarningLog(logger)
        fetch_cfg = self.config.get("fetch", {}) or {}
        self.retries = max(1, int(fetch_cfg.get("retries", 3)))
        self.backoff = int(fetch_cfg.get("backoff", 5))
        self.timeout = int(fetch_cfg.get("timeout", 300))
        self.connect_timeout = int(fetch_cfg.get("connect_timeout", 15))
        self.allow_no_checksum = bool(fetch_cfg.get("allow_no_checksum", False))
        self.tools: List[str] = list(fetch_cfg.get("tools") or ["curl", "wget"])
        self.cache_dir = desc.source_cache_dir or self.layout.source_cache(desc.name, desc.version)
        self.build_log = desc.build_log or self.layout.build_log_file(desc.name, desc.version)

    # -------------------------
    # entry point
    # -------------------------
    def fetch_all(self, force: bool = False) -> FetchResult:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        first_warning = len(self.warnings)
        lock = PackageLock(self.layout, self.desc.name, self.desc.version, "download")
        result = FetchResult()
        try:
            lock.acquire()
            result.lock_acquired = True
        except LockBusy as e:
            self.warnings.warn("fetcher", "Could not acquire download lock; another process may be downloading",
                               package=self.desc.key, lock=e.context.get("lock"))
        try:
            for idx, src in enumerate(self.desc.sources):
                logger.info("Processing source #%d: %s", idx + 1, src.spec)
                result.files.append(self.fetch_one(idx, src, force=force))
        finally:
            lock.release()
        result.warnings = list(self.warnings.items[first_warning:])
        logger.info("All sources fetched/verified for %s", self.desc.key)
        return result

    def fetch_one(self, idx: int, src: Source, force: bool = False) -> Path:
        checksum = self.desc.checksum_for(idx)
        if isinstance(src, GitSource):
            return self._fetch_git(idx, src, checksum, force)
        if isinstance(src, (UrlSource, MirrorSource)):
            return self._fetch_url(idx, src.url, checksum, force)
        if isinstance(src, LocalSource):
            return self._fetch_local(idx, src, checksum)
        raise UnknownSource("unknown source format", source=str(src), package=self.desc.key)

    # -------------------------
    # checksum policy
    # -------------------------
    def _no_checksum(self, label: str) -> None:
        if self.allow_no_checksum:
            logger.debug("No checksum provided for %s", label)
            return
        self.warnings.warn("fetcher", "No checksum provided and fetch.allow_no_checksum is false; "
                                      "continuing without verification",
                           package=self.desc.key, url=label)

    # -------------------------
    # url / mirror
    # -------------------------
    def _download_argv(self, tool: str, url: str, part: Path) -> List[str]:
        if tool == "curl":
            return ["curl", "-L", "--fail", "--connect-timeout", str(self.connect_timeout),
                    "--max-time", str(self.timeout), "-o", str(part), url]
        if tool == "wget":
            return ["wget", "--tries=1", f"--timeout={self.connect_timeout}", "-O", str(part), url]
        raise ValueError(f"unsupported download tool '{tool}'")

    def _pick_tool(self, url: str) -> str:
        for tool in self.tools:
            if tool in ("curl", "wget") and self.runner.which(tool):
                return tool
        raise NoDownloadTool(f"No download tool ({'/'.join(self.tools)}) available", url=url,
                             package=self.desc.key)

    def download(self, url: str, dest: Path) -> Path:
        """Download url to dest atomically, retrying up to `retries` times."""
        tool = self._pick_tool(url)
        dest.parent.mkdir(parents=True, exist_ok=True)
        part = dest.with_name(dest.name + ".part")
        logger.info("Downloading %s -> %s (%s)", url, dest, tool)
        for attempt in range(1, self.retries + 1):
            if part.exists():
                part.unlink()
            res = self.runner.run(self._download_argv(tool, url, part), cwd=dest.parent,
                                  log_path=self.build_log, timeout=self.timeout + self.connect_timeout)
            if res.ok and part.is_file():
                os.replace(part, dest)
                return dest
            if part.exists():
                part.unlink()
            if attempt < self.retries:
                logger.warning("Download attempt %d failed for %s, backing off %ss", attempt, url, self.backoff)
                self.sleep(self.backoff)
        raise DownloadError(f"Failed to download after {self.retries} attempts", url=url,
                            package=self.desc.key, log=str(self.build_log))

    def _fetch_url(self, idx: int, url: str, checksum: Optional[str], force: bool) -> Path:
        fname = url_basename(url) or f"source-{idx + 1}"
        out = self.cache_dir / fname
        if out.is_file() and not force:
            logger.info("Using cached source %s", out)
        else:
            self.download(url, out)
        if checksum:
            try:
                verify_checksum(out, checksum, url=url, package=self.desc.key)
            except ChecksumMismatch:
                out.unlink()
                logger.error("Checksum mismatch for %s; removed from cache", out)
                raise
        else:
            self._no_checksum(url)
        return out

    # -------------------------
    # git
    # -------------------------
    def _git(self, args: List[str], cwd: Optional[Path] = None):
        return self.runner.run(["git"] + args, cwd=cwd, log_path=self.build_log)

    def _fetch_git(self, idx: int, src: GitSource, checksum: Optional[str], force: bool) -> Path:
        n = idx + 1
        dest = self.cache_dir / f"git-{n}"
        tarball = self.cache_dir / f"git-{n}.tar.xz"
        if dest.is_dir() and not force:
            logger.info("Using cached git clone %s", dest)
        else:
            if not self.runner.which("git"):
                raise NoDownloadTool("git is not available", url=src.uri, package=self.desc.key)
            if dest.exists():
                shutil.rmtree(dest)
            if tarball.exists():
                tarball.unlink()
            logger.info("Cloning %s into %s", src.uri, dest)
            res = self._git(["clone", "--depth", "1", "--no-single-branch", src.uri, str(dest)])
            if not res.ok:
                if dest.exists():
                    shutil.rmtree(dest, ignore_errors=True)
                raise DownloadError("git clone failed", url=src.uri, package=self.desc.key,
                                    log=str(self.build_log))
            if src.ref:
                if not self._git(["fetch", "--tags", "origin", "+refs/tags/*:refs/tags/*"], cwd=dest).ok:
                    self.warnings.warn("fetcher", "git fetch of tags failed", url=src.uri, ref=src.ref)
                if not self._git(["checkout", src.ref], cwd=dest).ok:
                    self.warnings.warn("fetcher", "git checkout of ref failed; keeping cloned HEAD",
                                       url=src.uri, ref=src.ref)
            try:
                archive_tree(dest, tarball)
            except (OSError, tarfile.TarError) as e:
                self.warnings.warn("fetcher", f"could not archive git checkout: {e}", path=str(dest))
        if checksum:
            if tarball.is_file():
                try:
                    verify_checksum(tarball, checksum, url=src.uri, package=self.desc.key)
                except ChecksumMismatch:
                    tarball.unlink()
                    shutil.rmtree(dest, ignore_errors=True)
                    logger.error("Checksum mismatch for git-derived tarball %s; removed from cache", tarball)
                    raise
            else:
                self.warnings.warn("fetcher", "No tarball created for git source; cannot verify checksum",
                                   url=src.uri, package=self.desc.key)
        else:
            self._no_checksum(src.spec)
        return dest

    # -------------------------
    # local path
    # -------------------------
    def _resolve_local(self, src: LocalSource) -> Path:
        p = Path(src.path).expanduser()
        if not p.is_absolute() and self.desc.dir is not None:
            p = self.desc.dir / p
        return p

    def _fetch_local(self, idx: int, src: LocalSource, checksum: Optional[str]) -> Path:
        path = self._resolve_local(src)
        if not path.is_file() or not os.access(path, os.R_OK):
            raise UnknownSource("Unknown source format or file not found", source=src.spec,
                                path=str(path), package=self.desc.key)
        logger.info("Found local source %s", path)
        if checksum:
            verify_checksum(path, checksum, source=src.spec, package=self.desc.key)
        cached = self.cache_dir / path.name
        if cached.resolve() == path.resolve():
            return cached
        try:
            shutil.copy2(path, cached)
            return cached
        except OSError as e:
            self.warnings.warn("fetcher", f"could not copy local source into cache: {e}", path=str(path))
            return path


# -----------------------------------------------------------------------
# Module-level API
# -----------------------------------------------------------------------
def fetch_sources(desc: Descriptor, force: bool = False, *, config: Optional[Config] = None,
                  runner: Optional[CommandRunner] = None,
                  sleep: Callable[[float], None] = time.sleep,
                  warnings: Optional[WarningLog] = None) -> FetchResult:
    fetcher = SourceFetcher(desc, config=config, runner=runner, sleep=sleep, warnings=warnings)
    return fetcher.fetch_all(force=force)


def download_file(desc: Descriptor, url: str, dest: Path, *, config: Optional[Config] = None,
                  runner: Optional[CommandRunner] = None,
                  sleep: Callable[[float], None] = time.sleep) -> Path:
    return SourceFetcher(desc, config=config, runner=runner, sleep=sleep).download(url, dest)
