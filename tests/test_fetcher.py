import hashlib

import pytest

from lfsmeta import locks
from lfsmeta.errors import ChecksumMismatch, DownloadError, NoDownloadTool, UnknownSource
from lfsmeta.fetcher import SourceFetcher, archive_tree, fetch_sources, normalize_checksum, url_basename
from lfsmeta.logging import WarningLog

URL = "https://example.org/dist/foo-1.0.tar.gz"
PAYLOAD = b"foo tarball bytes"
SHA = hashlib.sha256(PAYLOAD).hexdigest()


def _recipe(sources: str) -> str:
    return f"[package]\nname = foo\nversion = 1.0\n\n[sources]\n{sources}\n"


def _fetch(desc, cfg, runner, sleep, **kw):
    return fetch_sources(desc, config=cfg, runner=runner, sleep=sleep, warnings=WarningLog(), **kw)


def test_url_with_checksum(write_descriptor, cfg, runner, sleep):
    runner.payloads[URL] = PAYLOAD
    desc = write_descriptor(_recipe(f"s1 = {URL}\nsha256_s1 = {SHA}"))
    result = _fetch(desc, cfg, runner, sleep)
    out = desc.source_cache_dir / "foo-1.0.tar.gz"
    assert result.files == [out]
    assert out.read_bytes() == PAYLOAD
    assert not out.with_name(out.name + ".part").exists()
    assert result.warnings == []
    assert result.lock_acquired
    curl = runner.commands("curl")[0]
    assert "--connect-timeout 15" in curl and "--max-time 300" in curl


def test_cached_source_is_reused(write_descriptor, cfg, runner, sleep):
    runner.payloads[URL] = PAYLOAD
    desc = write_descriptor(_recipe(f"s1 = {URL}\nsha256_s1 = {SHA}"))
    _fetch(desc, cfg, runner, sleep)
    _fetch(desc, cfg, runner, sleep)
    assert len(runner.commands("curl")) == 1
    _fetch(desc, cfg, runner, sleep, force=True)
    assert len(runner.commands("curl")) == 2


def test_checksum_mismatch_removes_artifact(write_descriptor, cfg, runner, sleep):
    runner.payloads[URL] = b"tampered"
    desc = write_descriptor(_recipe(f"s1 = {URL}\nsha256_s1 = {SHA}"))
    with pytest.raises(ChecksumMismatch) as exc:
        _fetch(desc, cfg, runner, sleep)
    assert exc.value.expected == SHA
    assert exc.value.exit_code == 14
    assert not (desc.source_cache_dir / "foo-1.0.tar.gz").exists()


def test_missing_checksum_warns_by_default(write_descriptor, cfg, runner, sleep):
    desc = write_descriptor(_recipe(f"s1 = {URL}"))
    result = _fetch(desc, cfg, runner, sleep)
    assert len(result.warnings) == 1
    assert "No checksum" in result.warnings[0].message


def test_empty_checksum_counts_as_absent(write_descriptor, cfg, runner, sleep):
    desc = write_descriptor(_recipe(f"s1 = {URL}\nsha256_s1 ="))
    result = _fetch(desc, cfg, runner, sleep)
    assert [w.message for w in result.warnings if "No checksum" in w.message]


def test_allow_no_checksum_is_silent(write_descriptor, runner, sleep, lfs_root):
    from lfsmeta.config import build_config
    cfg = build_config({"paths": {"lfs": str(lfs_root)}, "fetch": {"allow_no_checksum": True}})
    desc = write_descriptor(_recipe(f"s1 = mirror::{URL}"))
    result = _fetch(desc, cfg, runner, sleep)
    assert result.warnings == []


def test_retries_with_backoff(write_descriptor, cfg, runner, sleep, sleeps):
    runner.fail("curl", times=2)
    desc = write_descriptor(_recipe(f"s1 = {URL}"))
    _fetch(desc, cfg, runner, sleep)
    assert len(runner.commands("curl")) == 3
    assert sleeps == [2, 2]


def test_download_gives_up_after_retries(write_descriptor, cfg, runner, sleep, sleeps):
    runner.fail("curl")
    desc = write_descriptor(_recipe(f"s1 = {URL}"))
    with pytest.raises(DownloadError) as exc:
        _fetch(desc, cfg, runner, sleep)
    assert exc.value.exit_code == 13
    assert len(runner.commands("curl")) == 3
    assert sleeps == [2, 2]
    out = desc.source_cache_dir / "foo-1.0.tar.gz"
    assert not out.exists()
    assert not out.with_name(out.name + ".part").exists()


def test_wget_used_when_curl_missing(write_descriptor, cfg, sleep):
    from conftest import FakeRunner
    runner = FakeRunner(tools=("wget",))
    desc = write_descriptor(_recipe(f"s1 = {URL}"))
    _fetch(desc, cfg, runner, sleep)
    assert runner.commands("wget")


def test_no_download_tool(write_descriptor, cfg, sleep):
    from conftest import FakeRunner
    desc = write_descriptor(_recipe(f"s1 = {URL}"))
    with pytest.raises(NoDownloadTool):
        _fetch(desc, cfg, FakeRunner(tools=()), sleep)


def test_busy_download_lock_is_only_a_warning(write_descriptor, cfg, runner, sleep):
    desc = write_descriptor(_recipe(f"s1 = {URL}"))
    with locks.package_lock(cfg.layout, "foo", "1.0", "download"):
        result = _fetch(desc, cfg, runner, sleep)
    assert not result.lock_acquired
    assert any("download lock" in w.message for w in result.warnings)
    assert result.files


def test_git_source_with_ref(write_descriptor, cfg, runner, sleep):
    desc = write_descriptor(_recipe("s1 = git::https://example.org/foo.git@v1.0"))
    result = _fetch(desc, cfg, runner, sleep)
    clone = desc.source_cache_dir / "git-1"
    assert result.files == [clone]
    assert (clone / "Makefile").is_file()
    assert (desc.source_cache_dir / "git-1.tar.xz").is_file()
    git = runner.commands("git")
    assert git[0].startswith("git clone --depth 1")
    assert "git checkout v1.0" in git
    assert any("No checksum" in w.message for w in result.warnings)


def test_git_checksum_covers_archive(write_descriptor, cfg, runner, sleep, tmp_path):
    desc = write_descriptor(_recipe("s1 = git::https://example.org/foo.git\nsha256_s1 = 00"))
    with pytest.raises(ChecksumMismatch):
        _fetch(desc, cfg, runner, sleep)
    assert not (desc.source_cache_dir / "git-1").exists()
    assert not (desc.source_cache_dir / "git-1.tar.xz").exists()


def test_git_missing(write_descriptor, cfg, sleep):
    from conftest import FakeRunner
    desc = write_descriptor(_recipe("s1 = git::https://example.org/foo.git"))
    with pytest.raises(NoDownloadTool):
        _fetch(desc, cfg, FakeRunner(tools=("curl",)), sleep)


def test_local_source(write_descriptor, recipe_dir, cfg, runner, sleep):
    (recipe_dir / "files").mkdir()
    (recipe_dir / "files" / "extra.tar.gz").write_bytes(PAYLOAD)
    desc = write_descriptor(_recipe(f"s1 = files/extra.tar.gz\nsha256_s1 = sha256:{SHA.upper()}"))
    result = _fetch(desc, cfg, runner, sleep)
    assert result.files == [desc.source_cache_dir / "extra.tar.gz"]
    assert runner.calls == []


def test_local_source_missing(write_descriptor, cfg, runner, sleep):
    desc = write_descriptor(_recipe("s1 = files/nothing.tar.gz"))
    with pytest.raises(UnknownSource) as exc:
        _fetch(desc, cfg, runner, sleep)
    assert exc.value.exit_code == 15


def test_archive_tree_is_reproducible(tmp_path):
    src = tmp_path / "tree"
    (src / "sub").mkdir(parents=True)
    (src / ".git").mkdir()
    (src / ".git" / "HEAD").write_text("ref")
    (src / "sub" / "b.txt").write_text("b")
    (src / "a.txt").write_text("a")
    first = archive_tree(src, tmp_path / "one.tar.xz").read_bytes()
    (src / "a.txt").touch()
    second = archive_tree(src, tmp_path / "two.tar.xz").read_bytes()
    assert first == second


def test_checksum_helpers():
    assert normalize_checksum("ABC") == ("sha256", "abc")
    assert normalize_checksum("sha512:FF") == ("sha512", "ff")
    with pytest.raises(ValueError):
        normalize_checksum("md5:00")
    assert url_basename("https://h/p/x-1.0.tar.gz?download=1") == "x-1.0.tar.gz"


def test_fetcher_uses_descriptor_cache_dir(write_descriptor, cfg, runner, sleep):
    desc = write_descriptor(_recipe(f"s1 = {URL}"))
    fetcher = SourceFetcher(desc, config=cfg, runner=runner, sleep=sleep)
    assert fetcher.cache_dir == cfg.layout.source_cache("foo", "1.0")
