import collections
import hashlib
import re

import pytest

from conftest import make_tarball
from lfsmeta import construction, locks
from lfsmeta.construction import Construction, mf_construction, select_stages, source_root
from lfsmeta.errors import BuildSystemError, DiskSpaceError, LockBusy, MissingWorkDir
from lfsmeta.fingerprint import compute_fingerprint
from lfsmeta.logging import WarningLog

URL = "https://example.org/dist/foo-1.0.tar.gz"
TARBALL = make_tarball({"foo-1.0/Makefile": "all:\n", "foo-1.0/src/foo.c": "int main(){return 0;}\n"})
SHA = hashlib.sha256(TARBALL).hexdigest()

RECIPE = f"""\
[package]
name = foo
version = 1.0
www = https://example.org/foo

[sources]
s1 = {URL}
sha256_s1 = {SHA}
"""


def _installs_into(dest):
    def action(call):
        (dest / "usr/bin").mkdir(parents=True, exist_ok=True)
        (dest / "usr/bin/foo").write_text("binary")
        (dest / "usr/lib").mkdir(parents=True, exist_ok=True)
        (dest / "usr/lib/libfoo.so").write_text("lib")
    return action


@pytest.fixture
def build(cfg, runner, sleep):
    def _build(desc, **kw):
        return Construction(desc, config=cfg, runner=runner, sleep=sleep).run(**kw)
    return _build


# -----------------------------
# stage selection
# -----------------------------
def test_select_stages_keeps_canonical_order():
    assert select_stages("check,build") == ["build", "check"]
    assert select_stages(None) == list(construction.STAGES)
    assert select_stages(["install", "prepare"]) == ["prepare", "install"]


def test_select_stages_from():
    assert select_stages(None, from_stage="build") == ["build", "check", "install"]
    assert select_stages("prepare,check", from_stage="configure") == ["check"]


def test_unknown_stage_is_warned_and_skipped():
    warnings = WarningLog()
    assert select_stages("build,deploy", warnings=warnings) == ["build"]
    assert warnings.items[0].context["stage"] == "deploy"
    assert select_stages(None, from_stage="later", warnings=warnings) == list(construction.STAGES)
    assert len(warnings) == 2


# -----------------------------
# end to end
# -----------------------------
def test_https_source_builds_and_installs(write_descriptor, build, runner, cfg, tmp_path):
    runner.payloads[URL] = TARBALL
    dest = tmp_path / "dest"
    runner.on("make install", _installs_into(dest))
    desc = write_descriptor(RECIPE)

    result = build(desc, destdir=dest)

    assert result.ran == ["prepare", "configure", "build", "check", "install"]
    assert result.warnings == []
    assert result.workdir == cfg.layout.work_dir("foo", "1.0") / "foo-1.0"
    assert (result.workdir / "src/foo.c").is_file()
    assert runner.commands("make") == ["make -j2", "make check", f"make install DESTDIR={dest}"]
    assert all(c.cwd == result.workdir for c in runner.calls if c.text.startswith("make"))

    assert result.manifest == ["usr/bin/foo", "usr/lib/libfoo.so"]
    assert result.manifest_path == cfg.layout.manifest_file("foo", "1.0")
    assert result.manifest_path.read_text() == "usr/bin/foo\nusr/lib/libfoo.so\n"

    meta = dict(line.split("=", 1) for line in result.meta_path.read_text().splitlines())
    assert meta["name"] == "foo"
    assert meta["version"] == "1.0"
    assert meta["origin"] == "https://example.org/foo"
    assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\dZ", meta["build_date"])
    assert meta["fingerprint"] == compute_fingerprint(desc) == result.fingerprint
    assert not list(cfg.layout.pkgdb_dir.glob("*.tmp"))
    assert desc.log.is_file()


def test_git_source_without_checksum_warns(write_descriptor, build, runner, tmp_path):
    runner.git_files = {"Makefile": "all:\n", "main.c": "int main(){}\n"}
    desc = write_descriptor(
        "[package]\nname = bar\nversion = 2.0\n[sources]\ns1 = git::https://example.org/bar.git@v2.0\n"
    )
    result = build(desc, destdir=tmp_path / "dest")
    assert result.ran[-1] == "install"
    assert any("No checksum" in w.message for w in result.warnings)
    assert any(w.context.get("url") == "git::https://example.org/bar.git@v2.0" for w in result.warnings)
    assert (result.workdir / "main.c").is_file()
    assert not (result.workdir / ".git").exists()
    assert "git checkout v2.0" in runner.commands("git")
    meta = result.meta_path.read_text()
    assert "origin=unknown" in meta


def test_disk_preflight_aborts_before_fetch(write_descriptor, runner, sleep, lfs_root, monkeypatch):
    from lfsmeta.config import build_config
    cfg = build_config({"paths": {"lfs": str(lfs_root)}, "build": {"min_disk": "4G"}})
    usage = collections.namedtuple("usage", "total used free")
    monkeypatch.setattr(construction.shutil, "disk_usage", lambda path: usage(10 ** 10, 10 ** 10, 1024))
    desc = write_descriptor(RECIPE)
    with pytest.raises(DiskSpaceError) as exc:
        mf_construction(desc, config=cfg, runner=runner, sleep=sleep)
    assert exc.value.exit_code == 17
    assert runner.calls == []
    assert not desc.source_cache_dir.exists()
    assert not cfg.layout.lock_file("foo", "1.0", "build").exists()


# -----------------------------
# behaviour of individual stages
# -----------------------------
def _prepared_tree(cfg, files=("Makefile",)):
    work = cfg.layout.work_dir("foo", "1.0")
    work.mkdir(parents=True)
    for name in files:
        (work / name).write_text("")
    return work


def test_requested_order_does_not_matter(write_descriptor, build, runner, cfg):
    _prepared_tree(cfg)
    desc = write_descriptor(RECIPE)
    result = build(desc, stages="check,build")
    assert result.ran == ["build", "check"]
    assert runner.commands() == ["make -j2", "make check"]
    assert result.manifest_path is None
    assert result.meta_path.is_file()


def test_check_failure_does_not_abort(write_descriptor, build, runner, cfg, tmp_path):
    _prepared_tree(cfg)
    runner.fail("make check")
    desc = write_descriptor(RECIPE)
    result = build(desc, stages="build,check,install", destdir=tmp_path / "dest")
    assert result.ran == ["build", "check", "install"]
    assert [w.message for w in result.warnings] == ["Check failed; continuing"]


def test_build_failure_stops_the_sequence(write_descriptor, build, runner, cfg):
    _prepared_tree(cfg)
    runner.fail("make -j")
    desc = write_descriptor(RECIPE)
    with pytest.raises(BuildSystemError):
        build(desc, stages="configure,build,check,install")
    assert "make check" not in runner.commands()
    assert cfg.layout.progress_file("foo", "1.0").read_text().strip() == "configure"
    assert not cfg.layout.meta_file("foo", "1.0").exists()


def test_resume_continues_after_checkpoint(write_descriptor, cfg, runner, sleep, tmp_path):
    _prepared_tree(cfg)
    progress = cfg.layout.progress_file("foo", "1.0")
    progress.parent.mkdir(parents=True)
    progress.write_text("build\n")
    desc = write_descriptor(RECIPE)
    result = Construction(desc, config=cfg, runner=runner, sleep=sleep).run(
        resume=True, destdir=tmp_path / "dest")
    assert result.ran == ["check", "install"]
    assert progress.read_text().strip() == "install"


def test_missing_working_tree(write_descriptor, build):
    desc = write_descriptor(RECIPE)
    with pytest.raises(MissingWorkDir) as exc:
        build(desc, stages="build")
    assert exc.value.exit_code == 18


def test_no_selected_stage_writes_no_records(write_descriptor, build, runner, cfg):
    desc = write_descriptor(RECIPE)
    result = build(desc, stages="deploy")
    assert result.ran == []
    assert result.meta_path is None
    assert not cfg.layout.meta_file("foo", "1.0").exists()
    assert runner.calls == []


def test_busy_build_lock_is_fatal(write_descriptor, build, runner, cfg):
    desc = write_descriptor(RECIPE)
    with locks.package_lock(cfg.layout, "foo", "1.0", "build"):
        with pytest.raises(LockBusy):
            build(desc)
    assert runner.calls == []


def test_build_lock_released_after_failure(write_descriptor, build, cfg):
    desc = write_descriptor(RECIPE)
    with pytest.raises(MissingWorkDir):
        build(desc, stages="build")
    with locks.package_lock(cfg.layout, "foo", "1.0", "build") as lock:
        assert lock.held


def test_descriptor_directory_fallback(write_descriptor, recipe_dir, build, runner, cfg):
    (recipe_dir / "Makefile").write_text("all:\n")
    desc = write_descriptor("[package]\nname = foo\nversion = 1.0\n")
    result = build(desc, stages="prepare")
    work = cfg.layout.work_dir("foo", "1.0")
    assert (work / "Makefile").is_file()
    assert any("descriptor directory" in w.message for w in result.warnings)


def test_hooks_wrap_stages(write_descriptor, recipe_dir, build, runner, cfg, tmp_path):
    runner.payloads[URL] = TARBALL
    (recipe_dir / "hooks").mkdir()
    for name in ("pre_fetch.sh", "post_fetch.sh", "pre-build.sh", "post_install.sh"):
        (recipe_dir / "hooks" / name).write_text("true\n")
    desc = write_descriptor(RECIPE)
    build(desc, destdir=tmp_path / "dest")
    order = [c.cmd[-1].rsplit("/", 1)[-1] if c.cmd[0] == "bash" else c.text.split()[0] for c in runner.calls]
    assert order.index("pre_fetch.sh") < order.index("curl") < order.index("post_fetch.sh")
    assert order.index("pre-build.sh") < order.index("make")
    assert order[-1] == "post_install.sh"


def test_mf_construction_accepts_a_path(recipe_dir, cfg, runner, sleep):
    _prepared_tree(cfg)
    path = recipe_dir / "metafile.ini"
    path.write_text(RECIPE)
    result = mf_construction(str(path), config=cfg, runner=runner, sleep=sleep, stages="build")
    assert result.ran == ["build"]


def test_source_root(tmp_path):
    (tmp_path / "only").mkdir()
    assert source_root(tmp_path) == tmp_path / "only"
    (tmp_path / "file").write_text("")
    assert source_root(tmp_path) == tmp_path
