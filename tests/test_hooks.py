from lfsmeta.config import build_config
from lfsmeta.hooks import EVENTS, HookManager, normalize_event
from lfsmeta.logging import WarningLog


def test_normalize_event():
    assert normalize_event("pre_build.sh") == "pre-build"
    assert normalize_event("POST-INSTALL") == "post-install"
    assert normalize_event("pre-fetch") == "pre-fetch"
    assert normalize_event("during-build") is None
    assert "post-check" in EVENTS


def test_descriptor_hook_runs_with_restricted_env(recipe_dir, write_descriptor, cfg, runner, tmp_path):
    (recipe_dir / "hooks").mkdir()
    (recipe_dir / "scripts").mkdir()
    (recipe_dir / "scripts" / "prep.sh").write_text("echo hi\n")
    desc = write_descriptor("[package]\nname=foo\nversion=1.0\n[hooks]\npre-build = scripts/prep.sh\n")
    hooks = HookManager(desc, config=cfg, runner=runner, warnings=WarningLog())
    build_dir = tmp_path / "build"
    build_dir.mkdir()
    assert hooks.run("pre-build", build_dir)
    call = runner.calls[0]
    assert call.cmd == ["bash", "-e", str(desc.dir / "scripts" / "prep.sh")]
    assert call.cwd == build_dir
    assert call.env["PATH"].startswith("/bin:/usr/bin:")
    assert call.env["PKG_NAME"] == "foo"
    assert call.env["PKG_VERSION"] == "1.0"
    assert call.env["BUILD_DIR"] == str(build_dir)
    assert call.env["LFS"] == str(cfg.layout.lfs)


def test_hooks_directory_is_scanned(recipe_dir, write_descriptor, cfg, runner):
    (recipe_dir / "hooks").mkdir()
    (recipe_dir / "hooks" / "post_install.sh").write_text("true\n")
    (recipe_dir / "hooks" / "README").write_text("not a hook\n")
    desc = write_descriptor("[package]\nname=foo\nversion=1.0\n")
    hooks = HookManager(desc, config=cfg, runner=runner, warnings=WarningLog())
    assert [h.name for h in hooks.list()] == ["post_install.sh"]
    assert hooks.run("post-install")
    assert runner.calls[0].cmd[-1].endswith("hooks/post_install.sh")


def test_absolute_hook_needs_trust(recipe_dir, write_descriptor, cfg, runner, tmp_path):
    script = tmp_path / "abs.sh"
    script.write_text("true\n")
    desc = write_descriptor(f"[package]\nname=foo\nversion=1.0\n[hooks]\npost-build = {script}\n")
    warnings = WarningLog()
    assert not HookManager(desc, config=cfg, runner=runner, warnings=warnings).run("post-build")
    assert runner.calls == []
    assert "trust_hooks" in warnings.items[0].message

    trusted = build_config({"paths": {"lfs": str(cfg.layout.lfs)}, "build": {"trust_hooks": True}})
    assert HookManager(desc, config=trusted, runner=runner, warnings=WarningLog()).run("post-build")
    assert runner.calls[0].cmd[-1] == str(script)


def test_failing_and_missing_hooks_are_warnings(write_descriptor, recipe_dir, cfg, runner):
    (recipe_dir / "fail.sh").write_text("exit 1\n")
    desc = write_descriptor(
        "[package]\nname=foo\nversion=1.0\n[hooks]\npre-install = fail.sh\npost-install = gone.sh\n"
    )
    runner.fail("fail.sh", returncode=3)
    warnings = WarningLog()
    hooks = HookManager(desc, config=cfg, runner=runner, warnings=warnings)
    assert not hooks.run("pre-install")
    assert not hooks.run("post-install")
    assert "rc=3" in warnings.items[0].message
    assert "not found" in warnings.items[1].message


def test_no_hooks_is_success(write_descriptor, cfg, runner):
    desc = write_descriptor("[package]\nname=foo\nversion=1.0\n")
    assert HookManager(desc, config=cfg, runner=runner, warnings=WarningLog()).run("pre-fetch")
    assert runner.calls == []
