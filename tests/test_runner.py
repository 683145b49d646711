from lfsmeta.runner import CommandRunner


def test_shell_command_output_is_logged(tmp_path):
    log = tmp_path / "logs" / "build.log"
    res = CommandRunner().run("echo hello; exit 3", cwd=tmp_path, log_path=log)
    assert res.returncode == 3
    assert not res.ok
    assert res.output == "hello\n"
    text = log.read_text()
    assert text.startswith("$ echo hello; exit 3\nhello\n")
    assert "# exit=3" in text


def test_argv_and_environment(tmp_path):
    res = CommandRunner().run(["sh", "-c", 'printf "%s" "$GREETING"'], env={"GREETING": "hi"})
    assert res.ok
    assert res.output == "hi"


def test_stderr_is_merged():
    res = CommandRunner().run("echo oops >&2")
    assert res.output == "oops\n"


def test_timeout():
    res = CommandRunner().run("sleep 5", timeout=1)
    assert res.timed_out
    assert res.returncode == 124


def test_missing_program(tmp_path):
    res = CommandRunner().run([str(tmp_path / "no-such-tool")])
    assert res.returncode == 127


def test_which():
    assert CommandRunner().which("sh")
    assert CommandRunner().which("surely-not-installed-tool") is None
