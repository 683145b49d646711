import io
import logging
import tarfile
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from lfsmeta import config as config_mod
from lfsmeta import descriptor as descriptor_mod
from lfsmeta.runner import CommandResult


def make_tarball(files: Dict[str, str]) -> bytes:
    """tar.gz bytes holding `files` (relative path -> text)."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, text in sorted(files.items()):
            data = text.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755 if name.endswith(("configure", ".sh")) else 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class Call:
    def __init__(self, cmd, cwd, env):
        self.cmd = cmd
        self.cwd = cwd
        self.env = env or {}

    @property
    def text(self) -> str:
        return self.cmd if isinstance(self.cmd, str) else " ".join(str(c) for c in self.cmd)


class FakeRunner:
    """Records commands and imitates the external tools the engine calls."""

    def __init__(self, tools=("curl", "wget", "git", "patch", "make", "bash")):
        self.tools = set(tools)
        self.calls: List[Call] = []
        self.payloads: Dict[str, bytes] = {}
        self.git_files: Dict[str, str] = {"Makefile": "all:\n"}
        self._failures: List[list] = []
        self._actions: List[tuple] = []

    def which(self, tool: str) -> Optional[str]:
        return f"/usr/bin/{tool}" if tool in self.tools else None

    def fail(self, needle: str, returncode: int = 1, times: Optional[int] = None) -> None:
        self._failures.append([needle, returncode, times])

    def on(self, needle: str, action: Callable[[Call], None]) -> None:
        self._actions.append((needle, action))

    def commands(self, prefix: str = "") -> List[str]:
        return [c.text for c in self.calls if c.text.startswith(prefix)]

    def run(self, cmd, cwd=None, env=None, log_path=None, timeout=None) -> CommandResult:
        call = Call(cmd, cwd, env)
        self.calls.append(call)
        for failure in self._failures:
            needle, rc, times = failure
            if needle in call.text and (times is None or times > 0):
                if times is not None:
                    failure[2] = times - 1
                return CommandResult(rc, "simulated failure")
        if isinstance(cmd, (list, tuple)):
            self._imitate(list(cmd))
        for needle, action in self._actions:
            if needle in call.text:
                action(call)
        return CommandResult(0, "")

    def _imitate(self, argv: List[str]) -> None:
        prog = argv[0]
        if prog in ("curl", "wget"):
            flag = "-o" if prog == "curl" else "-O"
            part = Path(argv[argv.index(flag) + 1])
            url = argv[-1]
            part.write_bytes(self.payloads.get(url, f"payload of {url}".encode()))
        elif prog == "git" and argv[1] == "clone":
            dest = Path(argv[-1])
            dest.mkdir(parents=True)
            (dest / ".git").mkdir()
            for name, text in self.git_files.items():
                (dest / name).parent.mkdir(parents=True, exist_ok=True)
                (dest / name).write_text(text)


@pytest.fixture(autouse=True)
def _isolated_logging():
    yield
    root = logging.getLogger("lfsmeta")
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()
    root.propagate = True


@pytest.fixture
def lfs_root(tmp_path) -> Path:
    return tmp_path / "lfs"


@pytest.fixture
def cfg(lfs_root, monkeypatch):
    monkeypatch.delenv("LFS", raising=False)
    monkeypatch.delenv("LFSMETA_CONFIG", raising=False)
    c = config_mod.build_config({
        "paths": {"lfs": str(lfs_root)},
        "fetch": {"backoff": 2, "retries": 3},
        "build": {"jobs": 2, "min_disk": 0},
    })
    config_mod.set_config(c)
    yield c
    config_mod.set_config(None)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def sleep(sleeps):
    return sleeps.append


@pytest.fixture
def recipe_dir(tmp_path) -> Path:
    d = tmp_path / "recipes" / "pkg"
    d.mkdir(parents=True)
    return d


@pytest.fixture
def write_descriptor(recipe_dir, cfg):
    def _write(text: str, filename: str = "metafile.ini"):
        path = recipe_dir / filename
        path.write_text(text)
        return descriptor_mod.load(path, layout=cfg.layout)
    return _write
