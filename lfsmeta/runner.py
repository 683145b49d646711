# lfsmeta/runner.py
"""
runner.py - command execution boundary

Every external tool (curl/wget, git, patch, make, cmake, hooks) is executed
through a CommandRunner. Output is appended to the package build log. Any
sandboxing wraps this class from the outside; the engine only sees
`run()` and `which()`.
"""

from __future__ import annotations

import os
import time
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from lfsmeta.logging import get_logger

logger = get_logger("runner")

Command = Union[str, Sequence[str]]


@dataclass
class CommandResult:
    returncode: int
    output: str = ""
    timed_out: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def _display(cmd: Command) -> str:
    if isinstance(cmd, str):
        return cmd
    return " ".join(str(c) for c in cmd)


class CommandRunner:
    """Runs commands in a working directory, capturing output to a log file."""

    def __init__(self, shell: str = "/bin/sh"):
        self.shell = shell

    def which(self, tool: str) -> Optional[str]:
        return shutil.which(tool)

    def run(self, cmd: Command, cwd: Optional[Path] = None, env: Optional[Dict[str, str]] = None,
            log_path: Optional[Path] = None, timeout: Optional[int] = None) -> CommandResult:
        """
        Run `cmd` (a shell string or an argv list) in `cwd`.
        stdout and stderr are merged; when `log_path` is set the output is
        appended there as well as returned.
        """
        argv: List[str] = [self.shell, "-c", cmd] if isinstance(cmd, str) else [str(c) for c in cmd]
        full_env = dict(os.environ)
        if env:
            full_env.update(env)
        logger.debug("RUN: %s (cwd=%s)", _display(cmd), str(cwd) if cwd else None)
        start = time.time()
        try:
            proc = subprocess.run(argv, cwd=str(cwd) if cwd else None, env=full_env,
                                  stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                  timeout=timeout)
            result = CommandResult(proc.returncode, proc.stdout.decode("utf-8", "replace"),
                                   duration=time.time() - start)
        except subprocess.TimeoutExpired as e:
            out = (e.output or b"").decode("utf-8", "replace")
            result = CommandResult(124, out, timed_out=True, duration=time.time() - start)
        except OSError as e:
            result = CommandResult(127, f"{argv[0]}: {e}\n", duration=time.time() - start)
        if log_path is not None:
            self._append_log(log_path, cmd, result)
        if not result.ok:
            logger.debug("command exited %s: %s", result.returncode, _display(cmd))
        return result

    def _append_log(self, log_path: Path, cmd: Command, result: CommandResult) -> None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a", encoding="utf-8") as fh:
            fh.write(f"$ {_display(cmd)}\n")
            fh.write(result.output)
            if result.output and not result.output.endswith("\n"):
                fh.write("\n")
            fh.write(f"# exit={result.returncode} time={result.duration:.1f}s\n")
