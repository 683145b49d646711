# lfsmeta/errors.py
"""
errors.py - exception taxonomy for lfsmeta

Every fatal condition has its own exception class and exit code so that
automation built on top of the engine can tell them apart. Soft failures are
not exceptions: they are recorded as `BuildWarning` records (see `Severity`).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class Severity(enum.Enum):
    WARNING = "warning"
    FATAL = "fatal"


@dataclass(frozen=True)
class BuildWarning:
    """A recorded soft failure (logged, never raised)."""
    source: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    severity: Severity = Severity.WARNING

    def __str__(self) -> str:
        return f"[{self.source}] {self.message}"


class LfsmetaError(Exception):
    exit_code = 1
    severity = Severity.FATAL

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({ctx})"


class ConfigError(LfsmetaError):
    exit_code = 2


# descriptor loading
class DescriptorError(LfsmetaError):
    exit_code = 3


class ParseError(DescriptorError):
    pass


class MissingField(DescriptorError):
    pass


class InvalidName(DescriptorError):
    pass


class LockBusy(LfsmetaError):
    exit_code = 11


# fetching
class NoDownloadTool(LfsmetaError):
    exit_code = 12


class DownloadError(LfsmetaError):
    exit_code = 13


class ChecksumMismatch(LfsmetaError):
    exit_code = 14

    def __init__(self, message: str, expected: Optional[str] = None, got: Optional[str] = None, **context: Any):
        super().__init__(message, expected=expected, got=got, **context)
        self.expected = expected
        self.got = got


class UnknownSource(LfsmetaError):
    exit_code = 15


class PatchApplyError(LfsmetaError):
    exit_code = 16

    def __init__(self, message: str, index: int, patch: str, **context: Any):
        super().__init__(message, index=index, patch=patch, **context)
        self.index = index
        self.patch = patch


class DiskSpaceError(LfsmetaError):
    exit_code = 17


class MissingWorkDir(LfsmetaError):
    exit_code = 18


class BuildSystemError(LfsmetaError):
    exit_code = 19

    def __init__(self, message: str, stage: str, returncode: Optional[int] = None, **context: Any):
        super().__init__(message, stage=stage, returncode=returncode, **context)
        self.stage = stage
        self.returncode = returncode
        if stage == "build":
            self.exit_code = 20


class InstallError(BuildSystemError):
    exit_code = 21

    def __init__(self, message: str, returncode: Optional[int] = None, **context: Any):
        super().__init__(message, stage="install", returncode=returncode, **context)
        self.exit_code = InstallError.exit_code


class HookError(LfsmetaError):
    exit_code = 22
    severity = Severity.WARNING


class UnknownStage(LfsmetaError):
    exit_code = 23
    severity = Severity.WARNING
