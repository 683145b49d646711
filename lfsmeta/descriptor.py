# lfsmeta/descriptor.py
"""
descriptor.py - loader for package build recipes (metafile.ini / .yaml)

Features:
- Parse INI recipes (sections + key = value) or YAML recipes with the same layout
- Sources parsed once into a closed set of variants (url, git, mirror, local path)
- Checksums aligned by index with sources; absent checksum kept distinct from ""
- Dependency lists (build/runtime/optional/virtual) from CSV values
- Derived per-package paths (source cache, logs) computed from the config Layout

A loaded Descriptor is immutable; every component receives it explicitly.
"""

from __future__ import annotations

import os
import re
import configparser
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

import yaml

from lfsmeta.config import Layout, get_config
from lfsmeta.errors import InvalidName, MissingField, ParseError
from lfsmeta.logging import get_logger

logger = get_logger("descriptor")

NAME_RE = re.compile(r"^[A-Za-z0-9._+-]+$")
URL_SCHEMES = ("http", "https", "ftp", "file")
DEPENDENCY_KINDS = ("build", "runtime", "optional", "virtual")
CHECKSUM_KEY_PREFIX = "sha256_"


# -----------------------
# Source variants
# -----------------------
@dataclass(frozen=True)
class UrlSource:
    """http(s)://, ftp:// or file:// URL."""
    spec: str
    url: str
    kind = "url"


@dataclass(frozen=True)
class GitSource:
    """git::<uri>[@<ref>]"""
    spec: str
    uri: str
    ref: Optional[str] = None
    kind = "git"


@dataclass(frozen=True)
class MirrorSource:
    """mirror::<url>"""
    spec: str
    url: str
    kind = "mirror"


@dataclass(frozen=True)
class LocalSource:
    """Bare filesystem path."""
    spec: str
    path: str
    kind = "local"


Source = Union[UrlSource, GitSource, MirrorSource, LocalSource]

_SCHEME_RE = re.compile(r"^([A-Za-z][A-Za-z0-9+.-]*)://")


def _split_git_ref(rest: str) -> Tuple[str, Optional[str]]:
    # The ref separator is the last '@' inside the repository path, so user
    # info (`git@host:`, `https://user@host/`) is never taken for a ref.
    m = _SCHEME_RE.match(rest)
    if m:
        slash = rest.find("/", m.end())
        path_start = len(rest) if slash < 0 else slash
    elif ":" in rest.split("/", 1)[0]:
        path_start = rest.index(":") + 1
    else:
        path_start = 0
    at = rest.rfind("@", path_start)
    if at < 0:
        return rest, None
    uri, ref = rest[:at], rest[at + 1:]
    if not uri or not ref or ":" in ref:
        return rest, None
    return uri, ref


def parse_source(spec: str) -> Source:
    """Parse one source specifier into its variant."""
    s = spec.strip()
    if not s:
        raise ParseError("empty source specifier")
    if s.startswith("git::"):
        uri, ref = _split_git_ref(s[len("git::"):])
        if not uri:
            raise ParseError("git source without uri", source=spec)
        return GitSource(spec=s, uri=uri, ref=ref)
    if s.startswith("mirror::"):
        url = s[len("mirror::"):]
        if not url:
            raise ParseError("mirror source without url", source=spec)
        return MirrorSource(spec=s, url=url)
    m = _SCHEME_RE.match(s)
    if m:
        if m.group(1).lower() not in URL_SCHEMES:
            raise ParseError(f"unsupported URL scheme '{m.group(1)}'", source=spec)
        return UrlSource(spec=s, url=s)
    return LocalSource(spec=s, path=s)


# -----------------------
# Data model
# -----------------------
@dataclass(frozen=True)
class BuildConfig:
    system: str = "auto"
    configure: Optional[str] = None
    build: Optional[str] = None
    check: Optional[str] = None
    install: Optional[str] = None
    prefix: str = "/usr"
    options: str = ""

    def command(self, stage: str) -> Optional[str]:
        if stage not in ("configure", "build", "check", "install"):
            raise ValueError(f"no build command for stage {stage}")
        return getattr(self, stage)


@dataclass(frozen=True)
class Descriptor:
    name: str
    version: str
    sources: Tuple[Source, ...] = ()
    source_checksums: Tuple[Optional[str], ...] = ()
    patches: Tuple[str, ...] = ()
    build: BuildConfig = field(default_factory=BuildConfig)
    depends_build: FrozenSet[str] = frozenset()
    depends_runtime: FrozenSet[str] = frozenset()
    depends_optional: FrozenSet[str] = frozenset()
    depends_virtual: FrozenSet[str] = frozenset()
    hooks: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    environment: Tuple[Tuple[str, str], ...] = ()
    description: str = ""
    www: str = ""
    category: str = "base"
    arches: Tuple[str, ...] = ("any",)
    meta_path: Optional[Path] = None
    dir: Optional[Path] = None
    source_cache_dir: Optional[Path] = None
    log: Optional[Path] = None
    build_log: Optional[Path] = None

    @property
    def key(self) -> str:
        return f"{self.name}-{self.version}"

    def checksum_for(self, index: int) -> Optional[str]:
        """Declared checksum for sources[index]; None when absent."""
        if index < len(self.source_checksums):
            return self.source_checksums[index]
        return None

    @property
    def env(self) -> Dict[str, str]:
        return dict(self.environment)


# -----------------------
# Parsing helpers
# -----------------------
Sections = Dict[str, Dict[str, Any]]


def _split_csv(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        items = str(value).split(",")
    return [i.strip() for i in items if i.strip()]


def _unquote(val: str) -> str:
    val = val.strip()
    if len(val) >= 2 and val[0] == val[-1] and val[0] in ("'", '"'):
        return val[1:-1]
    return val


_TOP_SECTION = "__lfsmeta_top__"


def _parse_ini(text: str, path: Path) -> Sections:
    parser = configparser.ConfigParser(
        interpolation=None,
        delimiters=("=",),
        comment_prefixes=("#", ";"),
        inline_comment_prefixes=None,
        default_section="__lfsmeta_defaults__",
        strict=True,
    )
    parser.optionxform = str  # keys are case sensitive
    try:
        # keys before the first header belong to [package]
        parser.read_string(f"[{_TOP_SECTION}]\n{text}", source=str(path))
    except configparser.Error as e:
        raise ParseError(f"malformed descriptor: {e}", path=str(path)) from e
    sections = {sect: {k: _unquote(v) for k, v in parser.items(sect)}
                for sect in parser.sections() if sect != _TOP_SECTION}
    top = {k: _unquote(v) for k, v in parser.items(_TOP_SECTION)}
    if top:
        sections["package"] = {**top, **sections.get("package", {})}
    return sections


def _parse_yaml(text: str, path: Path) -> Sections:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ParseError(f"malformed descriptor: {e}", path=str(path)) from e
    if not isinstance(data, dict):
        raise ParseError("descriptor must be a mapping", path=str(path))
    sections: Sections = {}
    package: Dict[str, Any] = {}
    for key, value in data.items():
        key = str(key)
        if isinstance(value, dict):
            if key == "depends":
                for kind, deps in value.items():
                    sections.setdefault("depends", {})[str(kind)] = deps
            else:
                sections[key] = {str(k): ("" if v is None else v) for k, v in value.items()}
        elif isinstance(value, list) and key in ("sources", "patches"):
            sections[key] = _list_section(key, value, path)
        else:
            package[key] = "" if value is None else str(value)
    if package:
        sections["package"] = {**package, **sections.get("package", {})}
    return sections


def _list_section(key: str, items: List[Any], path: Path) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for idx, item in enumerate(items, start=1):
        name = f"{key.rstrip('s')}{idx}"
        if isinstance(item, dict):
            spec = item.get("url") or item.get("source") or item.get("path")
            if not spec:
                raise ParseError(f"{key} entry #{idx} has no url/path", path=str(path))
            out[name] = str(spec)
            if item.get("sha256") is not None:
                out[CHECKSUM_KEY_PREFIX + name] = str(item["sha256"])
        else:
            out[name] = str(item)
    return out


def _read_sections(path: Path) -> Sections:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ParseError(f"cannot read descriptor: {e}", path=str(path)) from e
    if path.suffix.lower() in (".yaml", ".yml"):
        return _parse_yaml(text, path)
    return _parse_ini(text, path)


def _validate_identity(field_name: str, value: str, path: Path) -> str:
    if not value:
        raise MissingField(f"descriptor is missing package {field_name}", path=str(path), field=field_name)
    if os.sep in value or "/" in value or value in (".", "..") or not NAME_RE.match(value):
        raise InvalidName(f"invalid package {field_name} '{value}'; allowed characters: A-Za-z0-9._+-",
                          path=str(path), field=field_name)
    return value


def _sources(section: Dict[str, Any], path: Path) -> Tuple[Tuple[Source, ...], Tuple[Optional[str], ...]]:
    keys = [k for k in section if not k.startswith(CHECKSUM_KEY_PREFIX)]
    sources: List[Source] = []
    checksums: List[Optional[str]] = []
    for idx, key in enumerate(keys):
        try:
            sources.append(parse_source(str(section[key])))
        except ParseError as e:
            raise ParseError(e.message, path=str(path), key=key, **e.context) from e
        sha = section.get(CHECKSUM_KEY_PREFIX + key)
        if sha is None or not str(sha).strip():
            by_index = section.get(f"{CHECKSUM_KEY_PREFIX}{idx + 1}")
            if by_index is not None:
                sha = by_index
        checksums.append(None if sha is None else str(sha).strip())
    return tuple(sources), tuple(checksums)


def _dependencies(sections: Sections) -> Dict[str, FrozenSet[str]]:
    deps: Dict[str, set] = {kind: set() for kind in DEPENDENCY_KINDS}
    flat = sections.get("depends", {})
    for kind in DEPENDENCY_KINDS:
        deps[kind].update(_split_csv(flat.get(kind)))
        for value in sections.get(f"depends.{kind}", {}).values():
            deps[kind].update(_split_csv(value))
    return {kind: frozenset(v) for kind, v in deps.items()}


def _none_if_empty(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


# -----------------------
# load
# -----------------------
def load(path: Union[str, Path], layout: Optional[Layout] = None) -> Descriptor:
    """
    Load a descriptor file. Raises ParseError, MissingField or InvalidName.
    Log paths are computed but never opened.
    """
    p = Path(path).expanduser()
    sections = _read_sections(p)
    meta_path = p.resolve()
    layout = layout or get_config().layout

    pkg = sections.get("package", {})
    name = _validate_identity("name", str(pkg.get("name", "")).strip(), meta_path)
    version = _validate_identity("version", str(pkg.get("version", "")).strip(), meta_path)

    sources, checksums = _sources(sections.get("sources", {}), meta_path)
    patches = tuple(str(v).strip() for v in sections.get("patches", {}).values() if str(v).strip())
    hooks = {str(k): str(v).strip() for k, v in sections.get("hooks", {}).items() if str(v).strip()}
    environment = tuple((str(k), str(v)) for k, v in sections.get("environment", {}).items())

    b = sections.get("build", {})
    build = BuildConfig(
        system=_none_if_empty(b.get("system")) or "auto",
        configure=_none_if_empty(b.get("configure")),
        build=_none_if_empty(b.get("build")),
        check=_none_if_empty(b.get("check")),
        install=_none_if_empty(b.get("install")),
        prefix=_none_if_empty(b.get("prefix")) or "/usr",
        options=str(b.get("options") or "").strip(),
    )
    deps = _dependencies(sections)

    desc = Descriptor(
        name=name,
        version=version,
        sources=sources,
        source_checksums=checksums,
        patches=patches,
        build=build,
        depends_build=deps["build"],
        depends_runtime=deps["runtime"],
        depends_optional=deps["optional"],
        depends_virtual=deps["virtual"],
        hooks=MappingProxyType(hooks),
        environment=environment,
        description=str(pkg.get("description", "")),
        www=str(pkg.get("www", "")),
        category=str(pkg.get("category") or "base"),
        arches=tuple(_split_csv(pkg.get("arch"))) or ("any",),
        meta_path=meta_path,
        dir=meta_path.parent,
        source_cache_dir=layout.source_cache(name, version),
        log=layout.log_file(name, version),
        build_log=layout.build_log_file(name, version),
    )
    logger.info("Loaded descriptor %s (name=%s, version=%s)", meta_path, name, version)
    return desc
