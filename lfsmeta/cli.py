#!/usr/bin/env python3
# lfsmeta/cli.py
"""
lfsmeta CLI - front-end for descriptor inspection, fetching, patching and builds

Each subcommand delegates to the engine module that owns the operation. Engine
errors are printed and turned into their exit code; success exits 0.
"""

from __future__ import annotations

import sys
import argparse
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from lfsmeta import __version__
from lfsmeta import config as config_mod
from lfsmeta import descriptor as descriptor_mod
from lfsmeta import logging as logging_mod
from lfsmeta.buildsystem import detect_build_system
from lfsmeta.construction import mf_construction
from lfsmeta.errors import BuildWarning, LfsmetaError
from lfsmeta.fetcher import fetch_sources
from lfsmeta.fingerprint import compute_fingerprint
from lfsmeta.patches import apply_patches

logger = logging_mod.get_logger("cli")

console = Console()
err_console = Console(stderr=True)


# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {escape(msg)}", highlight=False)


def print_warn(msg: str):
    err_console.print(f"[bold yellow]![/] {escape(msg)}", highlight=False)


def print_err(msg: str):
    err_console.print(f"[bold red]✖[/] {escape(msg)}", highlight=False)


def print_info(msg: str):
    console.print(f"[cyan]{escape(msg)}[/cyan]", highlight=False)


def _print_warnings(warnings: List[BuildWarning]):
    for w in warnings:
        print_warn(str(w))


# -----------------------
# Subcommands
# -----------------------
def _load(cfg: config_mod.Config, path: str) -> descriptor_mod.Descriptor:
    return descriptor_mod.load(path, layout=cfg.layout)


def cmd_info(cfg, args) -> int:
    desc = _load(cfg, args.descriptor)
    table = Table(title=f"{desc.name} {desc.version}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("name", desc.name)
    table.add_row("version", desc.version)
    table.add_row("category", desc.category)
    table.add_row("arch", ", ".join(desc.arches))
    if desc.description:
        table.add_row("description", escape(desc.description))
    if desc.www:
        table.add_row("www", desc.www)
    for idx, src in enumerate(desc.sources):
        checksum = desc.checksum_for(idx)
        table.add_row(f"source {idx + 1}", escape(f"{src.spec} ({src.kind}{', sha256' if checksum else ''})"))
    for idx, patch in enumerate(desc.patches, start=1):
        table.add_row(f"patch {idx}", escape(patch))
    table.add_row("build system", desc.build.system)
    for kind in descriptor_mod.DEPENDENCY_KINDS:
        deps = getattr(desc, f"depends_{kind}")
        if deps:
            table.add_row(f"depends {kind}", ", ".join(sorted(deps)))
    table.add_row("fingerprint", compute_fingerprint(desc))
    console.print(table)
    return 0


def cmd_fingerprint(cfg, args) -> int:
    desc = _load(cfg, args.descriptor)
    console.print(compute_fingerprint(desc), highlight=False, soft_wrap=True)
    return 0


def cmd_fetch(cfg, args) -> int:
    desc = _load(cfg, args.descriptor)
    result = fetch_sources(desc, force=args.force, config=cfg)
    for path in result.files:
        print_ok(str(path))
    _print_warnings(result.warnings)
    return 0


def cmd_detect(cfg, args) -> int:
    workdir = Path(args.directory)
    if not workdir.is_dir():
        print_err(f"not a directory: {workdir}")
        return 2
    console.print(detect_build_system(workdir), highlight=False)
    return 0


def cmd_patch(cfg, args) -> int:
    desc = _load(cfg, args.descriptor)
    applied = apply_patches(desc, Path(args.workdir), config=cfg)
    for p in applied:
        print_ok(f"#{p.index} {p.ref} (-p{p.strip})")
    if not applied:
        print_info("No patches to apply")
    return 0


def cmd_build(cfg, args) -> int:
    desc = _load(cfg, args.descriptor)
    result = mf_construction(desc, config=cfg, stages=args.stages, from_stage=args.from_stage,
                             resume=args.resume, force=args.force,
                             destdir=Path(args.destdir) if args.destdir else None, jobs=args.jobs)
    _print_warnings(result.warnings)
    print_ok(f"{result.package}: {', '.join(result.ran) or 'nothing to do'}")
    if result.manifest_path:
        print_info(f"manifest: {result.manifest_path} ({len(result.manifest)} files)")
    if result.meta_path:
        print_info(f"meta: {result.meta_path}")
    return 0


# -----------------------
# Argparse wiring
# -----------------------
def make_parser():
    ap = argparse.ArgumentParser(prog="lfsmeta", description="Build packages from metafile descriptors")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("--config", help="config file (YAML or JSON)")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging on the console")
    sub = ap.add_subparsers(dest="cmd")

    p_info = sub.add_parser("info", help="show descriptor fields")
    p_info.add_argument("descriptor")
    p_info.set_defaults(func=cmd_info)

    p_fp = sub.add_parser("fingerprint", help="print the build fingerprint")
    p_fp.add_argument("descriptor")
    p_fp.set_defaults(func=cmd_fingerprint)

    p_fetch = sub.add_parser("fetch", help="download and verify sources")
    p_fetch.add_argument("descriptor")
    p_fetch.add_argument("--force", action="store_true", help="ignore cached sources")
    p_fetch.set_defaults(func=cmd_fetch)

    p_detect = sub.add_parser("detect", help="detect the build system of a source tree")
    p_detect.add_argument("directory")
    p_detect.set_defaults(func=cmd_detect)

    p_patch = sub.add_parser("patch", help="apply descriptor patches to a working tree")
    p_patch.add_argument("descriptor")
    p_patch.add_argument("workdir")
    p_patch.set_defaults(func=cmd_patch)

    p_build = sub.add_parser("build", help="run the construction stages")
    p_build.add_argument("descriptor")
    p_build.add_argument("--stages", help="comma separated subset of prepare,configure,build,check,install")
    p_build.add_argument("--from", dest="from_stage", help="start at this stage")
    p_build.add_argument("--resume", action="store_true", help="continue after the last completed stage")
    p_build.add_argument("--force", action="store_true", help="refetch sources")
    p_build.add_argument("--destdir", help="install destination (default: $LFS)")
    p_build.add_argument("--jobs", type=int, help="parallel build jobs")
    p_build.set_defaults(func=cmd_build)

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 2

    try:
        cfg = config_mod.load(args.config)
        log_cfg = dict(cfg.get("logging", {}) or {})
        if args.verbose:
            log_cfg["level"] = "DEBUG"
        logging_mod.configure(log_cfg)
        return args.func(cfg, args)
    except LfsmetaError as e:
        logger.debug("command failed: %r", e)
        print_err(f"{type(e).__name__}: {e}")
        return e.exit_code
    except KeyboardInterrupt:
        print_err("interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
