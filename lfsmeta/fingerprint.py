# lfsmeta/fingerprint.py
"""
fingerprint.py - deterministic identity of "what will be built"

The digest covers name, version, source specifiers, patch references and the
build system/configure/build commands, one newline-terminated line each.
Checksums, check and install commands are not part of it: two recipes that
only differ in how they are verified or installed build the same thing.
"""

from __future__ import annotations

import hashlib
from typing import List

from lfsmeta.descriptor import Descriptor


def fingerprint_inputs(desc: Descriptor) -> List[str]:
    """Canonical ordered lines hashed by compute_fingerprint().

    An empty source or patch list still contributes one empty line, so a
    source can never be mistaken for a patch.
    """
    lines = [desc.name, desc.version]
    lines.extend([src.spec for src in desc.sources] or [""])
    lines.extend(list(desc.patches) or [""])
    lines.append(desc.build.system)
    lines.append(desc.build.configure or "")
    lines.append(desc.build.build or "")
    return lines


def compute_fingerprint(desc: Descriptor) -> str:
    h = hashlib.sha256()
    for line in fingerprint_inputs(desc):
        h.update(line.encode("utf-8"))
        h.update(b"\n")
    return h.hexdigest()
