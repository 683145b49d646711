"""lfsmeta - metafile driven package construction for LFS-style systems."""

__version__ = "1.0.0"
