"""Version of the package and the command that prints it."""

from __future__ import annotations

import argparse
from collections.abc import Sequence
from importlib import metadata

_UNKNOWN = "unknown"


def version() -> str:
    """Return the installed version, or "unknown"."""
    try:
        return metadata.version("vgpusched")
    except metadata.PackageNotFoundError:
        return _UNKNOWN


def main(argv: Sequence[str] | None = None) -> int:
    """Print the version."""
    parser = argparse.ArgumentParser(prog="version", description="print version")
    parser.parse_args(argv)
    print(version())
    return 0