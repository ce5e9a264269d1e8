"""A file-backed OCI runtime specification that can be loaded, modified and written back."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

SpecModifier = Callable[[dict[str, Any]], None]


class SpecError(Exception):
    """The specification could not be read, modified or written."""


class FileSpec:
    """An OCI specification stored in a JSON file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.spec: dict[str, Any] | None = None

    def load(self) -> None:
        """Read the specification from the file."""
        try:
            handle = self.path.open("r", encoding="utf-8")
        except OSError as err:
            raise SpecError(f"error opening OCI specification file: {err}") from err
        with handle:
            try:
                spec = json.load(handle)
            except (json.JSONDecodeError, UnicodeDecodeError) as err:
                raise SpecError(f"error reading OCI specification from file: {err}") from err
        if spec is not None and not isinstance(spec, dict):
            raise SpecError("error reading OCI specification from file: not a JSON object")
        self.spec = spec if spec is not None else {}

    def modify(self, modifier: SpecModifier) -> None:
        """Apply a modifier to the loaded specification in place."""
        if self.spec is None:
            raise SpecError("no spec loaded for modification")
        modifier(self.spec)

    def flush(self) -> None:
        """Write the specification to the file, replacing its contents."""
        try:
            handle = self.path.open("w", encoding="utf-8")
        except OSError as err:
            raise SpecError(f"error opening OCI specification file: {err}") from err
        with handle:
            try:
                handle.write(json.dumps(self.spec, separators=(",", ":")) + "\n")
            except (TypeError, ValueError, OSError) as err:
                raise SpecError(f"error writing OCI specification to file: {err}") from err