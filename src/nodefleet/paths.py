"""Labelled scratch locations for build and state data."""

from __future__ import annotations

import re
import tempfile
from pathlib import Path

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_name(value: str) -> str:
    """Filesystem-safe rendering of a label or version reference."""

    return _UNSAFE_NAME_CHARS.sub("_", value).strip("._") or "unnamed"


def generate_temp_path(root: Path | None, label: str) -> Path:
    """Create and return a fresh, uniquely named directory under ``root``."""

    base = root if root is not None else Path(tempfile.gettempdir())
    base.mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix=f"nodefleet_{safe_name(label)}_", dir=base))
