"""Node descriptors and fleet run outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class NodeDescriptor:
    """One logical participant in a multi-node scenario."""

    label: str
    version: str
    config_path: Path
    testnet: bool = False
    env: dict[str, str] = field(default_factory=dict)
    config_overrides: dict[str, Any] = field(default_factory=dict)
    args: tuple[str, ...] = ()


@dataclass(slots=True)
class FleetRunSummary:
    """Aggregate outcome of one fleet run for CLI reporting."""

    started: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    stop_reason: str | None = None
    cleanups_invoked: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed
