"""Runtime configuration for cache, build, runner, and fleet orchestration."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

_PROJECT_DIRECTORY = ".nodefleet"


@dataclass(slots=True)
class CacheSettings:
    """Artifact cache settings."""

    root: Path = Path(_PROJECT_DIRECTORY) / "cache"
    namespace: str = "daemon"


@dataclass(slots=True)
class BuildSettings:
    """Build pipeline settings."""

    command_template: str = ""
    work_root: Path = Path(_PROJECT_DIRECTORY) / "tmp"
    timeout_seconds: int = 3_600
    keep_workdir: bool = False


@dataclass(slots=True)
class RunnerSettings:
    """Per-node process runner settings."""

    config_filename: str = "config"
    scratch_root: Path = Path(_PROJECT_DIRECTORY) / "tmp"
    kill_grace_seconds: float = 0.0


@dataclass(slots=True)
class FleetSettings:
    """Multi-node orchestration settings."""

    default_version: str = ""
    settle_seconds: float = 1.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    home: Path = Path(_PROJECT_DIRECTORY)
    cache: CacheSettings = field(default_factory=CacheSettings)
    build: BuildSettings = field(default_factory=BuildSettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    fleet: FleetSettings = field(default_factory=FleetSettings)

    @classmethod
    def from_env(cls, home: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        resolved_home = home or _default_home()
        work_root = Path(os.getenv("NODEFLEET_WORK_ROOT", str(resolved_home / "tmp")))
        return cls(
            home=resolved_home,
            cache=CacheSettings(
                root=Path(os.getenv("NODEFLEET_CACHE_ROOT", str(resolved_home / "cache"))),
                namespace=os.getenv("NODEFLEET_NAMESPACE", "daemon").strip() or "daemon",
            ),
            build=BuildSettings(
                command_template=os.getenv("NODEFLEET_BUILD_COMMAND", "").strip(),
                work_root=work_root,
                timeout_seconds=int(os.getenv("NODEFLEET_BUILD_TIMEOUT_SECONDS", "3600")),
                keep_workdir=_env_bool("NODEFLEET_KEEP_BUILD_WORKDIR", default=False),
            ),
            runner=RunnerSettings(
                config_filename=os.getenv("NODEFLEET_CONFIG_FILENAME", "config").strip()
                or "config",
                scratch_root=work_root,
                kill_grace_seconds=float(os.getenv("NODEFLEET_KILL_GRACE_SECONDS", "0")),
            ),
            fleet=FleetSettings(
                default_version=os.getenv("NODEFLEET_DEFAULT_VERSION", "").strip(),
                settle_seconds=float(os.getenv("NODEFLEET_SETTLE_SECONDS", "1.0")),
            ),
        )

    def validate_for_build(self) -> None:
        """Raise configuration error if the build pipeline cannot run."""

        if not self.build.command_template:
            raise ValueError(
                "No build command configured. Set NODEFLEET_BUILD_COMMAND to a command "
                "template using {version}, {workdir} and {output}.",
            )
        if "{output}" not in self.build.command_template:
            raise ValueError("NODEFLEET_BUILD_COMMAND must include {output}.")
        if self.build.timeout_seconds <= 0:
            raise ValueError("NODEFLEET_BUILD_TIMEOUT_SECONDS must be > 0.")

    def validate_for_fleet(self) -> None:
        """Raise configuration error for invalid orchestration tunables."""

        if self.fleet.settle_seconds < 0:
            raise ValueError("NODEFLEET_SETTLE_SECONDS must be >= 0.")
        if self.runner.kill_grace_seconds < 0:
            raise ValueError("NODEFLEET_KILL_GRACE_SECONDS must be >= 0.")


def _default_home() -> Path:
    explicit = os.getenv("NODEFLEET_HOME", "").strip()
    if explicit:
        return Path(explicit)
    home_dir = os.getenv("HOME", "").strip()
    if not home_dir:
        logger.warning("HOME is unset, using current path")
        return Path.cwd() / _PROJECT_DIRECTORY
    return Path(home_dir) / _PROJECT_DIRECTORY


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
