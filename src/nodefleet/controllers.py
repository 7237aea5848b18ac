"""Controllers for nodefleet CLI commands."""

from __future__ import annotations

import json
import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from nodefleet.build import BinaryProvider, BuildError, CommandBuildPipeline
from nodefleet.cache import ArtifactCache, CacheMissError
from nodefleet.config import Settings
from nodefleet.logs import node_logger
from nodefleet.orchestrator import FleetSupervisor, NodeDescriptor
from nodefleet.orchestrator.output import start_output_pump
from nodefleet.runner import DaemonExitError, DaemonRunner, RunnerError

logger = logging.getLogger(__name__)

EXIT_NODE_FAILED = 2
EXIT_NO_NODES = 3
EXIT_NO_VERSION = 4
EXIT_BUILD_FAILED = 5


class CliExitError(RuntimeError):
    """Command failure mapped to a process exit code."""

    def __init__(self, message: str, *, exit_code: int = 1) -> None:
        super().__init__(message)
        self.exit_code = exit_code


@dataclass(slots=True)
class PrepareCommand:
    """CLI input for building and caching one version."""

    version: str
    namespace: str | None = None


@dataclass(slots=True)
class StartCommand:
    """CLI input for running one version in the foreground."""

    version: str
    start_params: tuple[str, ...] = ()
    namespace: str | None = None


@dataclass(slots=True)
class NodeOption:
    """Config path and version given for one named node."""

    label: str
    config_path: Path | None
    version: str | None


@dataclass(slots=True)
class SimulateCommand:
    """CLI input for a multi-node run."""

    nodes: tuple[NodeOption, ...]
    testnet: bool = False
    assignments: tuple[str, ...] = ()
    env_assignments: tuple[str, ...] = ()
    namespace: str | None = None


@dataclass(slots=True)
class CacheListCommand:
    """CLI input for listing cached builds."""

    namespace: str | None = None


@dataclass(slots=True)
class InspectCommand:
    """CLI input for inspecting one cached build."""

    version: str
    namespace: str | None = None


class FleetCliController:
    """Coordinates cache, build, runner and fleet CLI operations."""

    def prepare(self, command: PrepareCommand) -> list[str]:
        if not command.version:
            raise CliExitError("Must specify build version", exit_code=EXIT_NO_VERSION)
        settings = Settings.from_env()
        provider = _provider(settings, namespace=command.namespace)
        binary_path = _resolve(provider, command.version, label="prepare-build")
        return [f"Version {command.version} is prepared: {binary_path}"]

    def start(self, command: StartCommand) -> list[str]:
        if not command.version:
            raise CliExitError("Must specify version to start", exit_code=EXIT_NO_VERSION)
        settings = Settings.from_env()
        provider = _provider(settings, namespace=command.namespace)
        binary_path = _resolve(provider, command.version, label=command.version)

        logger.info("Starting %s...", command.version)
        logger.info("Args: %s", list(command.start_params))
        runner = _runner(settings, binary_path)
        runner.with_args(list(command.start_params))
        pump = start_output_pump(runner.split_output(), node_logger(command.version))
        try:
            with _interrupt_on_sigterm():
                runner.run_start()
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping %s", command.version)
        except DaemonExitError as error:
            raise CliExitError(
                f"{command.version} returned ({error.exit_code})",
                exit_code=EXIT_NODE_FAILED,
            ) from error
        except RunnerError as error:
            raise CliExitError(str(error), exit_code=EXIT_NODE_FAILED) from error
        finally:
            try:
                runner.cleanup()
            except RunnerError as error:
                logger.error("Cleanup process: %s", error)
            pump.join(timeout=5)

        return [f"{command.version} exited with status {runner.exit_status()}"]

    def simulate(self, command: SimulateCommand) -> list[str]:
        settings = Settings.from_env()
        try:
            settings.validate_for_fleet()
            overrides = _parse_assignments(command.assignments, parse_json=True)
            env_overrides = _parse_assignments(command.env_assignments, parse_json=False)
        except ValueError as error:
            raise CliExitError(str(error)) from error

        nodes = _node_descriptors(
            command,
            default_version=settings.fleet.default_version,
            overrides=overrides,
            env_overrides=env_overrides,
        )
        provider = _provider(settings, namespace=command.namespace)

        def _factory(binary_path: Path, node: NodeDescriptor) -> DaemonRunner:
            return _runner(settings, binary_path, env=node.env)

        supervisor = FleetSupervisor(
            binaries=provider,
            runner_factory=_factory,
            settle_seconds=settings.fleet.settle_seconds,
        )
        summary = supervisor.run(nodes)

        lines = [
            "Fleet summary: "
            f"started={len(summary.started)} failed={len(summary.failed)} "
            f"skipped={len(summary.skipped)} stop_reason={summary.stop_reason or 'none'}",
        ]
        lines.extend(f"  {label}: {reason}" for label, reason in sorted(summary.failed.items()))
        if not summary.ok:
            raise CliExitError("\n".join(lines), exit_code=EXIT_NODE_FAILED)
        return lines

    def cache_list(self, command: CacheListCommand) -> list[str]:
        settings = Settings.from_env()
        cache = _open_cache(settings)
        namespaces = [command.namespace] if command.namespace else cache.namespaces()
        lines: list[str] = []
        for namespace in namespaces:
            try:
                entries = cache.entries(namespace)
            except CacheMissError as error:
                raise CliExitError(str(error)) from error
            lines.append(f"{namespace}:")
            lines.extend(f"  {version} -> {path}" for version, path in entries.items())
        return lines or [f"Cache is empty: {cache.root}"]

    def inspect(self, command: InspectCommand) -> list[str]:
        settings = Settings.from_env()
        cache = _open_cache(settings)
        namespace = command.namespace or settings.cache.namespace
        try:
            binary_path = cache.get(namespace, command.version)
        except CacheMissError as error:
            raise CliExitError(str(error)) from error
        try:
            reported = _runner(settings, binary_path).version()
        except RunnerError as error:
            reported = f"unavailable ({error})"
        return [
            f"Namespace: {namespace}",
            f"Version: {command.version}",
            f"Binary: {binary_path}",
            f"Reports: {reported}",
        ]


def _open_cache(settings: Settings) -> ArtifactCache:
    try:
        return ArtifactCache.open_or_create(settings.cache.root)
    except OSError as error:
        raise CliExitError(f"Opening cache: {error}", exit_code=EXIT_BUILD_FAILED) from error


def _provider(settings: Settings, *, namespace: str | None) -> BinaryProvider:
    pipeline = None
    if settings.build.command_template:
        try:
            settings.validate_for_build()
        except ValueError as error:
            raise CliExitError(str(error), exit_code=EXIT_BUILD_FAILED) from error
        pipeline = CommandBuildPipeline(
            command_template=settings.build.command_template,
            work_root=settings.build.work_root,
            timeout_seconds=settings.build.timeout_seconds,
        )
    return BinaryProvider(
        cache=_open_cache(settings),
        pipeline=pipeline,
        namespace=namespace or settings.cache.namespace,
        keep_workdir=settings.build.keep_workdir,
    )


def _resolve(provider: BinaryProvider, version: str, *, label: str) -> Path:
    try:
        return provider.resolve(version, label=label)
    except (BuildError, OSError) as error:
        raise CliExitError(f"Building ({version}): {error}", exit_code=EXIT_BUILD_FAILED) from error


def _runner(
    settings: Settings,
    binary_path: Path,
    env: dict[str, str] | None = None,
) -> DaemonRunner:
    try:
        return DaemonRunner.from_binary_path(
            binary_path,
            config_filename=settings.runner.config_filename,
            scratch_root=settings.runner.scratch_root,
            env=env,
            kill_grace_seconds=settings.runner.kill_grace_seconds,
        )
    except RunnerError as error:
        raise CliExitError(str(error), exit_code=EXIT_BUILD_FAILED) from error


def _node_descriptors(
    command: SimulateCommand,
    *,
    default_version: str,
    overrides: dict[str, dict[str, Any]],
    env_overrides: dict[str, dict[str, Any]],
) -> list[NodeDescriptor]:
    selected = [option for option in command.nodes if option.config_path is not None]
    if not selected:
        raise CliExitError("No config paths provided, exiting", exit_code=EXIT_NO_NODES)

    known_labels = {option.label for option in selected}
    unknown = (set(overrides) | set(env_overrides)) - known_labels
    if unknown:
        raise CliExitError(f"Overrides given for nodes not being run: {', '.join(sorted(unknown))}")

    nodes: list[NodeDescriptor] = []
    for option in selected:
        version = option.version or default_version
        if not version:
            raise CliExitError(
                f"No version provided for {option.label} (set NODEFLEET_DEFAULT_VERSION)",
                exit_code=EXIT_NO_VERSION,
            )
        nodes.append(
            NodeDescriptor(
                label=option.label,
                version=version,
                config_path=option.config_path,
                testnet=command.testnet,
                env={key: str(value) for key, value in env_overrides.get(option.label, {}).items()},
                config_overrides=overrides.get(option.label, {}),
            ),
        )
    return nodes


def _parse_assignments(
    values: tuple[str, ...],
    *,
    parse_json: bool,
) -> dict[str, dict[str, Any]]:
    """Parse ``LABEL:KEY=VALUE`` tokens; JSON values fall back to plain strings."""

    parsed: dict[str, dict[str, Any]] = {}
    for token in values:
        label, separator, assignment = token.partition(":")
        key, equals, raw_value = assignment.partition("=")
        if not separator or not equals or not label.strip() or not key.strip():
            raise ValueError(f"Invalid assignment {token!r}. Expected format 'LABEL:KEY=VALUE'.")
        value: Any = raw_value
        if parse_json:
            try:
                value = json.loads(raw_value)
            except json.JSONDecodeError:
                value = raw_value
        parsed.setdefault(label.strip(), {})[key.strip()] = value
    return parsed


@contextmanager
def _interrupt_on_sigterm() -> Iterator[None]:
    if not hasattr(signal, "SIGTERM"):
        yield
        return

    def _handler(_signum: int, _frame: object | None) -> None:
        raise KeyboardInterrupt

    try:
        original = signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, original)
