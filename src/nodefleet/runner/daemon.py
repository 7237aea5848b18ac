"""Stateful wrapper around one daemon binary invocation."""

from __future__ import annotations

import json
import logging
import os
import shutil
import stat
import subprocess
from enum import IntEnum
from pathlib import Path
from typing import Any, TextIO

from nodefleet.paths import generate_temp_path
from nodefleet.process import terminate_process
from nodefleet.runner.args import filter_start_args
from nodefleet.runner.config_tree import get_path_value, set_path_value, split_path

logger = logging.getLogger(__name__)


class RunnerState(IntEnum):
    """Lifecycle of a runner; ordering matters for "at least initialized" checks."""

    READY = 0
    INITIALIZED = 1
    RUNNING = 2


class RunnerError(RuntimeError):
    """Base class for runner failures."""


class BinaryNotFoundError(RunnerError):
    """Daemon binary does not exist."""


class NotInitializedError(RunnerError):
    """Config values can only be set on an initialized node."""


class TransactionWhileRunningError(RunnerError):
    """State transaction cannot begin while the daemon is running."""


class ProcessNotRunningError(RunnerError):
    """No subprocess is owned by the runner."""


class AlreadyRunningError(RunnerError):
    """A subprocess is already owned by the runner."""


class StateSnapshotError(RunnerError):
    """Copying node state failed."""

    def __init__(self, message: str, *, path: Path | None) -> None:
        super().__init__(message)
        self.path = path


class DaemonExitError(RunnerError):
    """Daemon subcommand exited with a non-zero status."""

    def __init__(self, command: list[str], exit_code: int, output: str = "") -> None:
        summary = f"{' '.join(command)} exited with status {exit_code}"
        if output:
            summary = f"{summary}: {output[-500:]}"
        super().__init__(summary)
        self.command = command
        self.exit_code = exit_code
        self.output = output


class RunnerCleanupError(RunnerError):
    """One or more cleanup steps failed; every step was still attempted."""

    def __init__(self, errors: list[Exception]) -> None:
        super().__init__("; ".join(str(error) for error in errors))
        self.errors = errors


class DaemonRunner:
    """Controls the runtime operations of one daemon binary.

    The runner exclusively owns its subprocess and its output pipe. Callers
    must call :meth:`cleanup` once the runner is no longer used.
    """

    VERSION_FLAG = "-v"

    def __init__(
        self,
        binary_path: Path,
        *,
        config_filename: str = "config",
        scratch_root: Path | None = None,
        env: dict[str, str] | None = None,
        kill_grace_seconds: float = 0.0,
    ) -> None:
        self._binary_path = binary_path
        self.config_filename = config_filename
        self.scratch_root = scratch_root
        self.env = dict(env or {})
        self.kill_grace_seconds = kill_grace_seconds

        self._state = RunnerState.READY
        self._data_path: Path | None = None
        self._testnet = False
        self._additional_args: list[str] = []
        self._snapshot_path: Path | None = None
        self._process: subprocess.Popen[bytes] | None = None
        self._tee_fd: int | None = None
        self._last_exit_status: int | None = None

    @classmethod
    def from_binary_path(cls, path: Path, **kwargs: Any) -> DaemonRunner:
        """Return a runner for the binary at ``path``."""

        if not path.exists():
            raise BinaryNotFoundError(f"Binary not found: {path}")
        return cls(path, **kwargs)

    @property
    def binary_path(self) -> Path:
        return self._binary_path

    @property
    def state(self) -> RunnerState:
        return self._state

    @property
    def data_path(self) -> Path | None:
        return self._data_path

    @property
    def testnet(self) -> bool:
        return self._testnet

    @property
    def additional_args(self) -> list[str]:
        return list(self._additional_args)

    @property
    def snapshot_path(self) -> Path | None:
        return self._snapshot_path

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    # -- configuration ---------------------------------------------------------

    def set_custom_data_path(self, path: Path | str) -> None:
        """Use the state data at ``path``; an existing directory resumes that node."""

        self._data_path = Path(path)
        if self._data_path.exists() and self._state < RunnerState.INITIALIZED:
            self._state = RunnerState.INITIALIZED

    def set_testnet_mode(self, enabled: bool) -> None:
        self._testnet = enabled

    def with_args(self, args: list[str] | tuple[str, ...] | None) -> DaemonRunner:
        """Apply data-path/testnet flags from ``args`` and keep the rest for ``start``."""

        if args is None:
            return self
        filtered = filter_start_args(list(args))
        if filtered.testnet is not None:
            self.set_testnet_mode(filtered.testnet)
        if filtered.data_path is not None:
            self.set_custom_data_path(filtered.data_path)
        self._additional_args = filtered.remaining
        return self

    def config_path(self) -> Path:
        if self._data_path is None:
            raise NotInitializedError("Node has no data path")
        return self._data_path / self.config_filename

    def set_config_value(self, dotted_path: str, value: Any) -> None:
        """Follow ``dotted_path`` into the JSON config and replace its leaf with ``value``."""

        if self._state < RunnerState.INITIALIZED:
            raise NotInitializedError("Node must be initialized before setting config values")
        segments = split_path(dotted_path)
        config_path = self.config_path()
        config, mode = _read_config(config_path)
        set_path_value(config, segments, value)

        try:
            config_path.write_text(json.dumps(config, ensure_ascii=False, indent=2) + "\n", "utf-8")
            config_path.chmod(mode)
        except OSError as error:
            raise RunnerError(f"Writing config changes ({config_path}): {error}") from error
        logger.debug("Set %s in %s", dotted_path, config_path)

    def get_config_value(self, dotted_path: str) -> Any:
        if self._state < RunnerState.INITIALIZED:
            raise NotInitializedError("Node must be initialized before reading config values")
        config, _ = _read_config(self.config_path())
        return get_path_value(config, split_path(dotted_path))

    def begin_node_state_transaction(self) -> Path:
        """Snapshot the node's data directory into a fresh scratch location."""

        if self._state == RunnerState.RUNNING:
            raise TransactionWhileRunningError("State transaction cannot begin when running")
        if self._data_path is None or not self._data_path.is_dir():
            raise StateSnapshotError(
                f"Node state directory not found: {self._data_path}",
                path=self._data_path,
            )

        holder = generate_temp_path(self.scratch_root, f"state_{self._data_path.name}")
        snapshot = holder / "state"
        try:
            shutil.copytree(self._data_path, snapshot, symlinks=True)
        except OSError as error:
            shutil.rmtree(holder, ignore_errors=True)
            raise StateSnapshotError(
                f"Copying node state ({self._data_path} -> {snapshot}): {error}",
                path=self._data_path,
            ) from error

        self._snapshot_path = snapshot
        logger.info("Snapshotted node state %s to %s", self._data_path, snapshot)
        return snapshot

    # -- output ----------------------------------------------------------------

    def split_output(self) -> TextIO:
        """Return a stream receiving the daemon's combined stdout and stderr.

        Must be called before the daemon is started. The stream reaches EOF
        once :meth:`cleanup` has run and the daemon has exited.
        """

        if self._tee_fd is not None:
            raise RunnerError("Output is already split")
        read_fd, write_fd = os.pipe()
        self._tee_fd = write_fd
        return open(read_fd, encoding="utf-8", errors="replace")  # noqa: SIM115

    # -- process control -------------------------------------------------------

    def init(self) -> DaemonRunner:
        """Synchronously initialize the node; no-op if already initialized."""

        if self._state >= RunnerState.INITIALIZED:
            return self
        command = self._subcommand("init")
        exit_code, output = self._run_sync(command)
        if exit_code != 0:
            raise DaemonExitError(command, exit_code, output)
        self._state = RunnerState.INITIALIZED
        return self

    def async_start(self) -> DaemonRunner:
        """Launch the daemon and return without waiting for readiness."""

        self._require_idle()
        command = self._start_command()
        stdout, stderr = self._output_targets(default=subprocess.DEVNULL)
        self._process = self._popen(command, stdout=stdout, stderr=stderr)
        self._state = RunnerState.RUNNING
        logger.info("Started %s (pid %s)", self._binary_path.name, self._process.pid)
        return self

    def run_start(self) -> int:
        """Run the daemon in the foreground until it exits.

        Without a split output the daemon writes to the caller's terminal.
        """

        self._require_idle()
        command = self._start_command()
        stdout, stderr = self._output_targets(default=None)
        self._process = self._popen(command, stdout=stdout, stderr=stderr)
        self._state = RunnerState.RUNNING
        process = self._process
        exit_code = process.wait()
        self._last_exit_status = exit_code
        if self._process is process:
            self._process = None
            self._state = self._resting_state()
        if exit_code != 0:
            raise DaemonExitError(command, exit_code)
        return exit_code

    def kill(self, grace_seconds: float | None = None) -> None:
        """Stop the daemon and return the runner to the ready state."""

        process = self._process
        if process is None:
            raise ProcessNotRunningError("No daemon process to kill")
        self._state = RunnerState.READY
        grace = self.kill_grace_seconds if grace_seconds is None else grace_seconds
        try:
            self._last_exit_status = terminate_process(process, grace_seconds=grace)
        except (OSError, subprocess.TimeoutExpired) as error:
            raise RunnerError(f"Killing daemon (pid {process.pid}): {error}") from error
        finally:
            self._process = None
        logger.info("Stopped %s (pid %s)", self._binary_path.name, process.pid)

    def cleanup(self) -> None:
        """Kill the daemon if running and close the output pipe; attempt both."""

        errors: list[Exception] = []
        if self._process is not None:
            try:
                self.kill()
            except RunnerError as error:
                errors.append(RunnerError(f"Process cleanup: {error}"))
        if self._tee_fd is not None:
            tee_fd, self._tee_fd = self._tee_fd, None
            try:
                os.close(tee_fd)
            except OSError as error:
                errors.append(RunnerError(f"Tee cleanup: {error}"))
        if errors:
            raise RunnerCleanupError(errors)

    def version(self) -> str:
        """Return the version string reported by the binary."""

        command = [str(self._binary_path), self.VERSION_FLAG]
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                env=self._environment(),
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as error:
            raise RunnerError(f"Getting version: {error}") from error
        if completed.returncode != 0:
            raise DaemonExitError(command, completed.returncode, completed.stderr.strip())
        return completed.stdout.strip()

    def exit_status(self) -> int | None:
        """Exit status of the last finished subprocess, ``None`` if none finished."""

        if self._process is not None:
            return self._process.poll()
        return self._last_exit_status

    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    # -- internals -------------------------------------------------------------

    def _subcommand(self, name: str) -> list[str]:
        command = [str(self._binary_path), name, "-v"]
        if self._data_path is not None:
            command.extend(["-d", str(self._data_path)])
        if self._testnet:
            command.append("-t")
        return command

    def _start_command(self) -> list[str]:
        return [*self._subcommand("start"), *self._additional_args]

    def _output_targets(self, *, default: int | None) -> tuple[int | None, int | None]:
        if self._tee_fd is not None:
            return self._tee_fd, subprocess.STDOUT
        return default, default

    def _run_sync(self, command: list[str]) -> tuple[int, str]:
        if self._tee_fd is not None:
            process = self._popen(command, stdout=self._tee_fd, stderr=subprocess.STDOUT)
            exit_code = process.wait()
            self._last_exit_status = exit_code
            return exit_code, ""
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                env=self._environment(),
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as error:
            raise RunnerError(f"Running {command[1]}: {error}") from error
        self._last_exit_status = completed.returncode
        return completed.returncode, (completed.stdout + completed.stderr).strip()

    def _popen(
        self,
        command: list[str],
        *,
        stdout: int | None,
        stderr: int | None,
    ) -> subprocess.Popen[bytes]:
        logger.debug("Running %s", " ".join(command))
        try:
            return subprocess.Popen(  # noqa: S603
                command,
                env=self._environment(),
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
            )
        except OSError as error:
            raise RunnerError(f"Starting {command[0]}: {error}") from error

    def _environment(self) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.env)
        return env

    def _require_idle(self) -> None:
        if self._process is not None and self._process.poll() is None:
            raise AlreadyRunningError(f"Daemon already running (pid {self._process.pid})")

    def _resting_state(self) -> RunnerState:
        if self._data_path is not None and self._data_path.exists():
            return RunnerState.INITIALIZED
        return RunnerState.READY


def _read_config(config_path: Path) -> tuple[dict[str, Any], int]:
    try:
        mode = stat.S_IMODE(config_path.stat().st_mode)
        config = json.loads(config_path.read_text("utf-8"))
    except FileNotFoundError as error:
        raise RunnerError(f"Could not find config at ({config_path})") from error
    except OSError as error:
        raise RunnerError(f"Reading config ({config_path}): {error}") from error
    except UnicodeDecodeError as error:
        raise RunnerError(f"Reading config ({config_path}): not UTF-8: {error}") from error
    except json.JSONDecodeError as error:
        raise RunnerError(f"Unmarshal config ({config_path}): {error}") from error
    if not isinstance(config, dict):
        raise RunnerError(f"Expected JSON object in {config_path}")
    return config, mode
