"""Concurrent start-up and collective shutdown of daemon nodes."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from nodefleet.logs import node_logger
from nodefleet.orchestrator.nodes import FleetRunSummary, NodeDescriptor
from nodefleet.orchestrator.output import start_output_pump
from nodefleet.runner import DaemonRunner, RunnerError

logger = logging.getLogger(__name__)

RunnerFactory = Callable[[Path, NodeDescriptor], DaemonRunner]


class BinarySource(Protocol):
    """Anything that turns a version into a runnable binary path."""

    def resolve(self, version: str, *, label: str = "build") -> Path:
        """Return an executable path for ``version``."""


class _ActiveNodes:
    """Counts nodes whose shutdown has not completed yet."""

    def __init__(self) -> None:
        self._count = 0
        self._condition = threading.Condition()

    def add(self) -> None:
        with self._condition:
            self._count += 1

    def done(self) -> None:
        with self._condition:
            self._count -= 1
            if self._count <= 0:
                self._condition.notify_all()

    def wait(self, timeout: float) -> bool:
        with self._condition:
            return self._condition.wait_for(lambda: self._count <= 0, timeout=timeout)

    @property
    def count(self) -> int:
        with self._condition:
            return self._count


@dataclass(slots=True)
class _CleanupEntry:
    label: str
    close: Callable[[], None]
    _invoked: bool = False
    _guard: threading.Lock = field(default_factory=threading.Lock)

    def claim(self) -> bool:
        """Return True for exactly one caller."""

        with self._guard:
            if self._invoked:
                return False
            self._invoked = True
            return True


class FleetSupervisor:
    """Starts one runner per node descriptor and tears them down together.

    Every node is built, configured and started on its own thread. Started
    nodes register a cleanup closure; a termination signal (or
    :meth:`request_shutdown`) invokes all registered closures concurrently,
    each exactly once. :meth:`run` returns only after every node reported
    its shutdown complete.
    """

    def __init__(
        self,
        *,
        binaries: BinarySource,
        runner_factory: RunnerFactory,
        settle_seconds: float = 1.0,
        poll_interval_seconds: float = 0.2,
    ) -> None:
        self.binaries = binaries
        self.runner_factory = runner_factory
        self.settle_seconds = settle_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._registry: list[_CleanupEntry] = []
        self._registry_lock = threading.RLock()
        self._active = _ActiveNodes()
        self._stop = threading.Event()
        self._stop_reason: str | None = None
        self._node_threads: list[threading.Thread] = []
        self._summary = FleetRunSummary()
        self._summary_lock = threading.Lock()

    def run(self, nodes: list[NodeDescriptor]) -> FleetRunSummary:
        """Start ``nodes`` and block until all of them have shut down."""

        with self._signal_handlers():
            self.launch(nodes)
            self._await_node_threads()
            if self._summary.failed and not self._stop.is_set():
                logger.error("Nodes failed to start: %s", ", ".join(sorted(self._summary.failed)))
                self.request_shutdown(reason="node_failed")
            self.wait()
        return self.summary()

    def launch(self, nodes: list[NodeDescriptor]) -> None:
        for node in nodes:
            self._active.add()
            thread = threading.Thread(
                target=self._run_node,
                args=(node,),
                daemon=True,
                name=f"node-{node.label}",
            )
            self._node_threads.append(thread)
            thread.start()

    def wait(self) -> None:
        """Block until every launched node has completed its shutdown."""

        while not self._active.wait(timeout=self.poll_interval_seconds):
            continue

    def request_shutdown(self, *, reason: str) -> None:
        """Invoke every registered cleanup closure concurrently."""

        with self._registry_lock:
            if self._stop_reason is None:
                self._stop_reason = reason
            self._stop.set()
            entries = list(self._registry)

        logger.info("Shutting down %d node(s) (%s)", len(entries), reason)
        for entry in entries:
            threading.Thread(
                target=self._invoke_cleanup,
                args=(entry,),
                daemon=True,
                name=f"cleanup-{entry.label}",
            ).start()

    def registered_labels(self) -> list[str]:
        with self._registry_lock:
            return [entry.label for entry in self._registry]

    def active_count(self) -> int:
        return self._active.count

    def summary(self) -> FleetRunSummary:
        with self._summary_lock:
            return FleetRunSummary(
                started=list(self._summary.started),
                failed=dict(self._summary.failed),
                skipped=list(self._summary.skipped),
                stop_reason=self._stop_reason,
                cleanups_invoked=self._summary.cleanups_invoked,
            )

    def _run_node(self, node: NodeDescriptor) -> None:
        runner: DaemonRunner | None = None
        try:
            binary_path = self.binaries.resolve(node.version, label=node.label)
            runner = self.runner_factory(binary_path, node)
            _configure_runner(runner, node)
            start_output_pump(runner.split_output(), node_logger(node.label))

            if self._stop.is_set():
                logger.info("Shutdown requested before %s started, skipping", node.label)
                self._record_skipped(node.label)
            else:
                runner.async_start()
                if self._register(node, runner):
                    return
                logger.info("Shutdown requested while %s was starting, stopping it", node.label)
                self._record_skipped(node.label)
        except Exception as error:  # noqa: BLE001
            logger.error("Running node %s: %s", node.label, error)
            with self._summary_lock:
                self._summary.failed[node.label] = str(error)

        if runner is not None:
            _cleanup_quietly(node.label, runner)
        self._active.done()

    def _register(self, node: NodeDescriptor, runner: DaemonRunner) -> bool:
        """Register a started runner unless shutdown has already begun."""

        with self._registry_lock:
            if self._stop.is_set():
                return False
            self._registry.append(
                _CleanupEntry(
                    label=node.label,
                    close=lambda: self._close_node(node.label, runner),
                ),
            )
        with self._summary_lock:
            self._summary.started.append(node.label)
        logger.info("Node %s started (version %s)", node.label, node.version)
        return True

    def _record_skipped(self, label: str) -> None:
        with self._summary_lock:
            self._summary.skipped.append(label)

    def _invoke_cleanup(self, entry: _CleanupEntry) -> None:
        if not entry.claim():
            return
        with self._summary_lock:
            self._summary.cleanups_invoked += 1
        entry.close()

    def _close_node(self, label: str, runner: DaemonRunner) -> None:
        try:
            _cleanup_quietly(label, runner)
            time.sleep(self.settle_seconds)
        finally:
            self._active.done()
            logger.info("Node %s stopped", label)

    def _await_node_threads(self) -> None:
        for thread in self._node_threads:
            while thread.is_alive():
                thread.join(timeout=self.poll_interval_seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Interrupted (%s), killing nodes...", name)
            self.request_shutdown(reason=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _configure_runner(runner: DaemonRunner, node: NodeDescriptor) -> None:
    runner.set_custom_data_path(node.config_path)
    runner.set_testnet_mode(node.testnet)
    runner.with_args(list(node.args))
    if not node.config_overrides:
        return
    runner.init()
    runner.begin_node_state_transaction()
    for dotted_path, value in node.config_overrides.items():
        runner.set_config_value(dotted_path, value)


def _cleanup_quietly(label: str, runner: DaemonRunner) -> None:
    try:
        runner.cleanup()
    except RunnerError as error:
        logger.error("Cleanup of node %s: %s", label, error)
