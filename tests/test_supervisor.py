from __future__ import annotations

import json
import os
import signal
import threading
import time
from pathlib import Path

import allure
import pytest

from nodefleet.build import BuildError
from nodefleet.orchestrator import FleetSupervisor, NodeDescriptor
from nodefleet.runner import DaemonRunner

pytestmark = [
    allure.epic("Fleet Orchestration"),
    allure.feature("Concurrent Shutdown"),
]


class _FakeRunner:
    """Runner double recording lifecycle calls without spawning processes."""

    def __init__(self, label: str) -> None:
        self.label = label
        self.started = False
        self.cleanups = 0
        self.data_path: Path | None = None
        self.testnet = False
        self._write_fd: int | None = None

    def set_custom_data_path(self, path: Path) -> None:
        self.data_path = path

    def set_testnet_mode(self, enabled: bool) -> None:
        self.testnet = enabled

    def with_args(self, args: list[str]) -> _FakeRunner:
        return self

    def split_output(self):
        read_fd, self._write_fd = os.pipe()
        os.write(self._write_fd, f"{self.label} ready\n".encode())
        return open(read_fd, encoding="utf-8")  # noqa: SIM115

    def async_start(self) -> _FakeRunner:
        self.started = True
        return self

    def cleanup(self) -> None:
        self.cleanups += 1
        if self._write_fd is not None:
            os.close(self._write_fd)
            self._write_fd = None


class _StaticBinaries:
    def __init__(self, binary: Path, failing: frozenset[str] = frozenset()) -> None:
        self.binary = binary
        self.failing = failing
        self.requests: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def resolve(self, version: str, *, label: str = "build") -> Path:
        with self._lock:
            self.requests.append((label, version))
        if label in self.failing:
            raise BuildError(f"build of {version} failed")
        return self.binary


def _nodes(tmp_path: Path, labels: tuple[str, ...] = ("buyer", "vendor", "moderator")):
    return [
        NodeDescriptor(label=label, version="v1", config_path=tmp_path / label)
        for label in labels
    ]


def _fake_factory(runners: dict[str, _FakeRunner], runner_type: type[_FakeRunner] = _FakeRunner):
    lock = threading.Lock()

    def _factory(binary_path: Path, node: NodeDescriptor) -> _FakeRunner:
        runner = runner_type(node.label)
        with lock:
            runners[node.label] = runner
        return runner

    return _factory


def _when_registered(supervisor: FleetSupervisor, count: int, action, timeout: float = 10.0):
    def _watch() -> None:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if len(supervisor.registered_labels()) >= count:
                action()
                return
            time.sleep(0.01)

    thread = threading.Thread(target=_watch, daemon=True)
    thread.start()
    return thread


def test_termination_signal_cleans_every_node_once(tmp_path: Path) -> None:
    runners: dict[str, _FakeRunner] = {}
    supervisor = FleetSupervisor(
        binaries=_StaticBinaries(tmp_path / "daemon"),
        runner_factory=_fake_factory(runners),
        settle_seconds=0.0,
        poll_interval_seconds=0.01,
    )
    watcher = _when_registered(supervisor, 3, lambda: os.kill(os.getpid(), signal.SIGTERM))

    summary = supervisor.run(_nodes(tmp_path))
    watcher.join(timeout=5)

    assert summary.ok
    assert summary.stop_reason == "SIGTERM"
    assert sorted(summary.started) == ["buyer", "moderator", "vendor"]
    assert summary.cleanups_invoked == 3
    assert supervisor.active_count() == 0
    assert all(runner.started for runner in runners.values())
    assert [runner.cleanups for runner in runners.values()] == [1, 1, 1]


def test_repeated_shutdown_requests_clean_once(tmp_path: Path) -> None:
    runners: dict[str, _FakeRunner] = {}
    supervisor = FleetSupervisor(
        binaries=_StaticBinaries(tmp_path / "daemon"),
        runner_factory=_fake_factory(runners),
        settle_seconds=0.0,
        poll_interval_seconds=0.01,
    )

    def _stop_twice() -> None:
        supervisor.request_shutdown(reason="test")
        supervisor.request_shutdown(reason="again")

    _when_registered(supervisor, 2, _stop_twice)
    summary = supervisor.run(_nodes(tmp_path, ("buyer", "vendor")))

    assert summary.stop_reason == "test"
    assert summary.cleanups_invoked == 2
    assert [runner.cleanups for runner in runners.values()] == [1, 1]


def test_failed_node_stops_the_fleet(tmp_path: Path) -> None:
    runners: dict[str, _FakeRunner] = {}
    supervisor = FleetSupervisor(
        binaries=_StaticBinaries(tmp_path / "daemon", failing=frozenset({"vendor"})),
        runner_factory=_fake_factory(runners),
        settle_seconds=0.0,
        poll_interval_seconds=0.01,
    )

    summary = supervisor.run(_nodes(tmp_path))

    assert not summary.ok
    assert summary.failed == {"vendor": "build of v1 failed"}
    assert summary.stop_reason == "node_failed"
    assert sorted(summary.started) == ["buyer", "moderator"]
    assert "vendor" not in runners
    assert [runners[label].cleanups for label in ("buyer", "moderator")] == [1, 1]


def test_nodes_launched_after_shutdown_are_skipped(tmp_path: Path) -> None:
    runners: dict[str, _FakeRunner] = {}
    supervisor = FleetSupervisor(
        binaries=_StaticBinaries(tmp_path / "daemon"),
        runner_factory=_fake_factory(runners),
        settle_seconds=0.0,
        poll_interval_seconds=0.01,
    )
    supervisor.request_shutdown(reason="early")

    summary = supervisor.run(_nodes(tmp_path))

    assert summary.started == []
    assert sorted(summary.skipped) == ["buyer", "moderator", "vendor"]
    assert summary.cleanups_invoked == 0
    assert all(not runner.started and runner.cleanups == 1 for runner in runners.values())


def test_shutdown_while_node_is_starting_stops_it(tmp_path: Path) -> None:
    runners: dict[str, _FakeRunner] = {}
    supervisor: FleetSupervisor | None = None

    class _InterruptedRunner(_FakeRunner):
        def async_start(self) -> _FakeRunner:
            super().async_start()
            supervisor.request_shutdown(reason="SIGINT")
            return self

    supervisor = FleetSupervisor(
        binaries=_StaticBinaries(tmp_path / "daemon"),
        runner_factory=_fake_factory(runners, _InterruptedRunner),
        settle_seconds=0.0,
        poll_interval_seconds=0.01,
    )

    summary = supervisor.run(_nodes(tmp_path, ("buyer",)))

    assert summary.ok
    assert summary.stop_reason == "SIGINT"
    assert summary.started == []
    assert summary.skipped == ["buyer"]
    assert summary.cleanups_invoked == 0
    assert supervisor.registered_labels() == []
    assert runners["buyer"].started
    assert runners["buyer"].cleanups == 1


def test_nodes_start_concurrently(tmp_path: Path) -> None:
    runners: dict[str, _FakeRunner] = {}
    all_starting = threading.Barrier(3, timeout=5)

    class _RendezvousRunner(_FakeRunner):
        def async_start(self) -> _FakeRunner:
            all_starting.wait()
            return super().async_start()

    supervisor = FleetSupervisor(
        binaries=_StaticBinaries(tmp_path / "daemon"),
        runner_factory=_fake_factory(runners, _RendezvousRunner),
        settle_seconds=0.0,
        poll_interval_seconds=0.01,
    )
    _when_registered(supervisor, 3, lambda: supervisor.request_shutdown(reason="test"))

    summary = supervisor.run(_nodes(tmp_path))

    assert summary.failed == {}
    assert sorted(summary.started) == ["buyer", "moderator", "vendor"]
    assert [runner.cleanups for runner in runners.values()] == [1, 1, 1]


def test_fleet_of_real_daemons(tmp_path: Path, fake_daemon: Path) -> None:
    runners: list[DaemonRunner] = []
    lock = threading.Lock()

    def _factory(binary_path: Path, node: NodeDescriptor) -> DaemonRunner:
        runner = DaemonRunner.from_binary_path(
            binary_path,
            scratch_root=tmp_path / "scratch",
            env=node.env,
        )
        with lock:
            runners.append(runner)
        return runner

    nodes = [
        NodeDescriptor(
            label="buyer",
            version="v1",
            config_path=tmp_path / "buyer",
            testnet=True,
            config_overrides={"Addresses.Gateway": "/ip4/127.0.0.1/tcp/14002"},
        ),
        NodeDescriptor(label="vendor", version="v1", config_path=tmp_path / "vendor"),
    ]
    supervisor = FleetSupervisor(
        binaries=_StaticBinaries(fake_daemon),
        runner_factory=_factory,
        settle_seconds=0.05,
        poll_interval_seconds=0.01,
    )
    _when_registered(supervisor, 2, lambda: supervisor.request_shutdown(reason="test"))

    summary = supervisor.run(nodes)

    assert summary.ok
    assert sorted(summary.started) == ["buyer", "vendor"]
    assert summary.cleanups_invoked == 2
    assert all(not runner.is_running() for runner in runners)
    assert all(runner.exit_status() is not None for runner in runners)

    buyer_config = json.loads((tmp_path / "buyer" / "config").read_text("utf-8"))
    assert buyer_config["Addresses"]["Gateway"] == "/ip4/127.0.0.1/tcp/14002"
    assert buyer_config["Testnet"] is True
    buyer = next(runner for runner in runners if runner.data_path == tmp_path / "buyer")
    assert buyer.snapshot_path is not None
    snapshot_config = json.loads((buyer.snapshot_path / "config").read_text("utf-8"))
    assert snapshot_config["Addresses"]["Gateway"] == "/ip4/127.0.0.1/tcp/4002"


@pytest.mark.parametrize("reason", ["SIGINT", "manual"])
def test_shutdown_reason_is_first_request(tmp_path: Path, reason: str) -> None:
    supervisor = FleetSupervisor(
        binaries=_StaticBinaries(tmp_path / "daemon"),
        runner_factory=_fake_factory({}),
        settle_seconds=0.0,
        poll_interval_seconds=0.01,
    )

    supervisor.request_shutdown(reason=reason)
    supervisor.request_shutdown(reason="later")

    assert supervisor.summary().stop_reason == reason
