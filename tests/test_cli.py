from __future__ import annotations

import shlex
from pathlib import Path

import allure
from click.testing import CliRunner

from nodefleet import __version__
from nodefleet.build.command_pipeline import binary_filename
from nodefleet.cache import ArtifactCache
from nodefleet.main import nodefleet

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("nodefleet CLI"),
]


def _seed_cache(tmp_path: Path, binary: Path, version: str) -> Path:
    cache = ArtifactCache.open_or_create(tmp_path / "home" / "cache")
    return cache.cache("daemon", version, binary)


def test_version_option() -> None:
    result = CliRunner().invoke(nodefleet, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_simulate_without_config_paths_exits_3() -> None:
    result = CliRunner().invoke(nodefleet, ["simulate"])

    assert result.exit_code == 3
    assert "No config paths provided" in result.output


def test_simulate_without_version_exits_4(tmp_path: Path) -> None:
    result = CliRunner().invoke(nodefleet, ["simulate", "-b", str(tmp_path / "buyer")])

    assert result.exit_code == 4
    assert "No version provided for buyer" in result.output


def test_simulate_rejects_malformed_override(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        nodefleet,
        ["simulate", "-b", str(tmp_path / "buyer"), "--set", "Addresses.Gateway"],
    )

    assert result.exit_code == 1
    assert "Invalid assignment" in result.output


def test_simulate_rejects_override_for_missing_node(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("NODEFLEET_DEFAULT_VERSION", "v1")

    result = CliRunner().invoke(
        nodefleet,
        ["simulate", "-b", str(tmp_path / "buyer"), "--env", "vendor:PORT=4100"],
    )

    assert result.exit_code == 1
    assert "vendor" in result.output


def test_simulate_with_unbuildable_version_exits_2(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("NODEFLEET_SETTLE_SECONDS", "0")

    result = CliRunner().invoke(
        nodefleet,
        ["simulate", "-b", str(tmp_path / "buyer"), "--buyer-version", "v9"],
    )

    assert result.exit_code == 2
    assert "failed=1" in result.output
    assert "buyer:" in result.output


def test_prepare_without_version_exits_4() -> None:
    result = CliRunner().invoke(nodefleet, ["prepare"])

    assert result.exit_code == 4


def test_prepare_without_build_command_exits_5() -> None:
    result = CliRunner().invoke(nodefleet, ["prepare", "v1"])

    assert result.exit_code == 5
    assert "pipeline" in result.output


def test_prepare_builds_then_lists_and_inspects(
    tmp_path: Path,
    monkeypatch,
    fake_daemon: Path,
) -> None:
    monkeypatch.setenv("NODEFLEET_BUILD_COMMAND", f"cp {shlex.quote(str(fake_daemon))} {{output}}")
    runner = CliRunner()

    prepared = runner.invoke(nodefleet, ["prepare", "v1"])
    listed = runner.invoke(nodefleet, ["cache", "list"])
    inspected = runner.invoke(nodefleet, ["inspect", "v1"])

    cached = tmp_path / "home" / "cache" / "daemon" / binary_filename("daemon", "v1")
    assert prepared.exit_code == 0, prepared.output
    assert f"Version v1 is prepared: {cached}" in prepared.output
    assert listed.exit_code == 0
    assert "daemon:" in listed.output
    assert f"v1 -> {cached}" in listed.output
    assert inspected.exit_code == 0
    assert "Reports: fake-daemon 1.0" in inspected.output


def test_cache_list_on_empty_cache() -> None:
    result = CliRunner().invoke(nodefleet, ["cache", "list"])

    assert result.exit_code == 0
    assert "Cache is empty" in result.output


def test_inspect_unknown_version_fails() -> None:
    result = CliRunner().invoke(nodefleet, ["inspect", "v404"])

    assert result.exit_code == 1
    assert "not found" in result.output


def test_start_runs_cached_binary(tmp_path: Path, fake_daemon: Path) -> None:
    _seed_cache(tmp_path, fake_daemon, "v1")

    result = CliRunner().invoke(nodefleet, ["start", "v1", "--exit", "-d", str(tmp_path / "n")])

    assert result.exit_code == 0, result.output
    assert "v1 exited with status 0" in result.output


def test_start_reports_daemon_failure_with_exit_2(tmp_path: Path, fake_daemon: Path) -> None:
    _seed_cache(tmp_path, fake_daemon, "v1")

    result = CliRunner().invoke(nodefleet, ["start", "v1", "--fail"])

    assert result.exit_code == 2
    assert "v1 returned (3)" in result.output
