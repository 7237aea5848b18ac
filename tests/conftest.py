"""Shared test fixtures."""

from __future__ import annotations

import logging
import os
import stat
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

_FAKE_DAEMON_SCRIPT = """
import json
import os
import signal
import sys
import time
from pathlib import Path

argv = sys.argv[1:]
if argv == ["-v"]:
    print("{version}")
    raise SystemExit(0)

log_path = os.environ.get("FAKE_DAEMON_LOG")
if log_path:
    with open(log_path, "a", encoding="utf-8") as handle:
        handle.write(json.dumps(argv) + "\\n")

command, rest = argv[0], argv[1:]
datadir = None
testnet = False
extra = []
index = 0
while index < len(rest):
    arg = rest[index]
    index += 1
    if arg == "-v":
        continue
    if arg == "-d":
        datadir = rest[index]
        index += 1
    elif arg == "-t":
        testnet = True
    else:
        extra.append(arg)

if command == "init":
    if datadir is None:
        print("init requires a data dir", file=sys.stderr)
        raise SystemExit(1)
    data_path = Path(datadir)
    data_path.mkdir(parents=True, exist_ok=True)
    config_path = data_path / "config"
    if not config_path.exists():
        config = {{
            "Addresses": {{"Gateway": "/ip4/127.0.0.1/tcp/4002", "API": ""}},
            "Datastore": {{"Type": "leveldb"}},
            "Testnet": testnet,
        }}
        config_path.write_text(json.dumps(config, indent=2), "utf-8")
    print("initialized", datadir)
    raise SystemExit(0)

if command == "start":
    if "--fail" in extra:
        print("boom", flush=True)
        raise SystemExit(3)
    mode = "testnet" if testnet else "mainnet"
    print("starting", mode, " ".join(extra), flush=True)
    if "--exit" in extra:
        raise SystemExit(0)
    signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))
    while True:
        time.sleep(0.05)

print("unknown command", command, file=sys.stderr)
raise SystemExit(2)
"""


def write_executable(path: Path, script: str) -> Path:
    """Write a Python script plus a shell launcher at ``path``."""

    implementation = path.parent / f"{path.name}_impl.py"
    implementation.write_text(script.strip() + "\n", "utf-8")
    path.write_text(
        f'#!/usr/bin/env sh\nexec "{sys.executable}" "{implementation}" "$@"\n',
        "utf-8",
    )
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


@pytest.fixture()
def make_fake_daemon(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing fake daemon executables understanding init/start/-v."""

    def _make(name: str = "daemon", version: str = "fake-daemon 1.0") -> Path:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(parents=True, exist_ok=True)
        return write_executable(bin_dir / name, _FAKE_DAEMON_SCRIPT.format(version=version))

    return _make


@pytest.fixture()
def fake_daemon(make_fake_daemon) -> Path:
    return make_fake_daemon()


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path: Path):
    """Keep NODEFLEET_* settings and package logging from leaking between tests."""

    for name in list(os.environ):
        if name.startswith("NODEFLEET_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("NODEFLEET_HOME", str(tmp_path / "home"))

    package_logger = logging.getLogger("nodefleet")
    handlers = list(package_logger.handlers)
    yield
    for handler in list(package_logger.handlers):
        if handler not in handlers:
            package_logger.removeHandler(handler)
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)
