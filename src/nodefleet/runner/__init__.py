"""Daemon process runner."""

from nodefleet.runner.args import FilteredArgs, filter_start_args
from nodefleet.runner.config_tree import ConfigPathError
from nodefleet.runner.daemon import (
    AlreadyRunningError,
    BinaryNotFoundError,
    DaemonExitError,
    DaemonRunner,
    NotInitializedError,
    ProcessNotRunningError,
    RunnerCleanupError,
    RunnerError,
    RunnerState,
    StateSnapshotError,
    TransactionWhileRunningError,
)

__all__ = [
    "AlreadyRunningError",
    "BinaryNotFoundError",
    "ConfigPathError",
    "DaemonExitError",
    "DaemonRunner",
    "FilteredArgs",
    "NotInitializedError",
    "ProcessNotRunningError",
    "RunnerCleanupError",
    "RunnerError",
    "RunnerState",
    "StateSnapshotError",
    "TransactionWhileRunningError",
    "filter_start_args",
]
