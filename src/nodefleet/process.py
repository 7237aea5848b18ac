"""Child process termination shared by build commands and daemon runners."""

from __future__ import annotations

import subprocess

_REAP_TIMEOUT_SECONDS = 5.0


def terminate_process(
    process: subprocess.Popen[str] | subprocess.Popen[bytes],
    grace_seconds: float = 2.0,
) -> int | None:
    """Stop ``process`` and return its exit status.

    With a positive ``grace_seconds`` the process is asked to exit (SIGTERM)
    first and only killed when it does not; otherwise it is killed outright.
    """

    if grace_seconds > 0:
        try:
            process.terminate()
        except OSError:
            return process.poll()
        try:
            return process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            pass

    try:
        process.kill()
    except OSError:
        return process.poll()
    return process.wait(timeout=_REAP_TIMEOUT_SECONDS)
