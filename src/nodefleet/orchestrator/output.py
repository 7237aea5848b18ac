"""Forwarding of node process output into loggers."""

from __future__ import annotations

import logging
import threading
from typing import TextIO


def pump_output(stream: TextIO, node_log: logging.Logger) -> None:
    """Log each line from ``stream`` until EOF, then close it."""

    with stream:
        try:
            for line in stream:
                node_log.info("%s", line.rstrip("\n"))
        except (OSError, ValueError) as error:
            node_log.error("Error reading node output (%s): %s", node_log.name, error)


def start_output_pump(stream: TextIO, node_log: logging.Logger) -> threading.Thread:
    thread = threading.Thread(
        target=pump_output,
        args=(stream, node_log),
        daemon=True,
        name=f"output-{node_log.name}",
    )
    thread.start()
    return thread
