"""Console logging setup for the CLI."""

from __future__ import annotations

import logging

from rich.logging import RichHandler

_ROOT_LOGGER = "nodefleet"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach a rich console handler to the package logger once."""

    root = logging.getLogger(_ROOT_LOGGER)
    root.setLevel(level.upper())
    if not any(isinstance(handler, RichHandler) for handler in root.handlers):
        handler = RichHandler(rich_tracebacks=True, show_time=False, show_path=False)
        handler.setFormatter(logging.Formatter("%(name)s ▶ %(message)s"))
        root.addHandler(handler)
    root.propagate = False
    return root


def node_logger(label: str) -> logging.Logger:
    """Return the logger that receives one node's process output."""

    return logging.getLogger(f"{_ROOT_LOGGER}.node.{label}")
