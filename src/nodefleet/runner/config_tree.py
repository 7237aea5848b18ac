"""Dotted-path access into untyped JSON documents."""

from __future__ import annotations

from typing import Any


class ConfigPathError(KeyError):
    """Dotted path does not resolve to a settable location."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


def split_path(dotted_path: str) -> list[str]:
    segments = dotted_path.split(".")
    if not dotted_path or any(not segment for segment in segments):
        raise ConfigPathError(f"Invalid config path: {dotted_path!r}")
    return segments


def set_path_value(tree: dict[str, Any], segments: list[str], value: Any) -> None:
    """Set the leaf at ``segments``; every intermediate must be an existing object.

    The leaf may hold or receive any JSON value; arrays and objects are
    replaced whole.
    """

    head, *rest = segments
    if not rest:
        tree[head] = value
        return
    if head not in tree:
        raise ConfigPathError(f"Path segment ({head}) not found")
    child = tree[head]
    if not isinstance(child, dict):
        raise ConfigPathError(
            f"Path segment ({head}) is {type(child).__name__}, not an object",
        )
    set_path_value(child, rest, value)


def get_path_value(tree: dict[str, Any], segments: list[str]) -> Any:
    head, *rest = segments
    if head not in tree:
        raise ConfigPathError(f"Path segment ({head}) not found")
    child = tree[head]
    if not rest:
        return child
    if not isinstance(child, dict):
        raise ConfigPathError(
            f"Path segment ({head}) is {type(child).__name__}, not an object",
        )
    return get_path_value(child, rest)
