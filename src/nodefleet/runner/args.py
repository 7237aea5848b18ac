"""Extraction of runner-owned flags from daemon pass-through arguments."""

from __future__ import annotations

from dataclasses import dataclass, field

_DATA_PATH_SHORT = "-d"
_DATA_PATH_LONG = "--datadir"
_TESTNET_FLAGS = frozenset({"-t", "--testnet"})


@dataclass(slots=True)
class FilteredArgs:
    """Recognized start options plus everything else, order preserved."""

    data_path: str | None = None
    testnet: bool | None = None
    remaining: list[str] = field(default_factory=list)


def filter_start_args(args: list[str] | tuple[str, ...]) -> FilteredArgs:
    """Split ``-d``/``--datadir`` and ``-t``/``--testnet`` out of ``args``.

    A data-path flag with no value after it is dropped without setting a
    path. Unrecognized arguments are always kept.
    """

    result = FilteredArgs()
    index = 0
    while index < len(args):
        arg = args[index]
        index += 1

        if arg in _TESTNET_FLAGS:
            result.testnet = True
            continue

        if arg in (_DATA_PATH_SHORT, _DATA_PATH_LONG):
            if index < len(args):
                result.data_path = args[index]
                index += 1
            continue

        inline = _inline_data_path(arg)
        if inline is not None:
            result.data_path = inline
            continue

        result.remaining.append(arg)
    return result


def _inline_data_path(arg: str) -> str | None:
    if arg.startswith(_DATA_PATH_LONG + "="):
        return arg[len(_DATA_PATH_LONG) + 1 :] or None
    if arg.startswith(_DATA_PATH_SHORT) and not arg.startswith("--") and len(arg) > 2:
        value = arg[2:]
        if value.startswith("="):
            value = value[1:]
        return value or None
    return None
