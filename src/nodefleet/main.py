"""CLI entrypoint for nodefleet."""

from collections.abc import Callable
from pathlib import Path

import rich_click as click

from nodefleet import __version__
from nodefleet.controllers import (
    CacheListCommand,
    CliExitError,
    FleetCliController,
    InspectCommand,
    NodeOption,
    PrepareCommand,
    SimulateCommand,
    StartCommand,
)
from nodefleet.logs import configure_logging

click.rich_click.USE_MARKDOWN = True
FLEET_CONTROLLER = FleetCliController()


class FleetCommandError(click.ClickException):
    """ClickException carrying a command-specific exit code."""

    def __init__(self, message: str, exit_code: int) -> None:
        super().__init__(message)
        self.exit_code = exit_code


@click.group()
@click.version_option(version=__version__, prog_name="nodefleet")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Log level for nodefleet and node output.",
)
def nodefleet(log_level: str) -> None:
    """Build, cache and run daemon binaries, alone or as a local fleet."""

    configure_logging(log_level.upper())


@nodefleet.command("prepare")
@click.argument("version", default="")
@click.option("--namespace", default=None, help="Cache namespace (default: NODEFLEET_NAMESPACE).")
def prepare(version: str, namespace: str | None) -> None:
    """Build VERSION if it is not cached yet and print the binary path."""

    command = PrepareCommand(version=version, namespace=namespace)
    _emit_lines(_invoke(lambda: FLEET_CONTROLLER.prepare(command)))


@nodefleet.command("start", context_settings={"ignore_unknown_options": True})
@click.option("--namespace", default=None, help="Cache namespace (default: NODEFLEET_NAMESPACE).")
@click.argument("version", default="")
@click.argument("start_params", nargs=-1, type=click.UNPROCESSED)
def start(namespace: str | None, version: str, start_params: tuple[str, ...]) -> None:
    """Run VERSION in the foreground.

    START_PARAMS are passed to the daemon `start` subcommand; `-d/--datadir`
    and `-t/--testnet` are recognised and applied by nodefleet itself.
    """

    _emit_lines(
        _invoke(
            lambda: FLEET_CONTROLLER.start(
                StartCommand(version=version, start_params=start_params, namespace=namespace),
            ),
        ),
    )


@nodefleet.command("simulate")
@click.option("-b", "--buyer", type=click.Path(path_type=Path), help="Buyer data dir.")
@click.option("--buyer-version", default=None, help="Buyer daemon version.")
@click.option("-v", "--vendor", type=click.Path(path_type=Path), help="Vendor data dir.")
@click.option("--vendor-version", default=None, help="Vendor daemon version.")
@click.option("-m", "--mod", type=click.Path(path_type=Path), help="Moderator data dir.")
@click.option("--moderator-version", default=None, help="Moderator daemon version.")
@click.option("--testnet", is_flag=True, default=False, help="Run every node in testnet mode.")
@click.option(
    "--set",
    "assignments",
    multiple=True,
    help="Config override LABEL:DOTTED.PATH=VALUE (JSON value, else string). Can be repeated.",
)
@click.option(
    "--env",
    "env_assignments",
    multiple=True,
    help="Environment override LABEL:NAME=VALUE for one node. Can be repeated.",
)
@click.option("--namespace", default=None, help="Cache namespace (default: NODEFLEET_NAMESPACE).")
def simulate(  # noqa: PLR0913
    buyer: Path | None,
    buyer_version: str | None,
    vendor: Path | None,
    vendor_version: str | None,
    mod: Path | None,
    moderator_version: str | None,
    testnet: bool,
    assignments: tuple[str, ...],
    env_assignments: tuple[str, ...],
    namespace: str | None,
) -> None:
    """Run buyer, vendor and moderator nodes until interrupted.

    Nodes without a data dir are not started. Missing versions fall back
    to `NODEFLEET_DEFAULT_VERSION`.
    """

    command = SimulateCommand(
        nodes=(
            NodeOption(label="buyer", config_path=buyer, version=buyer_version),
            NodeOption(label="vendor", config_path=vendor, version=vendor_version),
            NodeOption(label="moderator", config_path=mod, version=moderator_version),
        ),
        testnet=testnet,
        assignments=assignments,
        env_assignments=env_assignments,
        namespace=namespace,
    )
    _emit_lines(_invoke(lambda: FLEET_CONTROLLER.simulate(command)))


@nodefleet.group()
def cache() -> None:
    """Cached build commands."""


@cache.command("list")
@click.option("--namespace", default=None, help="Only list this namespace.")
def cache_list(namespace: str | None) -> None:
    """List cached versions per namespace."""

    _emit_lines(_invoke(lambda: FLEET_CONTROLLER.cache_list(CacheListCommand(namespace=namespace))))


@nodefleet.command("inspect")
@click.argument("version")
@click.option("--namespace", default=None, help="Cache namespace (default: NODEFLEET_NAMESPACE).")
def inspect(version: str, namespace: str | None) -> None:
    """Show the cached binary for VERSION and the version it reports."""

    command = InspectCommand(version=version, namespace=namespace)
    _emit_lines(_invoke(lambda: FLEET_CONTROLLER.inspect(command)))


def _invoke(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except CliExitError as error:
        raise FleetCommandError(str(error), error.exit_code) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    nodefleet()
