"""Command-line interface for stream-conformance."""

import logging
import sys
from dataclasses import replace
from pathlib import Path

import click

from . import __version__
from .clients import MEMORY_FACTORY, load_client_factory
from .config import RunConfig
from .core.context import RunContext
from .core.ledger import MessageLedger
from .evaluation.reconciler import Reconciler
from .evaluation.verdict import RunVerdict
from .exceptions import ConformanceError
from .runner.controller import RunController
from .runner.topologies import TOPOLOGY_NAMES

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_ERROR = 2


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


def _report(verdict: RunVerdict, report: Path | None, as_json: bool) -> None:
    """Print the verdict and optionally save it."""
    if as_json:
        click.echo(verdict.to_json())
    else:
        click.echo(f"Published: {verdict.total_published}")
        click.echo(f"Received:  {verdict.total_received}")
        if verdict.correctness_checked:
            click.echo(f"Checked:   {verdict.messages_checked}")
        for warning in verdict.warnings:
            click.secho(f"Warning: {warning.message}", fg="yellow")
        if not verdict.passed:
            click.echo("")
            click.echo(verdict.format_diagnostics())
        click.echo("")
        color = "green" if verdict.passed else "red"
        click.secho(verdict.summary(), fg=color, bold=True)
    if report:
        verdict.save(report)
        click.echo(f"Report saved to: {report}")


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool):
    """stream-conformance - end-to-end conformance tests for pub/sub stream clients."""
    _configure_logging(verbose)


@cli.command()
@click.option("--topology", "-t", required=True, type=click.Choice(TOPOLOGY_NAMES), help="Topology to run")
@click.option("--mode", type=click.Choice(["test", "run"]), default="test", help="test: bounded and verified; run: until interrupted, unverified")
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, path_type=Path), help="YAML config file")
@click.option("--max-messages", "-n", type=int, help="Messages per publisher (0 = until stopped)")
@click.option("--rest-url", help="REST endpoint of the stream service")
@click.option("--ws-url", "websocket_url", help="WebSocket endpoint of the stream service")
@click.option("--min-interval", type=float, help="Minimum publish interval in seconds")
@click.option("--max-interval", type=float, help="Maximum publish interval in seconds")
@click.option("--external-command", help="Command that starts an external agent")
@click.option("--native-publishers", type=int, help="Number of in-process publishers")
@click.option("--native-subscribers", type=int, help="Number of in-process subscribers")
@click.option("--external-publishers", type=int, help="Number of external publishers")
@click.option("--external-subscribers", type=int, help="Number of external subscribers")
@click.option("--seed", type=int, help="Seed for intervals and payloads")
@click.option("--client-factory", default=MEMORY_FACTORY, show_default=True, help="'memory' or module:attribute")
@click.option("--ledger-out", type=click.Path(path_type=Path), help="Write the message ledger to this file")
@click.option("--report", "-o", type=click.Path(path_type=Path), help="Write the verdict as JSON to this file")
@click.option("--json", "as_json", is_flag=True, help="Print the verdict as JSON")
def run(
    topology: str,
    mode: str,
    config_path: Path | None,
    max_messages: int | None,
    rest_url: str | None,
    websocket_url: str | None,
    min_interval: float | None,
    max_interval: float | None,
    external_command: str | None,
    native_publishers: int | None,
    native_subscribers: int | None,
    external_publishers: int | None,
    external_subscribers: int | None,
    seed: int | None,
    client_factory: str,
    ledger_out: Path | None,
    report: Path | None,
    as_json: bool,
):
    """Run a topology against a stream client.

    Exits 0 when verification passes, 1 when it fails and 2 on
    configuration, setup or publish errors.
    """
    context = None
    try:
        config = RunConfig.from_yaml(config_path) if config_path else RunConfig()
        config = config.with_env_overrides().with_overrides(
            max_messages=max_messages,
            rest_url=rest_url,
            websocket_url=websocket_url,
            min_interval=min_interval,
            max_interval=max_interval,
            external_command=external_command,
            seed=seed,
        )
        if mode == "run":
            config = replace(config, test_correctness=False, max_messages=0)
        counts = {
            "native_publishers": native_publishers,
            "native_subscribers": native_subscribers,
            "external_publishers": external_publishers,
            "external_subscribers": external_subscribers,
        }
        counts = {k: v for k, v in counts.items() if v is not None}
        if counts:
            config = replace(config, participants=replace(config.participants, **counts))
        config.validate()

        factory = load_client_factory(client_factory, config)
        context = RunContext.create(config, topology)
        controller = RunController(context, factory, topology)
        verdict = controller.run()
    except ConformanceError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(EXIT_ERROR)
    finally:
        if ledger_out and context is not None:
            context.ledger.dump(ledger_out)
            click.echo(f"Ledger saved to: {ledger_out}", err=True)

    _report(verdict, report, as_json)
    sys.exit(EXIT_PASSED if verdict.passed else EXIT_FAILED)


@cli.command()
def topologies():
    """List the built-in topologies."""
    for name in TOPOLOGY_NAMES:
        click.echo(name)


@cli.command()
@click.argument("ledger_path", type=click.Path(exists=True, path_type=Path))
@click.option("--tolerance", type=int, default=1, show_default=True, help="Extra messages per pair reported as a warning")
@click.option("--strict", is_flag=True, help="Fail on suspected duplication")
@click.option("--report", "-o", type=click.Path(path_type=Path), help="Write the verdict as JSON to this file")
@click.option("--json", "as_json", is_flag=True, help="Print the verdict as JSON")
def verify(ledger_path: Path, tolerance: int, strict: bool, report: Path | None, as_json: bool):
    """Re-run verification on a saved ledger."""
    try:
        ledger = MessageLedger.load(ledger_path)
    except ConformanceError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(EXIT_ERROR)

    verdict = Reconciler(ledger, over_receipt_tolerance=tolerance, strict_over_receipt=strict).reconcile(
        topology=ledger_path.stem,
    )
    _report(verdict, report, as_json)
    sys.exit(EXIT_PASSED if verdict.passed else EXIT_FAILED)


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
