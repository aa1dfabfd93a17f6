"""Command line tools for listen sync."""

from __future__ import annotations

import asyncio
import logging

import typer

from .config import get_settings
from .simulation import run_simulation
from .sync_key import generate_sync_key

logger = logging.getLogger(__name__)

app = typer.Typer(help="Synchronized listening session tools.")


@app.callback()
def main_callback() -> None:
    """Root callback; a command is required."""


@app.command(name="generate-key")
def generate_key(
    count: int = typer.Option(1, "--count", min=1, max=1000, help="Number of keys to print."),
    prefix: str | None = typer.Option(
        None,
        "--prefix",
        help="Two-letter key prefix (SYNC_KEY_PREFIX).",
    ),
) -> None:
    """Print freshly generated sync keys, one per line."""

    chosen = (prefix or get_settings().sync_key_prefix).upper()
    if len(chosen) != 2 or not chosen.isalpha():
        raise typer.BadParameter("Prefix must be two letters", param_hint="--prefix")
    for _ in range(count):
        typer.echo(generate_sync_key(chosen))


@app.command(name="simulate")
def simulate(
    listeners: int = typer.Option(3, "--listeners", min=1, max=29, help="Listeners joining the host."),
    drift: float = typer.Option(5.0, "--drift", min=0.0, help="Initial offset of each listener in seconds."),
    cycles: int = typer.Option(5, "--cycles", min=1, max=1000, help="Drift correction cycles to run."),
    rate_skew: float = typer.Option(
        0.0,
        "--rate-skew",
        min=0.0,
        max=0.5,
        help="Relative playback rate error of listener devices.",
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Log engine activity."),
) -> None:
    """Run a host and listeners in-process and print per-cycle drift."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s - %(message)s",
    )
    report = asyncio.run(run_simulation(listeners=listeners, initial_drift=drift, cycles=cycles, rate_skew=rate_skew))

    typer.echo(f"session {report.sync_key}: {listeners} listeners, threshold {report.threshold:.2f}s")
    for index, drifts in enumerate(report.drift_by_cycle, start=1):
        cells = " ".join(f"L{n}={value:.3f}s" for n, value in enumerate(drifts, start=1))
        typer.echo(f"cycle {index}: {cells}")
    if report.converged:
        typer.echo("converged")
    else:
        typer.echo("not converged")
        raise typer.Exit(code=1)


def main() -> None:
    """Entry point for ``python -m listen_sync.cli``."""

    app()


if __name__ == "__main__":  # pragma: no cover - manual run
    main()
