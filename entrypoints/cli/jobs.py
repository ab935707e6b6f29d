from __future__ import annotations

from datetime import date, datetime
from pathlib import Path
from typing import Optional

import typer

from rentflow.pipelines.jobs import run_autopay, run_generate_recurring, run_sweep

app = typer.Typer(help="RentFlow scheduled jobs (reconciliation, recurring rent, autopay).")


def _as_of(value: Optional[str]) -> date | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as e:
        raise typer.BadParameter("expected YYYY-MM-DD") from e


@app.command()
def sweep(
    reports_dir: Optional[str] = typer.Option(
        None, help="Directory to write the JSON report to (default: no report file)"
    ),
) -> None:
    """
    Re-poll submitted transfers, resubmit stale ones, activate settled leases.
    """
    report = run_sweep(reports_dir=Path(reports_dir) if reports_dir else None)
    if report["errors"]:
        raise typer.Exit(code=1)


@app.command("generate-recurring")
def generate_recurring(
    as_of: Optional[str] = typer.Option(None, help="Run date YYYY-MM-DD (default: today)"),
    reports_dir: Optional[str] = typer.Option(None, help="Directory to write the JSON report to"),
) -> None:
    """
    Create recurring rent obligations for every active lease.
    """
    report = run_generate_recurring(
        _as_of(as_of),
        reports_dir=Path(reports_dir) if reports_dir else None,
    )
    if report["errors"]:
        raise typer.Exit(code=1)


@app.command()
def autopay(
    as_of: Optional[str] = typer.Option(None, help="Run date YYYY-MM-DD (default: today)"),
    reports_dir: Optional[str] = typer.Option(None, help="Directory to write the JSON report to"),
) -> None:
    """
    Pay due obligations for payers the decision gate approves.
    """
    report = run_autopay(
        _as_of(as_of),
        reports_dir=Path(reports_dir) if reports_dir else None,
    )
    if report["errors"]:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
