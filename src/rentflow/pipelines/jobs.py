# src/rentflow/pipelines/jobs.py

from __future__ import annotations

from dataclasses import asdict
from datetime import date
from pathlib import Path
from typing import Any, Dict

import json

from loguru import logger

from rentflow.adapters.config import AppConfig, config
from rentflow.services.engine import PaymentEngine, build_engine


REPORTS_DIR = Path("data") / "reports"


def _engine(cfg: AppConfig | None, engine: PaymentEngine | None) -> PaymentEngine:
    return engine or build_engine(cfg or config)


def _write_report(name: str, payload: Dict[str, Any], reports_dir: Path | None) -> Path | None:
    if reports_dir is None:
        return None
    reports_dir.mkdir(parents=True, exist_ok=True)
    out = reports_dir / f"{name}.json"
    out.write_text(json.dumps(payload, indent=2, default=str))
    logger.info("Wrote job report", path=str(out))
    return out


# ---------------------------
# 1. RECONCILIATION SWEEP
# ---------------------------

def run_sweep(
    *,
    cfg: AppConfig | None = None,
    engine: PaymentEngine | None = None,
    reports_dir: Path | None = None,
) -> Dict[str, Any]:
    """
    Re-poll in-flight transfers, resubmit stuck submissions and activate any
    lease whose obligations have all settled.

    Meant to run on a short schedule (every few minutes).
    """
    eng = _engine(cfg, engine)
    logger.info("Starting reconciliation sweep", rail=eng.rail.name)

    report = asdict(eng.reconciler.sweep())

    logger.info(
        "Reconciliation sweep finished",
        resumed=report["resumed"],
        resubmitted=report["resubmitted"],
        activated=report["activated"],
        errors=report["errors"],
    )
    _write_report("reconcile_sweep", report, reports_dir)
    return report


# ---------------------------
# 2. RECURRING RENT
# ---------------------------

def run_generate_recurring(
    as_of: date | None = None,
    *,
    cfg: AppConfig | None = None,
    engine: PaymentEngine | None = None,
    reports_dir: Path | None = None,
) -> Dict[str, Any]:
    """Create recurring rent obligations for active leases (current month + next two)."""
    eng = _engine(cfg, engine)
    as_of = as_of or date.today()
    logger.info("Generating recurring rent", as_of=as_of.isoformat())

    report = asdict(eng.scheduler.generate(as_of))

    if report["errors"]:
        logger.warning("Recurring rent finished with errors", created=report["created"], errors=report["errors"])
    else:
        logger.info("Recurring rent finished", created=report["created"])
    _write_report(f"recurring_rent_{as_of.isoformat()}", report, reports_dir)
    return report


# ---------------------------
# 3. AUTOPAY
# ---------------------------

def run_autopay(
    as_of: date | None = None,
    *,
    cfg: AppConfig | None = None,
    engine: PaymentEngine | None = None,
    reports_dir: Path | None = None,
) -> Dict[str, Any]:
    """
    Pay obligations due within the autopay horizon for payers the decision
    gate trusts. Every candidate gets an audited decision, approved or not.
    """
    eng = _engine(cfg, engine)
    as_of = as_of or date.today()
    logger.info("Starting autopay run", as_of=as_of.isoformat(), horizon_days=eng.autopay.horizon_days)

    report = asdict(eng.autopay.run(as_of))

    logger.info(
        "Autopay run finished",
        considered=report["considered"],
        approved=report["approved"],
        rejected=report["rejected"],
        settled=report["settled"],
        errors=report["errors"],
    )
    _write_report(f"autopay_{as_of.isoformat()}", report, reports_dir)
    return report
