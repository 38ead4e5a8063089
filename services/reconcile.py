from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional
from uuid import uuid4

from app.escrow.ledger import check_project
from app.escrow.models import LedgerAction
from services import metrics

logger = logging.getLogger("escrow.reconcile")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _payout_overdraws(store, project_id: str) -> list[dict[str, Any]]:
    """Escrow-funded payouts hanging off a debit entry may never exceed that entry."""
    debits = {
        e.id: e
        for e in store.all_entries(project_id)
        if e.action in (LedgerAction.RELEASE, LedgerAction.REFUND)
    }
    funded: dict[str, int] = {}
    for p in store.list_payouts(project_id):
        funded[p.ledger_entry_id] = funded.get(p.ledger_entry_id, 0) + p.escrow_funded_cents

    items = []
    for entry_id, total in sorted(funded.items()):
        entry = debits.get(entry_id)
        if entry is None:
            items.append({
                "category": "payout_without_debit",
                "project_id": project_id,
                "ledger_entry_id": entry_id,
                "escrow_funded_cents": total,
            })
        elif total > entry.amount_cents:
            items.append({
                "category": "payout_exceeds_entry",
                "project_id": project_id,
                "ledger_entry_id": entry_id,
                "escrow_funded_cents": total,
                "entry_amount_cents": entry.amount_cents,
            })
    return items


def run_reconcile(engine, *, project_ids: Optional[Iterable[str]] = None) -> dict[str, Any]:
    """
    Replay every project's ledger and compare it with the cached balance and
    the payouts it funded. Read-only; findings are reported, never repaired.
    """
    run_at = _utcnow()
    store = engine.store
    ids = list(project_ids) if project_ids is not None else store.list_project_ids()

    items: list[dict[str, Any]] = []
    summary = {
        "projects_checked": 0,
        "balance_mismatch": 0,
        "chain_broken": 0,
        "entry_invalid": 0,
        "negative_balance": 0,
        "payout_exceeds_entry": 0,
        "payout_without_debit": 0,
    }

    for project_id in ids:
        summary["projects_checked"] += 1
        report = check_project(store, project_id)
        for problem in report["problems"]:
            items.append({"project_id": project_id, **problem})
        items.extend(_payout_overdraws(store, project_id))

    for item in items:
        category = item["category"]
        summary[category] = summary.get(category, 0) + 1
        metrics.increment_reconcile_item(category)

    if items:
        logger.warning("reconcile found problems projects_checked=%s items=%s", summary["projects_checked"], len(items))
    else:
        logger.info("reconcile clean projects_checked=%s", summary["projects_checked"])

    return {"id": str(uuid4()), "run_at": run_at.isoformat(), "summary": summary, "items": items}
