# app/escrow/ledger.py
"""
The only code path that changes a project's balance.

append() derives balance_before from the latest ledger entry (the definition
of the balance) and writes the entry and the cached projection through the
same store transaction. replay() rebuilds the balance from nothing and is
what reconciliation trusts.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Optional
from uuid import uuid4

from app.escrow.errors import ValidationError
from app.escrow.models import LedgerAction, LedgerEntry, StateTransition
from app.escrow.money import require_cents

logger = logging.getLogger("escrow.ledger")

_CREDITS = {LedgerAction.HOLD}
_DEBITS = {LedgerAction.RELEASE, LedgerAction.REFUND}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def current_balance(tx) -> int:
    last = tx.last_entry()
    return last.balance_after if last else 0


def append(
    tx,
    *,
    action: LedgerAction,
    amount_cents: int,
    note: str,
    transition: StateTransition,
    credit: Optional[bool] = None,
    payment_id: Optional[str] = None,
    payer_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> LedgerEntry:
    amount_cents = require_cents(amount_cents)
    if action in _CREDITS:
        credit = True
    elif action in _DEBITS:
        credit = False
    elif credit is None:
        raise ValidationError("adjustment entries need an explicit direction")

    project = tx.get_project()
    last = tx.last_entry()
    before = last.balance_after if last else 0
    if project.escrow_balance_cents != before:
        # the projection drifted; the ledger wins and the write below repairs it
        logger.error(
            "escrow projection mismatch project_id=%s cached=%s ledger=%s",
            project.project_id,
            project.escrow_balance_cents,
            before,
        )

    after = before + amount_cents if credit else before - amount_cents
    if after < 0:
        raise ValidationError(f"entry would drive balance negative ({before} -> {after})")

    created_at = now or _utcnow()
    if last and created_at < last.created_at:
        # keep created_at order identical to seq order if the clock steps back
        created_at = last.created_at

    entry = LedgerEntry(
        id=str(uuid4()),
        project_id=project.project_id,
        seq=(last.seq + 1) if last else 1,
        payment_id=payment_id,
        action=action,
        amount_cents=amount_cents,
        balance_before=before,
        balance_after=after,
        note=note,
        status_before=transition.from_status,
        status_after=transition.to_status,
        actor_id=actor_id,
        created_at=created_at,
        payer_id=payer_id,
    )
    tx.add_entry(entry)
    tx.save_project(
        replace(
            project,
            escrow_balance_cents=after,
            escrow_status=transition.to_status,
            updated_at=entry.created_at,
        )
    )
    logger.info(
        "ledger append project_id=%s seq=%s action=%s amount_cents=%s balance_after=%s",
        entry.project_id,
        entry.seq,
        entry.action.value,
        entry.amount_cents,
        entry.balance_after,
    )
    return entry


# ==========================================================
# Replay / consistency
# ==========================================================

@dataclass
class ReplayResult:
    balance_cents: int = 0
    entry_count: int = 0
    problems: list[dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems


def replay(entries: Iterable[LedgerEntry]) -> ReplayResult:
    """
    Rebuild the balance from an empty ledger, in (created_at, seq) order,
    checking every entry against its predecessor.
    """
    result = ReplayResult()
    ordered = sorted(entries, key=lambda e: (e.created_at, e.seq))
    for entry in ordered:
        result.entry_count += 1
        if entry.balance_before != result.balance_cents:
            result.problems.append({
                "category": "chain_broken",
                "entry_id": entry.id,
                "seq": entry.seq,
                "expected_before": result.balance_cents,
                "balance_before": entry.balance_before,
            })

        delta = entry.balance_after - entry.balance_before
        sign_ok = (
            (entry.action in _CREDITS and delta > 0)
            or (entry.action in _DEBITS and delta < 0)
            or (entry.action == LedgerAction.ADJUSTMENT and delta != 0)
        )
        if abs(delta) != entry.amount_cents or not sign_ok:
            result.problems.append({
                "category": "entry_invalid",
                "entry_id": entry.id,
                "seq": entry.seq,
                "action": entry.action.value,
                "amount_cents": entry.amount_cents,
                "delta_cents": delta,
            })

        result.balance_cents += entry.signed_amount_cents
        if result.balance_cents < 0:
            result.problems.append({
                "category": "negative_balance",
                "entry_id": entry.id,
                "seq": entry.seq,
                "balance_cents": result.balance_cents,
            })
    return result


def check_project(store, project_id: str) -> dict[str, Any]:
    """Compare the cached balance with a full replay of the project's ledger."""
    project = store.get_project(project_id)
    outcome = replay(store.all_entries(project_id))
    cached = project.escrow_balance_cents if project else 0
    diff = cached - outcome.balance_cents

    problems = list(outcome.problems)
    if diff != 0:
        problems.append({
            "category": "balance_mismatch",
            "cached_cents": cached,
            "ledger_cents": outcome.balance_cents,
        })

    return {
        "project_id": project_id,
        "balance_cents": cached,
        "ledger_cents": outcome.balance_cents,
        "diff_cents": diff,
        "entry_count": outcome.entry_count,
        "ok": not problems,
        "problems": problems,
    }
