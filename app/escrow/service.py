# app/escrow/service.py
"""
EscrowEngine: the one entry point for anything that moves escrowed money.

apply_operation() runs
    lock project -> check state -> split (release) -> ledger append
    -> payout obligations (+ commission record) -> audit row
as a single store transaction. If any step raises, nothing is written and the
error reaches the caller unchanged. Notifications go out after the commit,
outside the lock, and can never undo or fail an operation.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional
from uuid import uuid4

from app.escrow import ledger, state_machine
from app.escrow.commission import calculate_commission, parse_rate, required_deposit_cents, tier_rate
from app.escrow.config import EscrowConfig, current_config
from app.escrow.errors import (
    ConcurrentModificationError,
    EscrowError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from app.escrow.models import (
    BeneficiaryRole,
    CommissionRecord,
    CommissionStatus,
    EscrowStatus,
    LedgerAction,
    LedgerEntry,
    OperationResult,
    PayoutObligation,
    PayoutStatus,
    ProjectEscrow,
    StateTransition,
)
from app.escrow.money import format_cents, require_cents
from app.escrow.payouts import release_beneficiaries, schedule_refund, schedule_release, schedule_residual_refund
from services import metrics
from services.audit_log import write_audit_log
from services.idempotency import assert_same_request, normalize_key, request_hash
from services.observability import get_request_id

logger = logging.getLogger("escrow.engine")

PROJECT_ACTIVE = "active"
PROJECT_CANCELLED = "cancelled"

MAX_LEDGER_PAGE = 500

# accepted spellings -> ledger action
_OPERATIONS = {
    "hold": LedgerAction.HOLD,
    "release": LedgerAction.RELEASE,
    "refund": LedgerAction.REFUND,
    "adjustment": LedgerAction.ADJUSTMENT,
    "adjust": LedgerAction.ADJUSTMENT,
}


@dataclass(frozen=True)
class Notice:
    user_id: str
    title: str
    body: str
    metadata: dict[str, Any]


@dataclass(frozen=True)
class LedgerPage:
    items: list[LedgerEntry]
    next_cursor: Optional[str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_operation(operation: Any) -> LedgerAction:
    if isinstance(operation, LedgerAction):
        return operation
    op = _OPERATIONS.get(str(operation or "").strip().lower())
    if op is None:
        raise ValidationError(f"unknown escrow operation: {operation!r}")
    return op


def _require_str(context: Mapping[str, Any], key: str) -> str:
    value = context.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} is required")
    return value.strip()


def _project_key(project_id: Any) -> str:
    if not isinstance(project_id, str) or not project_id.strip():
        raise ValidationError("project_id is required")
    return project_id.strip()


def _optional_str(context: Mapping[str, Any], key: str) -> Optional[str]:
    value = context.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value.strip() or None


class EscrowEngine:
    def __init__(
        self,
        store,
        *,
        config_source: Callable[[], EscrowConfig] = current_config,
        notifier=None,
        lock_timeout_s: float = 2.0,
        lock_retries: int = 3,
        lock_backoff_s: float = 0.05,
    ):
        self.store = store
        self.config_source = config_source
        self.notifier = notifier
        self.lock_timeout_s = lock_timeout_s
        self.lock_retries = max(1, int(lock_retries))
        self.lock_backoff_s = lock_backoff_s

    @classmethod
    def from_settings(cls, s: Any, *, store=None, notifier=None) -> "EscrowEngine":
        from app.escrow.store import build_store
        from app.notifications.sink import build_notifier

        return cls(
            store if store is not None else build_store(s.ESCROW_STORE),
            config_source=lambda: EscrowConfig.from_settings(s),
            notifier=notifier if notifier is not None else build_notifier(s),
            lock_timeout_s=float(s.ESCROW_LOCK_TIMEOUT_S),
            lock_retries=int(s.ESCROW_LOCK_RETRIES),
            lock_backoff_s=float(s.ESCROW_LOCK_BACKOFF_S),
        )

    # ==========================================================
    # Coordinator
    # ==========================================================

    def apply_operation(self, project_id: str, operation: Any, context: Mapping[str, Any]) -> OperationResult:
        op = _parse_operation(operation)
        project_id = _project_key(project_id)
        context = dict(context or {})

        # one snapshot per operation, reused across lock retries
        config = self.config_source()
        try:
            request = self._validate(op, context, config)
            result, notices = self._with_retries(
                project_id,
                op.value,
                lambda tx: self._run(tx, op, request, config),
            )
        except EscrowError as e:
            metrics.increment_escrow_operation(op.value, e.code.lower())
            logger.info(
                "escrow operation rejected project_id=%s operation=%s code=%s request_id=%s",
                project_id,
                op.value,
                e.code,
                get_request_id(),
            )
            raise

        if result.replayed:
            metrics.increment_idempotency_replay(op.value)
        metrics.increment_escrow_operation(op.value, "ok")
        logger.info(
            "escrow operation ok project_id=%s operation=%s entry_id=%s status=%s balance_cents=%s replayed=%s request_id=%s",
            project_id,
            op.value,
            result.ledger_entry.id,
            result.transition.to_status.value,
            result.balance_cents,
            result.replayed,
            get_request_id(),
        )
        self._notify(notices)
        return result

    def _with_retries(self, project_id: str, label: str, body: Callable[[Any], Any]) -> Any:
        attempt = 0
        while True:
            attempt += 1
            try:
                with self.store.transaction(project_id, timeout_s=self.lock_timeout_s) as tx:
                    return body(tx)
            except ConcurrentModificationError:
                if attempt >= self.lock_retries:
                    raise
                metrics.increment_lock_retry(label)
                logger.warning(
                    "escrow lock busy project_id=%s operation=%s attempt=%s",
                    project_id,
                    label,
                    attempt,
                )
                time.sleep(self.lock_backoff_s * attempt)

    def _validate(self, op: LedgerAction, context: dict[str, Any], config: EscrowConfig) -> dict[str, Any]:
        """Everything checkable without the store, normalized; raises before any lock is taken."""
        req: dict[str, Any] = {
            "actor_id": _optional_str(context, "actor_id"),
            "idempotency_key": normalize_key(context.get("idempotency_key")),
        }

        if op == LedgerAction.HOLD:
            req["payment_id"] = _require_str(context, "payment_id")
            req["amount_cents"] = require_cents(context.get("amount_cents"))
            req["payer_id"] = _optional_str(context, "payer_id")

        elif op == LedgerAction.RELEASE:
            # None releases whatever the project holds once the lock is taken
            if context.get("release_remaining"):
                req["amount_cents"] = None
            else:
                req["amount_cents"] = require_cents(context.get("amount_cents"))
            req["developer_id"] = _require_str(context, "developer_id")
            req["commissioner_id"] = _require_str(context, "commissioner_id")
            req["referrer_id"] = _optional_str(context, "referrer_id")
            if context.get("commissioner_rate") is not None:
                req["commissioner_rate"] = parse_rate(context["commissioner_rate"])
            else:
                req["commissioner_rate"] = tier_rate(_optional_str(context, "commissioner_tier"), config)

        elif op == LedgerAction.REFUND:
            req["payment_id"] = _require_str(context, "payment_id")
            req["original_paid_cents"] = require_cents(
                context.get("original_paid_cents"), field="original_paid_cents"
            )
            req["reason"] = _require_str(context, "reason")
            req["payer_id"] = _optional_str(context, "payer_id")

        else:
            signed = context.get("signed_amount_cents")
            if isinstance(signed, bool) or not isinstance(signed, int) or signed == 0:
                raise ValidationError("signed_amount_cents must be a non-zero integer")
            req["signed_amount_cents"] = signed
            req["justification"] = _require_str(context, "justification")

        return req

    def _run(self, tx, op: LedgerAction, req: dict[str, Any], config: EscrowConfig):
        key = req["idempotency_key"]
        fingerprint = None
        if key:
            fingerprint = request_hash(
                {"operation": op.value, **{k: v for k, v in req.items() if k not in ("actor_id", "idempotency_key")}}
            )
            stored = tx.get_idempotency(key)
            if stored is not None:
                assert_same_request(stored, fingerprint)
                return self._replay(tx, stored["entry_ids"]), []

        project = tx.get_project()
        balance = ledger.current_balance(tx)

        if op == LedgerAction.HOLD:
            result, notices = self._hold(tx, project, balance, req)
        elif op == LedgerAction.RELEASE:
            result, notices = self._release(tx, project, balance, req, config)
        elif op == LedgerAction.REFUND:
            result, notices = self._refund(tx, project, balance, req, config)
        else:
            result, notices = self._adjust(tx, project, balance, req)

        entry_ids = [result.ledger_entry.id]
        if result.residual_entry is not None:
            entry_ids.append(result.residual_entry.id)

        write_audit_log(
            tx,
            actor_id=req["actor_id"],
            action=f"escrow.{op.value}",
            metadata={
                "entry_ids": entry_ids,
                "amount_cents": result.ledger_entry.amount_cents,
                "status_before": result.transition.from_status.value,
                "status_after": result.transition.to_status.value,
                "balance_after": result.balance_cents,
                "payout_ids": [p.id for p in result.payouts],
            },
            now=result.ledger_entry.created_at,
        )
        if key:
            tx.put_idempotency(key, fingerprint, entry_ids)
        return result, notices

    def _replay(self, tx, entry_ids: list[str]) -> OperationResult:
        entries = sorted(tx.get_entries(entry_ids), key=lambda e: e.seq)
        if not entries:
            raise NotFoundError("idempotency record points at missing ledger entries")
        first = entries[0]
        residual = entries[1] if len(entries) > 1 else None
        commissions = tx.commissions_for_entries(entry_ids)
        commission = commissions[0] if commissions else None
        return OperationResult(
            ledger_entry=first,
            transition=StateTransition(first.status_before, first.status_after),
            payouts=sorted(tx.payouts_for_entries(entry_ids), key=lambda p: p.created_at),
            commission=commission,
            split=commission.split if commission else None,
            residual_entry=residual,
            replayed=True,
        )

    # ==========================================================
    # Operations (all run inside the project transaction)
    # ==========================================================

    def _hold(self, tx, project: ProjectEscrow, balance: int, req: dict[str, Any]):
        payment_id = req["payment_id"]
        transition = state_machine.plan_transition(
            project.escrow_status,
            LedgerAction.HOLD,
            amount_cents=req["amount_cents"],
            balance_cents=balance,
        )
        if any(e.action == LedgerAction.HOLD for e in tx.entries_for_payment(payment_id)):
            raise ValidationError(f"payment {payment_id} is already held", code="DUPLICATE_PAYMENT")

        entry = ledger.append(
            tx,
            action=LedgerAction.HOLD,
            amount_cents=req["amount_cents"],
            note=f"deposit verified for payment {payment_id}",
            transition=transition,
            payment_id=payment_id,
            payer_id=req["payer_id"],
            actor_id=req["actor_id"],
        )
        if transition.changed:
            tx.save_project(replace(tx.get_project(), project_status=PROJECT_ACTIVE))

        notices = []
        if req.get("payer_id"):
            notices.append(Notice(
                req["payer_id"],
                "Deposit verified",
                f"Your payment of {format_cents(entry.amount_cents)} is now held in escrow.",
                {"project_id": entry.project_id, "payment_id": payment_id},
            ))
        return OperationResult(ledger_entry=entry, transition=transition), notices

    def _release(self, tx, project: ProjectEscrow, balance: int, req: dict[str, Any], config: EscrowConfig):
        amount = req["amount_cents"]
        if amount is None:
            state_machine.assert_allowed(project.escrow_status, LedgerAction.RELEASE)
            if balance == 0:
                raise InsufficientBalanceError("cannot release: escrow balance is empty")
            amount = balance
        rate: Decimal = req["commissioner_rate"]
        transition = state_machine.plan_transition(
            project.escrow_status,
            LedgerAction.RELEASE,
            amount_cents=amount,
            balance_cents=balance,
        )
        split = calculate_commission(amount, rate, bool(req["referrer_id"]), config)

        entry = ledger.append(
            tx,
            action=LedgerAction.RELEASE,
            amount_cents=amount,
            note=f"release of {format_cents(amount)} at {rate}% commission",
            transition=transition,
            actor_id=req["actor_id"],
        )
        beneficiaries = release_beneficiaries(req["developer_id"], req["commissioner_id"], req["referrer_id"])
        payouts = schedule_release(entry, split, beneficiaries, now=entry.created_at)
        tx.add_payouts(payouts)

        commission = None
        if split.commissioner_amount > 0:
            commission = CommissionRecord(
                id=str(uuid4()),
                project_id=entry.project_id,
                ledger_entry_id=entry.id,
                commissioner_id=req["commissioner_id"],
                percent=rate,
                amount_cents=split.commissioner_amount,
                status=CommissionStatus.SCHEDULED,
                split=split,
                rates={**config.snapshot(), "commissioner_rate": str(rate)},
                created_at=entry.created_at,
            )
            tx.add_commission(commission)

        notices = [
            Notice(
                p.recipient_id,
                "Escrow funds released",
                f"A payout of {format_cents(p.amount_cents)} has been scheduled.",
                {"project_id": p.project_id, "payout_id": p.id, "role": p.role.value},
            )
            for p in payouts
        ]
        result = OperationResult(
            ledger_entry=entry,
            transition=transition,
            payouts=payouts,
            commission=commission,
            split=split,
        )
        return result, notices

    def _refund(self, tx, project: ProjectEscrow, balance: int, req: dict[str, Any], config: EscrowConfig):
        payment_id = req["payment_id"]
        paid = req["original_paid_cents"]
        state_machine.assert_allowed(project.escrow_status, LedgerAction.REFUND)

        holds = [e for e in tx.entries_for_payment(payment_id) if e.action == LedgerAction.HOLD]
        held = sum(e.amount_cents for e in holds)
        if held == 0:
            raise ValidationError(f"payment {payment_id} was never held for this project")
        if paid > held:
            raise ValidationError(
                f"original_paid_cents {paid} exceeds the {held} held for payment {payment_id}"
            )
        payer_id = req["payer_id"] or next((e.payer_id for e in holds if e.payer_id), None)
        if not payer_id:
            raise ValidationError(f"payer_id is required: no payer was recorded for payment {payment_id}")

        transition = state_machine.plan_transition(
            project.escrow_status,
            LedgerAction.REFUND,
            amount_cents=paid,
            balance_cents=balance,
        )
        entry = ledger.append(
            tx,
            action=LedgerAction.REFUND,
            amount_cents=paid,
            note=req["reason"],
            transition=transition,
            payment_id=payment_id,
            actor_id=req["actor_id"],
        )
        payouts = [
            schedule_refund(
                entry,
                payer_id,
                paid_cents=paid,
                multiplier=config.refund_multiplier,
                now=entry.created_at,
            )
        ]

        residual_entry = None
        if entry.balance_after > 0:
            residual_entry = ledger.append(
                tx,
                action=LedgerAction.REFUND,
                amount_cents=entry.balance_after,
                note=f"remaining escrow returned: {req['reason']}",
                transition=StateTransition(EscrowStatus.REFUNDED, EscrowStatus.REFUNDED),
                actor_id=req["actor_id"],
            )
            payouts.append(schedule_residual_refund(residual_entry, payer_id, now=residual_entry.created_at))

        tx.add_payouts(payouts)
        tx.save_project(replace(tx.get_project(), project_status=PROJECT_CANCELLED))

        total = sum(p.amount_cents for p in payouts)
        notices = [Notice(
            payer_id,
            "Refund scheduled",
            f"A refund of {format_cents(total)} has been scheduled.",
            {"project_id": entry.project_id, "payment_id": payment_id, "payout_ids": [p.id for p in payouts]},
        )]
        result = OperationResult(
            ledger_entry=entry,
            transition=transition,
            payouts=payouts,
            residual_entry=residual_entry,
        )
        return result, notices

    def _adjust(self, tx, project: ProjectEscrow, balance: int, req: dict[str, Any]):
        signed = req["signed_amount_cents"]
        credit = signed > 0
        transition = state_machine.plan_transition(
            project.escrow_status,
            LedgerAction.ADJUSTMENT,
            amount_cents=abs(signed),
            balance_cents=balance,
            credit=credit,
        )
        entry = ledger.append(
            tx,
            action=LedgerAction.ADJUSTMENT,
            amount_cents=abs(signed),
            note=req["justification"],
            transition=transition,
            credit=credit,
            actor_id=req["actor_id"],
        )
        return OperationResult(ledger_entry=entry, transition=transition), []

    def _notify(self, notices: list[Notice]) -> None:
        if not notices or self.notifier is None:
            return
        for n in notices:
            try:
                self.notifier.notify(n.user_id, n.title, n.body, n.metadata)
            except Exception as e:
                metrics.increment_notification_failure()
                logger.warning(
                    "notification failed user_id=%s title=%s err=%s",
                    n.user_id,
                    n.title,
                    type(e).__name__,
                )

    # ==========================================================
    # Typed entry points
    # ==========================================================

    def hold(
        self,
        project_id: str,
        payment_id: str,
        amount_cents: int,
        *,
        payer_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> OperationResult:
        return self.apply_operation(project_id, LedgerAction.HOLD, {
            "payment_id": payment_id,
            "amount_cents": amount_cents,
            "payer_id": payer_id,
            "actor_id": actor_id,
            "idempotency_key": idempotency_key,
        })

    def release(
        self,
        project_id: str,
        amount_cents: int,
        developer_id: str,
        commissioner_id: str,
        commissioner_rate: Any = None,
        referrer_id: Optional[str] = None,
        *,
        commissioner_tier: Optional[str] = None,
        actor_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> OperationResult:
        return self.apply_operation(project_id, LedgerAction.RELEASE, {
            "amount_cents": amount_cents,
            "developer_id": developer_id,
            "commissioner_id": commissioner_id,
            "commissioner_rate": commissioner_rate,
            "commissioner_tier": commissioner_tier,
            "referrer_id": referrer_id,
            "actor_id": actor_id,
            "idempotency_key": idempotency_key,
        })

    def release_remaining(
        self,
        project_id: str,
        developer_id: str,
        commissioner_id: str,
        commissioner_rate: Any = None,
        referrer_id: Optional[str] = None,
        *,
        commissioner_tier: Optional[str] = None,
        actor_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> OperationResult:
        """Release the whole balance, read under the project lock."""
        return self.apply_operation(project_id, LedgerAction.RELEASE, {
            "release_remaining": True,
            "developer_id": developer_id,
            "commissioner_id": commissioner_id,
            "commissioner_rate": commissioner_rate,
            "commissioner_tier": commissioner_tier,
            "referrer_id": referrer_id,
            "actor_id": actor_id,
            "idempotency_key": idempotency_key,
        })

    def refund(
        self,
        project_id: str,
        payment_id: str,
        original_paid_cents: int,
        reason: str,
        payer_id: Optional[str] = None,
        *,
        actor_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> OperationResult:
        return self.apply_operation(project_id, LedgerAction.REFUND, {
            "payment_id": payment_id,
            "original_paid_cents": original_paid_cents,
            "reason": reason,
            "payer_id": payer_id,
            "actor_id": actor_id,
            "idempotency_key": idempotency_key,
        })

    def adjust(
        self,
        project_id: str,
        signed_amount_cents: int,
        justification: str,
        *,
        actor_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> OperationResult:
        return self.apply_operation(project_id, LedgerAction.ADJUSTMENT, {
            "signed_amount_cents": signed_amount_cents,
            "justification": justification,
            "actor_id": actor_id,
            "idempotency_key": idempotency_key,
        })

    # ==========================================================
    # Payout settlement
    # ==========================================================

    def mark_payout(
        self,
        payout_id: str,
        status: Any,
        *,
        method: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> PayoutObligation:
        try:
            new_status = PayoutStatus(str(getattr(status, "value", status)).strip().lower())
        except ValueError:
            raise ValidationError(f"unknown payout status: {status!r}")

        found = self.store.find_payout(payout_id)
        if found is None:
            raise NotFoundError(f"payout {payout_id} not found")

        def body(tx) -> PayoutObligation:
            current = tx.get_payout(payout_id)
            if current is None:
                raise NotFoundError(f"payout {payout_id} not found")
            state_machine.assert_payout_transition(current.status, new_status)

            updated = replace(
                current,
                status=new_status,
                method=(method or "").strip() or current.method,
                updated_at=_utcnow(),
            )
            tx.update_payout(updated)

            if new_status == PayoutStatus.PAID and updated.role == BeneficiaryRole.COMMISSIONER:
                for rec in tx.commissions_for_entries([updated.ledger_entry_id]):
                    if rec.status != CommissionStatus.RELEASED:
                        tx.update_commission_status(rec.id, CommissionStatus.RELEASED)

            write_audit_log(
                tx,
                actor_id=actor_id,
                action=f"payout.{new_status.value}",
                metadata={
                    "payout_id": payout_id,
                    "from_status": current.status.value,
                    "to_status": new_status.value,
                    "method": updated.method,
                },
            )
            return updated

        try:
            updated = self._with_retries(found.project_id, "payout_status", body)
        except EscrowError as e:
            metrics.increment_escrow_operation("payout_status", e.code.lower())
            raise
        metrics.increment_escrow_operation("payout_status", "ok")
        logger.info(
            "payout status changed payout_id=%s project_id=%s status=%s",
            payout_id,
            updated.project_id,
            updated.status.value,
        )
        return updated

    # ==========================================================
    # Reads
    # ==========================================================

    def get_project(self, project_id: str) -> ProjectEscrow:
        project_id = _project_key(project_id)
        project = self.store.get_project(project_id)
        if project is None:
            return ProjectEscrow(
                project_id=project_id,
                escrow_balance_cents=0,
                escrow_status=EscrowStatus.NONE,
                project_status=None,
            )
        return project

    def get_balance(self, project_id: str) -> int:
        return self.get_project(project_id).escrow_balance_cents

    def get_ledger(self, project_id: str, limit: int = 50, cursor: Optional[str] = None) -> LedgerPage:
        if isinstance(limit, bool) or not isinstance(limit, int) or not (1 <= limit <= MAX_LEDGER_PAGE):
            raise ValidationError(f"limit must be between 1 and {MAX_LEDGER_PAGE}")
        after_seq = 0
        if cursor:
            try:
                after_seq = int(cursor)
            except ValueError:
                raise ValidationError("invalid ledger cursor")
            if after_seq < 0:
                raise ValidationError("invalid ledger cursor")

        items = self.store.list_entries(_project_key(project_id), limit=limit, after_seq=after_seq)
        next_cursor = str(items[-1].seq) if len(items) == limit else None
        return LedgerPage(items=items, next_cursor=next_cursor)

    def list_payouts(self, project_id: str) -> list[PayoutObligation]:
        return self.store.list_payouts(_project_key(project_id))

    def list_commissions(self, project_id: str) -> list[CommissionRecord]:
        return self.store.list_commissions(_project_key(project_id))

    def verify_project(self, project_id: str) -> dict[str, Any]:
        return ledger.check_project(self.store, _project_key(project_id))

    def required_deposit(self, total_value_cents: int) -> int:
        return required_deposit_cents(total_value_cents, self.config_source())
