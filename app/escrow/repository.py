# app/escrow/repository.py
from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Optional

from psycopg2.extras import Json, RealDictCursor

from app.escrow.models import (
    AuditRecord,
    BeneficiaryRole,
    CommissionRecord,
    CommissionSplit,
    CommissionStatus,
    EscrowStatus,
    FundingSource,
    LedgerAction,
    LedgerEntry,
    PayoutObligation,
    PayoutStatus,
    ProjectEscrow,
)

_ENTRY_COLUMNS = """
  id::text AS id, project_id, seq, payment_id, action, amount_cents,
  balance_before, balance_after, note, status_before, status_after,
  actor_id, created_at, payer_id
"""

_PAYOUT_COLUMNS = """
  id::text AS id, project_id, ledger_entry_id::text AS ledger_entry_id,
  recipient_id, role, amount_cents, escrow_funded_cents, reserve_funded_cents,
  funding_source, method, status, created_at, updated_at
"""

_COMMISSION_COLUMNS = """
  id::text AS id, project_id, ledger_entry_id::text AS ledger_entry_id,
  commissioner_id, percent, amount_cents, status, split, rates, created_at
"""


def _as_dict(value: Any) -> dict:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


# ==========================================================
# Row mappers
# ==========================================================

def _project(row: dict) -> ProjectEscrow:
    return ProjectEscrow(
        project_id=row["project_id"],
        escrow_balance_cents=int(row["escrow_balance_cents"]),
        escrow_status=EscrowStatus(row["escrow_status"]),
        project_status=row.get("project_status"),
        updated_at=row.get("updated_at"),
    )


def _entry(row: dict) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        project_id=row["project_id"],
        seq=int(row["seq"]),
        payment_id=row.get("payment_id"),
        action=LedgerAction(row["action"]),
        amount_cents=int(row["amount_cents"]),
        balance_before=int(row["balance_before"]),
        balance_after=int(row["balance_after"]),
        note=row.get("note") or "",
        status_before=EscrowStatus(row["status_before"]),
        status_after=EscrowStatus(row["status_after"]),
        actor_id=row.get("actor_id"),
        created_at=row["created_at"],
        payer_id=row.get("payer_id"),
    )


def _payout(row: dict) -> PayoutObligation:
    return PayoutObligation(
        id=row["id"],
        project_id=row["project_id"],
        ledger_entry_id=row["ledger_entry_id"],
        recipient_id=row["recipient_id"],
        role=BeneficiaryRole(row["role"]),
        amount_cents=int(row["amount_cents"]),
        escrow_funded_cents=int(row["escrow_funded_cents"]),
        reserve_funded_cents=int(row["reserve_funded_cents"]),
        funding_source=FundingSource(row["funding_source"]),
        method=row["method"],
        status=PayoutStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _commission(row: dict) -> CommissionRecord:
    split = _as_dict(row["split"])
    return CommissionRecord(
        id=row["id"],
        project_id=row["project_id"],
        ledger_entry_id=row["ledger_entry_id"],
        commissioner_id=row["commissioner_id"],
        percent=Decimal(str(row["percent"])),
        amount_cents=int(row["amount_cents"]),
        status=CommissionStatus(row["status"]),
        split=CommissionSplit(**{k: int(v) for k, v in split.items()}),
        rates=_as_dict(row["rates"]),
        created_at=row["created_at"],
    )


# ==========================================================
# Locking
# ==========================================================

def set_lock_timeout(conn, timeout_s: float) -> None:
    ms = max(1, int(timeout_s * 1000))
    with conn.cursor() as cur:
        # SET LOCAL only lasts for the current transaction
        cur.execute(f"SET LOCAL lock_timeout = '{ms}ms';")


def lock_project(conn, project_id: str) -> ProjectEscrow:
    """
    Create the row on first touch, then take the row lock every mutating
    operation on this project queues behind.
    """
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            INSERT INTO escrow.projects (project_id)
            VALUES (%s)
            ON CONFLICT (project_id) DO NOTHING
            """,
            (project_id,),
        )
        cur.execute(
            """
            SELECT project_id, escrow_balance_cents, escrow_status, project_status, updated_at
            FROM escrow.projects
            WHERE project_id = %s
            FOR UPDATE
            """,
            (project_id,),
        )
        return _project(cur.fetchone())


# ==========================================================
# Writes
# ==========================================================

def update_project(conn, project: ProjectEscrow) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE escrow.projects
            SET escrow_balance_cents = %s,
                escrow_status = %s,
                project_status = %s,
                updated_at = now()
            WHERE project_id = %s
            """,
            (
                project.escrow_balance_cents,
                project.escrow_status.value,
                project.project_status,
                project.project_id,
            ),
        )


def insert_entry(conn, entry: LedgerEntry) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO escrow.ledger_entries (
              id, project_id, seq, payment_id, action, amount_cents,
              balance_before, balance_after, note, status_before, status_after,
              actor_id, created_at, payer_id
            )
            VALUES (%s::uuid, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                entry.id,
                entry.project_id,
                entry.seq,
                entry.payment_id,
                entry.action.value,
                entry.amount_cents,
                entry.balance_before,
                entry.balance_after,
                entry.note,
                entry.status_before.value,
                entry.status_after.value,
                entry.actor_id,
                entry.created_at,
                entry.payer_id,
            ),
        )


def insert_payouts(conn, payouts: list[PayoutObligation]) -> None:
    with conn.cursor() as cur:
        for p in payouts:
            cur.execute(
                """
                INSERT INTO escrow.payouts (
                  id, project_id, ledger_entry_id, recipient_id, role, amount_cents,
                  escrow_funded_cents, reserve_funded_cents, funding_source,
                  method, status, created_at, updated_at
                )
                VALUES (%s::uuid, %s, %s::uuid, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    p.id,
                    p.project_id,
                    p.ledger_entry_id,
                    p.recipient_id,
                    p.role.value,
                    p.amount_cents,
                    p.escrow_funded_cents,
                    p.reserve_funded_cents,
                    p.funding_source.value,
                    p.method,
                    p.status.value,
                    p.created_at,
                    p.updated_at,
                ),
            )


def update_payout(conn, payout: PayoutObligation) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE escrow.payouts
            SET status = %s, method = %s, updated_at = %s
            WHERE id = %s::uuid
            """,
            (payout.status.value, payout.method, payout.updated_at, payout.id),
        )


def insert_commission(conn, rec: CommissionRecord) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO escrow.commissions (
              id, project_id, ledger_entry_id, commissioner_id, percent,
              amount_cents, status, split, rates, created_at
            )
            VALUES (%s::uuid, %s, %s::uuid, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s)
            """,
            (
                rec.id,
                rec.project_id,
                rec.ledger_entry_id,
                rec.commissioner_id,
                rec.percent,
                rec.amount_cents,
                rec.status.value,
                Json(rec.split.as_dict()),
                Json(rec.rates),
                rec.created_at,
            ),
        )


def update_commission_status(conn, commission_id: str, status: CommissionStatus) -> None:
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE escrow.commissions SET status = %s WHERE id = %s::uuid",
            (status.value, commission_id),
        )


def insert_audit(conn, rec: AuditRecord) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO escrow.audit_log (id, project_id, action, actor_id, metadata, created_at)
            VALUES (%s::uuid, %s, %s, %s, %s::jsonb, %s)
            """,
            (rec.id, rec.project_id, rec.action, rec.actor_id, Json(rec.metadata), rec.created_at),
        )


def insert_idempotency(
    conn,
    *,
    project_id: str,
    idempotency_key: str,
    request_hash: str,
    entry_ids: list[str],
) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO escrow.idempotency_keys (project_id, idempotency_key, request_hash, ledger_entry_ids)
            VALUES (%s, %s, %s, %s::uuid[])
            """,
            (project_id, idempotency_key, request_hash, entry_ids),
        )


# ==========================================================
# Reads
# ==========================================================

def get_project(conn, project_id: str) -> Optional[ProjectEscrow]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT project_id, escrow_balance_cents, escrow_status, project_status, updated_at
            FROM escrow.projects
            WHERE project_id = %s
            """,
            (project_id,),
        )
        row = cur.fetchone()
        return _project(row) if row else None


def list_project_ids(conn) -> list[str]:
    with conn.cursor() as cur:
        cur.execute("SELECT project_id FROM escrow.projects ORDER BY project_id")
        return [r[0] for r in cur.fetchall()]


def last_entry(conn, project_id: str) -> Optional[LedgerEntry]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            SELECT {_ENTRY_COLUMNS}
            FROM escrow.ledger_entries
            WHERE project_id = %s
            ORDER BY created_at DESC, seq DESC
            LIMIT 1
            """,
            (project_id,),
        )
        row = cur.fetchone()
        return _entry(row) if row else None


def list_entries(conn, project_id: str, *, limit: Optional[int] = None, after_seq: int = 0) -> list[LedgerEntry]:
    limit_sql = "LIMIT %s" if limit is not None else ""
    params: list[Any] = [project_id, after_seq]
    if limit is not None:
        params.append(int(limit))
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            SELECT {_ENTRY_COLUMNS}
            FROM escrow.ledger_entries
            WHERE project_id = %s
              AND seq > %s
            ORDER BY created_at ASC, seq ASC
            {limit_sql}
            """,
            tuple(params),
        )
        return [_entry(r) for r in cur.fetchall()]


def get_entries(conn, entry_ids: list[str]) -> list[LedgerEntry]:
    if not entry_ids:
        return []
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            SELECT {_ENTRY_COLUMNS}
            FROM escrow.ledger_entries
            WHERE id = ANY(%s::uuid[])
            ORDER BY seq ASC
            """,
            (entry_ids,),
        )
        return [_entry(r) for r in cur.fetchall()]


def entries_for_payment(conn, project_id: str, payment_id: str) -> list[LedgerEntry]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            SELECT {_ENTRY_COLUMNS}
            FROM escrow.ledger_entries
            WHERE project_id = %s AND payment_id = %s
            ORDER BY seq ASC
            """,
            (project_id, payment_id),
        )
        return [_entry(r) for r in cur.fetchall()]


def get_payout(conn, payout_id: str) -> Optional[PayoutObligation]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"SELECT {_PAYOUT_COLUMNS} FROM escrow.payouts WHERE id = %s::uuid",
            (payout_id,),
        )
        row = cur.fetchone()
        return _payout(row) if row else None


def list_payouts(conn, project_id: str, *, entry_ids: Optional[list[str]] = None) -> list[PayoutObligation]:
    entry_sql = ""
    params: list[Any] = [project_id]
    if entry_ids is not None:
        entry_sql = "AND ledger_entry_id = ANY(%s::uuid[])"
        params.append(entry_ids)
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            SELECT {_PAYOUT_COLUMNS}
            FROM escrow.payouts
            WHERE project_id = %s
            {entry_sql}
            ORDER BY created_at ASC, id ASC
            """,
            tuple(params),
        )
        return [_payout(r) for r in cur.fetchall()]


def list_commissions(conn, project_id: str, *, entry_ids: Optional[list[str]] = None) -> list[CommissionRecord]:
    entry_sql = ""
    params: list[Any] = [project_id]
    if entry_ids is not None:
        entry_sql = "AND ledger_entry_id = ANY(%s::uuid[])"
        params.append(entry_ids)
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            SELECT {_COMMISSION_COLUMNS}
            FROM escrow.commissions
            WHERE project_id = %s
            {entry_sql}
            ORDER BY created_at ASC
            """,
            tuple(params),
        )
        return [_commission(r) for r in cur.fetchall()]


def list_audit(conn, project_id: str) -> list[AuditRecord]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT id::text AS id, project_id, action, actor_id, metadata, created_at
            FROM escrow.audit_log
            WHERE project_id = %s
            ORDER BY created_at ASC
            """,
            (project_id,),
        )
        return [
            AuditRecord(
                id=r["id"],
                project_id=r["project_id"],
                action=r["action"],
                actor_id=r["actor_id"],
                metadata=_as_dict(r["metadata"]),
                created_at=r["created_at"],
            )
            for r in cur.fetchall()
        ]


def get_idempotency(conn, project_id: str, idempotency_key: str) -> Optional[dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT request_hash, ledger_entry_ids::text[]
            FROM escrow.idempotency_keys
            WHERE project_id = %s AND idempotency_key = %s
            """,
            (project_id, idempotency_key),
        )
        row = cur.fetchone()
        if not row:
            return None
        return {"request_hash": row[0], "entry_ids": list(row[1] or [])}
