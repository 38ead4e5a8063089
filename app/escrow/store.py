# app/escrow/store.py
"""
Transactional record stores for the escrow engine.

Both stores hand out a per-project transaction object from
`store.transaction(project_id, timeout_s=...)`. While it is open the caller
holds that project exclusively; writes become visible only when the block
exits cleanly and are discarded when it raises.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Iterator, Optional, Protocol

import psycopg2
import psycopg2.errors
from psycopg2.pool import PoolError

from app.escrow import repository
from app.escrow.errors import ConcurrentModificationError, StoreUnavailableError
from app.escrow.models import (
    AuditRecord,
    CommissionRecord,
    CommissionStatus,
    EscrowStatus,
    LedgerEntry,
    PayoutObligation,
    ProjectEscrow,
)

logger = logging.getLogger("escrow.store")


class EscrowTx(Protocol):
    project_id: str

    def get_project(self) -> ProjectEscrow: ...
    def save_project(self, project: ProjectEscrow) -> None: ...
    def last_entry(self) -> Optional[LedgerEntry]: ...
    def add_entry(self, entry: LedgerEntry) -> None: ...
    def get_entries(self, entry_ids: list[str]) -> list[LedgerEntry]: ...
    def entries_for_payment(self, payment_id: str) -> list[LedgerEntry]: ...
    def add_payouts(self, payouts: list[PayoutObligation]) -> None: ...
    def get_payout(self, payout_id: str) -> Optional[PayoutObligation]: ...
    def update_payout(self, payout: PayoutObligation) -> None: ...
    def payouts_for_entries(self, entry_ids: list[str]) -> list[PayoutObligation]: ...
    def add_commission(self, rec: CommissionRecord) -> None: ...
    def commissions_for_entries(self, entry_ids: list[str]) -> list[CommissionRecord]: ...
    def update_commission_status(self, commission_id: str, status: CommissionStatus) -> None: ...
    def add_audit(self, rec: AuditRecord) -> None: ...
    def get_idempotency(self, key: str) -> Optional[dict[str, Any]]: ...
    def put_idempotency(self, key: str, request_hash: str, entry_ids: list[str]) -> None: ...


class EscrowStore(Protocol):
    def transaction(self, project_id: str, *, timeout_s: float) -> Any: ...
    def get_project(self, project_id: str) -> Optional[ProjectEscrow]: ...
    def all_entries(self, project_id: str) -> list[LedgerEntry]: ...
    def list_entries(self, project_id: str, *, limit: int, after_seq: int = 0) -> list[LedgerEntry]: ...
    def list_project_ids(self) -> list[str]: ...
    def find_payout(self, payout_id: str) -> Optional[PayoutObligation]: ...
    def list_payouts(self, project_id: str) -> list[PayoutObligation]: ...
    def list_commissions(self, project_id: str) -> list[CommissionRecord]: ...
    def list_audit(self, project_id: str) -> list[AuditRecord]: ...


def _new_project(project_id: str) -> ProjectEscrow:
    return ProjectEscrow(
        project_id=project_id,
        escrow_balance_cents=0,
        escrow_status=EscrowStatus.NONE,
        project_status=None,
    )


# ==========================================================
# In-memory store
# ==========================================================

class _MemoryTx:
    def __init__(self, store: "MemoryStore", project_id: str):
        self.project_id = project_id
        self._store = store
        self._project: Optional[ProjectEscrow] = None
        self._entries: list[LedgerEntry] = []
        self._payouts: dict[str, PayoutObligation] = {}
        self._commissions: dict[str, CommissionRecord] = {}
        self._audit: list[AuditRecord] = []
        self._idempotency: dict[str, dict[str, Any]] = {}

    def get_project(self) -> ProjectEscrow:
        if self._project is not None:
            return self._project
        return self._store.get_project(self.project_id) or _new_project(self.project_id)

    def save_project(self, project: ProjectEscrow) -> None:
        self._project = project

    def last_entry(self) -> Optional[LedgerEntry]:
        if self._entries:
            return self._entries[-1]
        committed = self._store.all_entries(self.project_id)
        return committed[-1] if committed else None

    def add_entry(self, entry: LedgerEntry) -> None:
        self._entries.append(entry)

    def get_entries(self, entry_ids: list[str]) -> list[LedgerEntry]:
        wanted = set(entry_ids)
        pool = self._store.all_entries(self.project_id) + self._entries
        return [e for e in pool if e.id in wanted]

    def entries_for_payment(self, payment_id: str) -> list[LedgerEntry]:
        pool = self._store.all_entries(self.project_id) + self._entries
        return [e for e in pool if e.payment_id == payment_id]

    def add_payouts(self, payouts: list[PayoutObligation]) -> None:
        for p in payouts:
            self._payouts[p.id] = p

    def get_payout(self, payout_id: str) -> Optional[PayoutObligation]:
        return self._payouts.get(payout_id) or self._store.find_payout(payout_id)

    def update_payout(self, payout: PayoutObligation) -> None:
        self._payouts[payout.id] = payout

    def payouts_for_entries(self, entry_ids: list[str]) -> list[PayoutObligation]:
        wanted = set(entry_ids)
        merged = {p.id: p for p in self._store.list_payouts(self.project_id)}
        merged.update(self._payouts)
        return [p for p in merged.values() if p.ledger_entry_id in wanted]

    def add_commission(self, rec: CommissionRecord) -> None:
        self._commissions[rec.id] = rec

    def commissions_for_entries(self, entry_ids: list[str]) -> list[CommissionRecord]:
        wanted = set(entry_ids)
        merged = {c.id: c for c in self._store.list_commissions(self.project_id)}
        merged.update(self._commissions)
        return [c for c in merged.values() if c.ledger_entry_id in wanted]

    def update_commission_status(self, commission_id: str, status: CommissionStatus) -> None:
        merged = {c.id: c for c in self._store.list_commissions(self.project_id)}
        merged.update(self._commissions)
        rec = merged.get(commission_id)
        if rec is not None:
            self._commissions[commission_id] = replace(rec, status=status)

    def add_audit(self, rec: AuditRecord) -> None:
        self._audit.append(rec)

    def get_idempotency(self, key: str) -> Optional[dict[str, Any]]:
        if key in self._idempotency:
            return self._idempotency[key]
        return self._store._get_idempotency(self.project_id, key)

    def put_idempotency(self, key: str, request_hash: str, entry_ids: list[str]) -> None:
        self._idempotency[key] = {"request_hash": request_hash, "entry_ids": list(entry_ids)}


class MemoryStore:
    """
    Process-local store: one lock per project, staged writes applied in one
    step on commit. Used by tests and single-process dev runs.
    """

    def __init__(self) -> None:
        self._data_lock = threading.RLock()
        self._locks: dict[str, threading.Lock] = {}
        self._projects: dict[str, ProjectEscrow] = {}
        self._entries: dict[str, list[LedgerEntry]] = {}
        self._payouts: dict[str, PayoutObligation] = {}
        self._commissions: dict[str, CommissionRecord] = {}
        self._audit: dict[str, list[AuditRecord]] = {}
        self._idempotency: dict[tuple[str, str], dict[str, Any]] = {}

    def _lock_for(self, project_id: str) -> threading.Lock:
        with self._data_lock:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[project_id] = lock
            return lock

    @contextmanager
    def transaction(self, project_id: str, *, timeout_s: float) -> Iterator[_MemoryTx]:
        lock = self._lock_for(project_id)
        if not lock.acquire(timeout=timeout_s):
            raise ConcurrentModificationError(f"timed out waiting for project {project_id}")
        try:
            tx = _MemoryTx(self, project_id)
            yield tx
            self._commit(tx)
        finally:
            lock.release()

    def _commit(self, tx: _MemoryTx) -> None:
        with self._data_lock:
            if tx._project is not None:
                self._projects[tx.project_id] = tx._project
            if tx._entries:
                self._entries.setdefault(tx.project_id, []).extend(tx._entries)
            self._payouts.update(tx._payouts)
            self._commissions.update(tx._commissions)
            if tx._audit:
                self._audit.setdefault(tx.project_id, []).extend(tx._audit)
            for key, value in tx._idempotency.items():
                self._idempotency[(tx.project_id, key)] = value

    def _get_idempotency(self, project_id: str, key: str) -> Optional[dict[str, Any]]:
        with self._data_lock:
            return self._idempotency.get((project_id, key))

    def get_project(self, project_id: str) -> Optional[ProjectEscrow]:
        with self._data_lock:
            return self._projects.get(project_id)

    def all_entries(self, project_id: str) -> list[LedgerEntry]:
        with self._data_lock:
            return list(self._entries.get(project_id, []))

    def list_entries(self, project_id: str, *, limit: int, after_seq: int = 0) -> list[LedgerEntry]:
        entries = [e for e in self.all_entries(project_id) if e.seq > after_seq]
        entries.sort(key=lambda e: (e.created_at, e.seq))
        return entries[:limit]

    def list_project_ids(self) -> list[str]:
        with self._data_lock:
            return sorted(self._projects)

    def find_payout(self, payout_id: str) -> Optional[PayoutObligation]:
        with self._data_lock:
            return self._payouts.get(payout_id)

    def list_payouts(self, project_id: str) -> list[PayoutObligation]:
        with self._data_lock:
            items = [p for p in self._payouts.values() if p.project_id == project_id]
        return sorted(items, key=lambda p: (p.created_at, p.id))

    def list_commissions(self, project_id: str) -> list[CommissionRecord]:
        with self._data_lock:
            items = [c for c in self._commissions.values() if c.project_id == project_id]
        return sorted(items, key=lambda c: c.created_at)

    def list_audit(self, project_id: str) -> list[AuditRecord]:
        with self._data_lock:
            return list(self._audit.get(project_id, []))


# ==========================================================
# Postgres store
# ==========================================================

# Errors meaning "someone else holds or just changed this project": retry.
_CONTENTION_ERRORS = (
    psycopg2.errors.LockNotAvailable,
    psycopg2.errors.SerializationFailure,
    psycopg2.errors.DeadlockDetected,
    psycopg2.errors.UniqueViolation,
)


class _PgTx:
    def __init__(self, conn, project_id: str, project: ProjectEscrow):
        self._conn = conn
        self.project_id = project_id
        self._project = project

    def get_project(self) -> ProjectEscrow:
        return self._project

    def save_project(self, project: ProjectEscrow) -> None:
        repository.update_project(self._conn, project)
        self._project = project

    def last_entry(self) -> Optional[LedgerEntry]:
        return repository.last_entry(self._conn, self.project_id)

    def add_entry(self, entry: LedgerEntry) -> None:
        repository.insert_entry(self._conn, entry)

    def get_entries(self, entry_ids: list[str]) -> list[LedgerEntry]:
        return repository.get_entries(self._conn, entry_ids)

    def entries_for_payment(self, payment_id: str) -> list[LedgerEntry]:
        return repository.entries_for_payment(self._conn, self.project_id, payment_id)

    def add_payouts(self, payouts: list[PayoutObligation]) -> None:
        repository.insert_payouts(self._conn, payouts)

    def get_payout(self, payout_id: str) -> Optional[PayoutObligation]:
        return repository.get_payout(self._conn, payout_id)

    def update_payout(self, payout: PayoutObligation) -> None:
        repository.update_payout(self._conn, payout)

    def payouts_for_entries(self, entry_ids: list[str]) -> list[PayoutObligation]:
        return repository.list_payouts(self._conn, self.project_id, entry_ids=entry_ids)

    def add_commission(self, rec: CommissionRecord) -> None:
        repository.insert_commission(self._conn, rec)

    def commissions_for_entries(self, entry_ids: list[str]) -> list[CommissionRecord]:
        return repository.list_commissions(self._conn, self.project_id, entry_ids=entry_ids)

    def update_commission_status(self, commission_id: str, status: CommissionStatus) -> None:
        repository.update_commission_status(self._conn, commission_id, status)

    def add_audit(self, rec: AuditRecord) -> None:
        repository.insert_audit(self._conn, rec)

    def get_idempotency(self, key: str) -> Optional[dict[str, Any]]:
        return repository.get_idempotency(self._conn, self.project_id, key)

    def put_idempotency(self, key: str, request_hash: str, entry_ids: list[str]) -> None:
        repository.insert_idempotency(
            self._conn,
            project_id=self.project_id,
            idempotency_key=key,
            request_hash=request_hash,
            entry_ids=entry_ids,
        )


class PostgresStore:
    """
    Row lock on escrow.projects serializes writers per project; everything
    an operation writes shares one connection and one COMMIT.
    """

    def __init__(self, get_conn=None):
        if get_conn is None:
            from db import get_conn
        self._get_conn = get_conn

    @contextmanager
    def transaction(self, project_id: str, *, timeout_s: float) -> Iterator[_PgTx]:
        try:
            with self._get_conn() as conn:
                repository.set_lock_timeout(conn, timeout_s)
                project = repository.lock_project(conn, project_id)
                yield _PgTx(conn, project_id, project)
        except _CONTENTION_ERRORS as e:
            raise ConcurrentModificationError(f"project {project_id} is busy: {e.pgcode}") from e
        except (psycopg2.Error, PoolError) as e:
            logger.warning("escrow store failure project_id=%s err=%s", project_id, type(e).__name__)
            raise StoreUnavailableError("escrow store unavailable") from e

    @contextmanager
    def _read(self) -> Iterator[Any]:
        try:
            with self._get_conn() as conn:
                yield conn
        except (psycopg2.Error, PoolError) as e:
            raise StoreUnavailableError("escrow store unavailable") from e

    def get_project(self, project_id: str) -> Optional[ProjectEscrow]:
        with self._read() as conn:
            return repository.get_project(conn, project_id)

    def all_entries(self, project_id: str) -> list[LedgerEntry]:
        with self._read() as conn:
            return repository.list_entries(conn, project_id)

    def list_entries(self, project_id: str, *, limit: int, after_seq: int = 0) -> list[LedgerEntry]:
        with self._read() as conn:
            return repository.list_entries(conn, project_id, limit=limit, after_seq=after_seq)

    def list_project_ids(self) -> list[str]:
        with self._read() as conn:
            return repository.list_project_ids(conn)

    def find_payout(self, payout_id: str) -> Optional[PayoutObligation]:
        with self._read() as conn:
            return repository.get_payout(conn, payout_id)

    def list_payouts(self, project_id: str) -> list[PayoutObligation]:
        with self._read() as conn:
            return repository.list_payouts(conn, project_id)

    def list_commissions(self, project_id: str) -> list[CommissionRecord]:
        with self._read() as conn:
            return repository.list_commissions(conn, project_id)

    def list_audit(self, project_id: str) -> list[AuditRecord]:
        with self._read() as conn:
            return repository.list_audit(conn, project_id)


def build_store(kind: str | None = None) -> EscrowStore:
    if kind is None:
        from settings import settings

        kind = settings.ESCROW_STORE
    if kind == "postgres":
        return PostgresStore()
    return MemoryStore()
