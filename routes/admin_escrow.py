# routes/admin_escrow.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header

from app.escrow.service import EscrowEngine
from deps.admin import require_admin
from deps.auth import CurrentUser
from deps.escrow import get_engine
from schemas import (
    AdjustRequest,
    DisputeResolveRequest,
    DisputeResolveResponse,
    IntegrityCheckResponse,
    OperationResponse,
)
from services.reconcile import run_reconcile

logger = logging.getLogger("escrow.http")

router = APIRouter(prefix="/v1/admin", tags=["admin-escrow"])


@router.post("/escrow/projects/{project_id}/adjust", response_model=OperationResponse)
def adjust(
    project_id: str,
    body: AdjustRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    admin: CurrentUser = Depends(require_admin),
    engine: EscrowEngine = Depends(get_engine),
):
    result = engine.adjust(
        project_id,
        body.signed_amount_cents,
        body.justification,
        actor_id=admin.user_id,
        idempotency_key=idempotency_key,
    )
    return OperationResponse.of(result)


@router.post("/disputes/{dispute_id}/resolve", response_model=DisputeResolveResponse)
def resolve_dispute(
    dispute_id: str,
    body: DisputeResolveRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    admin: CurrentUser = Depends(require_admin),
    engine: EscrowEngine = Depends(get_engine),
):
    """
    release_escrow pays the whole remaining balance out to the developer side;
    refund_client refunds the named payment (plus any leftover) to the client.
    """
    if body.action == "release_escrow":
        result = engine.release_remaining(
            body.project_id,
            body.developer_id,
            body.commissioner_id,
            body.commissioner_rate,
            body.referrer_id,
            actor_id=admin.user_id,
            idempotency_key=idempotency_key,
        )
    else:
        result = engine.refund(
            body.project_id,
            body.payment_id,
            body.original_paid_cents,
            f"dispute {dispute_id}: {body.resolution}",
            body.payer_id,
            actor_id=admin.user_id,
            idempotency_key=idempotency_key,
        )

    logger.info(
        "dispute resolved dispute_id=%s project_id=%s action=%s entry_id=%s",
        dispute_id,
        body.project_id,
        body.action,
        result.ledger_entry.id,
    )
    return DisputeResolveResponse(
        dispute_id=dispute_id,
        action=body.action,
        operation=OperationResponse.of(result),
    )


@router.post("/escrow/integrity-check", response_model=IntegrityCheckResponse)
def integrity_check(
    project_id: Optional[str] = None,
    admin: CurrentUser = Depends(require_admin),
    engine: EscrowEngine = Depends(get_engine),
):
    report = run_reconcile(engine, project_ids=[project_id] if project_id else None)
    return IntegrityCheckResponse(**report)
