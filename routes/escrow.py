# routes/escrow.py
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from app.escrow.service import EscrowEngine
from deps.admin import require_admin
from deps.auth import CurrentUser, get_current_user
from deps.escrow import get_engine
from schemas import (
    BalanceResponse,
    DepositQuoteResponse,
    LedgerEntryItem,
    LedgerPageResponse,
    OperationResponse,
    PayoutItem,
    PayoutStatusRequest,
    RefundRequest,
    ReleaseRequest,
    VerifyPaymentRequest,
)

router = APIRouter(prefix="/v1/escrow", tags=["escrow"])


@router.post("/payments/{payment_id}/verify", response_model=OperationResponse)
def verify_payment(
    payment_id: str,
    body: VerifyPaymentRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    admin: CurrentUser = Depends(require_admin),
    engine: EscrowEngine = Depends(get_engine),
):
    result = engine.hold(
        body.project_id,
        payment_id,
        body.amount_cents,
        payer_id=body.payer_id,
        actor_id=admin.user_id,
        idempotency_key=idempotency_key,
    )
    return OperationResponse.of(result)


@router.post("/projects/{project_id}/release", response_model=OperationResponse)
def release(
    project_id: str,
    body: ReleaseRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    user: CurrentUser = Depends(get_current_user),
    engine: EscrowEngine = Depends(get_engine),
):
    result = engine.release(
        project_id,
        body.amount_cents,
        body.developer_id,
        body.commissioner_id,
        body.commissioner_rate,
        body.referrer_id,
        commissioner_tier=body.commissioner_tier,
        actor_id=user.user_id,
        idempotency_key=idempotency_key,
    )
    return OperationResponse.of(result)


@router.post("/projects/{project_id}/refund", response_model=OperationResponse)
def refund(
    project_id: str,
    body: RefundRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    admin: CurrentUser = Depends(require_admin),
    engine: EscrowEngine = Depends(get_engine),
):
    result = engine.refund(
        project_id,
        body.payment_id,
        body.original_paid_cents,
        body.reason,
        body.payer_id,
        actor_id=admin.user_id,
        idempotency_key=idempotency_key,
    )
    return OperationResponse.of(result)


@router.get("/projects/{project_id}/balance", response_model=BalanceResponse)
def balance(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    engine: EscrowEngine = Depends(get_engine),
):
    return BalanceResponse.of(engine.get_project(project_id))


@router.get("/projects/{project_id}/ledger", response_model=LedgerPageResponse)
def ledger(
    project_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    engine: EscrowEngine = Depends(get_engine),
):
    page = engine.get_ledger(project_id, limit=limit, cursor=cursor)
    return LedgerPageResponse(
        project_id=project_id,
        items=[LedgerEntryItem.of(e) for e in page.items],
        next_cursor=page.next_cursor,
    )


@router.get("/projects/{project_id}/payouts", response_model=list[PayoutItem])
def payouts(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    engine: EscrowEngine = Depends(get_engine),
):
    return [PayoutItem.of(p) for p in engine.list_payouts(project_id)]


@router.get("/deposit-quote", response_model=DepositQuoteResponse)
def deposit_quote(
    total_value_cents: int = Query(gt=0),
    user: CurrentUser = Depends(get_current_user),
    engine: EscrowEngine = Depends(get_engine),
):
    return DepositQuoteResponse(
        total_value_cents=total_value_cents,
        deposit_cents=engine.required_deposit(total_value_cents),
    )


@router.post("/payouts/{payout_id}/status", response_model=PayoutItem)
def payout_status(
    payout_id: str,
    body: PayoutStatusRequest,
    admin: CurrentUser = Depends(require_admin),
    engine: EscrowEngine = Depends(get_engine),
):
    payout = engine.mark_payout(payout_id, body.status, method=body.method, actor_id=admin.user_id)
    return PayoutItem.of(payout)
