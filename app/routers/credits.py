from typing import Literal

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field

from app.core.exceptions import RecipientNotFoundError
from app.core.security import normalize_idempotency_key
from app.deps import get_current_user, parse_object_id
from app.models.credit_transaction import CreditTransaction
from app.models.user import User
from app.services import credits as credits_service

router = APIRouter()


class PurchaseRequest(BaseModel):
    amount: int = Field(..., gt=0, le=1000)
    payment_method: str = Field(..., min_length=1, max_length=50)


class TransferRequest(BaseModel):
    to_user_id: str
    amount: int = Field(..., gt=0)
    description: str | None = Field(None, max_length=200)


def transaction_out(t: CreditTransaction) -> dict:
    return {
        "id": str(t.id),
        "type": t.type,
        "amount": t.amount,
        "balance_after": t.balance_after,
        "category": t.category,
        "status": t.status,
        "description": t.description,
        "related_session": str(t.related_session) if t.related_session else None,
        "related_user": str(t.related_user) if t.related_user else None,
        "created_at": t.created_at.isoformat(),
    }


@router.get("/balance")
async def credits_balance(user: User = Depends(get_current_user)):
    """Return current credit balance."""
    return {"balance": await credits_service.get_balance(user.id)}


@router.get("/history")
async def credits_history(
    user: User = Depends(get_current_user),
    type: str | None = Query(None),
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    """Transactions for current user (newest first)."""
    result = await credits_service.history(user.id, tx_type=type, status=status, page=page, limit=limit)
    return {
        "transactions": [transaction_out(t) for t in result.items],
        "pagination": {"page": result.page, "limit": result.limit, "total": result.total, "pages": result.pages},
    }


@router.get("/stats")
async def credits_stats(
    user: User = Depends(get_current_user),
    period: Literal["7d", "30d", "90d"] = Query("30d"),
):
    return await credits_service.stats(user.id, period)


@router.post("/purchase", status_code=201)
async def credits_purchase(
    body: PurchaseRequest,
    user: User = Depends(get_current_user),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Grant purchased credits (no payment gateway). Optional Idempotency-Key."""
    entry, balance = await credits_service.purchase(
        user.id,
        body.amount,
        body.payment_method,
        idempotency_key=normalize_idempotency_key(idempotency_key),
    )
    return {"transaction": transaction_out(entry), "balance": balance}


@router.post("/transfer", status_code=201)
async def credits_transfer(
    body: TransferRequest,
    user: User = Depends(get_current_user),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Send credits to another user. Optional Idempotency-Key."""
    out = await credits_service.transfer(
        user.id,
        parse_object_id(body.to_user_id, RecipientNotFoundError()),
        body.amount,
        description=body.description,
        idempotency_key=normalize_idempotency_key(idempotency_key),
    )
    return {
        "balance": out["from_balance"],
        "transactions": [transaction_out(t) for t in out["transactions"] if str(t.user) == str(user.id)],
    }
