"""Credit ledger: per-user balances plus an append-only transaction log.

A balance lives on the user document and is only changed by a conditional
`$inc` (decrement-if-sufficient), so concurrent debits cannot overdraw or lose
updates. Every accepted change appends exactly one CreditTransaction carrying
the post-update balance. When a later write of the same operation fails, the
enclosing MongoDB transaction aborts (MONGODB_TRANSACTIONS=true) or the
balance change is reverted by a compensating `$inc` before re-raising.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, get_args

from beanie import PydanticObjectId
from beanie.odm.queries.update import UpdateResponse
from pymongo.errors import BulkWriteError, DuplicateKeyError

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import (
    BadRequestError,
    InsufficientCreditsError,
    NotFoundError,
    RecipientNotFoundError,
    SelfTransferError,
)
from app.core.logging import get_logger
from app.core.pagination import Page, page_count, paginate
from app.db.transactions import run_in_transaction
from app.models.credit_transaction import (
    CATEGORY_BY_TYPE,
    CreditTransaction,
    TransactionStatus,
    TransactionType,
)
from app.models.user import User
from app.services import notifications

log = get_logger(__name__)

TRANSACTION_TYPES = get_args(TransactionType)
TRANSACTION_STATUSES = get_args(TransactionStatus)
EARNING_TYPES = ("earned", "session_completion")
SPENDING_TYPES = ("spent", "session_booking")
STATS_PERIODS = {"7d": 7, "30d": 30, "90d": 90}


async def get_balance(user_id: PydanticObjectId) -> int:
    """Return the user's current balance."""
    user = await User.get(user_id)
    if not user:
        raise NotFoundError("User not found")
    return user.credits


def _balance_inc(tx_type: str, amount: int) -> dict[str, int]:
    inc = {"credits": amount}
    if amount > 0 and tx_type in EARNING_TYPES:
        inc["total_credits_earned"] = amount
    elif amount < 0 and tx_type in SPENDING_TYPES:
        inc["total_credits_spent"] = -amount
    return inc


async def _move_balance(user_id: PydanticObjectId, amount: int, tx_type: str, session=None) -> int | None:
    """Atomically add `amount`; None when the user is missing or a debit would go below zero."""
    filters: dict[str, Any] = {"_id": user_id}
    if amount < 0:
        filters["credits"] = {"$gte": -amount}
    updated = await User.find_one(filters, session=session).update(
        {"$inc": _balance_inc(tx_type, amount), "$set": {"updated_at": datetime.utcnow()}},
        session=session,
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    return updated.credits if updated else None


async def _revert_balance(user_id: PydanticObjectId, amount: int, tx_type: str) -> None:
    """Undo a `_move_balance` whose log record could not be written (non-transactional mode)."""
    undo = {k: -v for k, v in _balance_inc(tx_type, amount).items()}
    await User.find_one({"_id": user_id}).update({"$inc": undo})
    log.error("ledger_compensated", user_id=str(user_id), amount=amount, type=tx_type)


async def _reject(user_id: PydanticObjectId, amount: int, session=None) -> None:
    """Raise the business error explaining why `_move_balance` matched nothing."""
    user = await User.get(user_id, session=session)
    if not user:
        raise NotFoundError("User not found")
    log.info("ledger_rejected", user_id=str(user_id), required=-amount, available=user.credits)
    raise InsufficientCreditsError(required=-amount, available=user.credits)


def _build_entry(
    user_id: PydanticObjectId,
    amount: int,
    tx_type: str,
    balance_after: int,
    description: str,
    related_session: PydanticObjectId | None = None,
    related_user: PydanticObjectId | None = None,
    idempotency_key: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> CreditTransaction:
    return CreditTransaction(
        id=PydanticObjectId(),
        user=user_id,
        type=tx_type,
        amount=amount,
        balance_after=balance_after,
        related_session=related_session,
        related_user=related_user,
        description=description,
        category=CATEGORY_BY_TYPE[tx_type],
        idempotency_key=idempotency_key,
        metadata=metadata or {},
    )


async def _find_by_key(user_id: PydanticObjectId, idempotency_key: str) -> CreditTransaction | None:
    return await CreditTransaction.find_one(
        CreditTransaction.user == user_id,
        CreditTransaction.idempotency_key == idempotency_key,
    )


async def apply_delta(
    user_id: PydanticObjectId,
    amount: int,
    tx_type: str,
    description: str,
    related_session: PydanticObjectId | None = None,
    related_user: PydanticObjectId | None = None,
    idempotency_key: str | None = None,
    metadata: dict[str, Any] | None = None,
    session=None,
    notify: bool = True,
) -> tuple[CreditTransaction, int]:
    """
    Change a balance by a signed amount and append the matching transaction.
    Returns (transaction, balance_after).
    Raises InsufficientCreditsError, leaving balance and log untouched, when a debit exceeds the balance.
    Idempotency: a repeated idempotency_key returns the original transaction and applies nothing,
    also when two calls race and the unique (user, idempotency_key) index rejects the second.
    Pass `session` to join an enclosing unit of work. Callers that may still roll back
    pass notify=False and publish the balance change themselves once committed.
    """
    if tx_type not in TRANSACTION_TYPES:
        raise BadRequestError(f"Invalid transaction type: {tx_type}")
    if amount == 0:
        raise BadRequestError("Amount must be non-zero")
    if idempotency_key:
        existing = await _find_by_key(user_id, idempotency_key)
        if existing:
            return existing, await get_balance(user_id)

    async def _write(s) -> tuple[CreditTransaction, int]:
        balance_after = await _move_balance(user_id, amount, tx_type, s)
        if balance_after is None:
            await _reject(user_id, amount, s)
        entry = _build_entry(
            user_id,
            amount,
            tx_type,
            balance_after,
            description,
            related_session=related_session,
            related_user=related_user,
            idempotency_key=idempotency_key,
            metadata=metadata,
        )
        try:
            await entry.insert(session=s)
        except Exception:
            if s is None:
                await _revert_balance(user_id, amount, tx_type)
            raise
        return entry, balance_after

    try:
        entry, balance_after = await run_in_transaction(_write, session)
    except DuplicateKeyError:
        # A concurrent call with the same key inserted first
        if not idempotency_key or session is not None:
            raise
        existing = await _find_by_key(user_id, idempotency_key)
        if existing is None:
            raise
        log.info("ledger_replayed", user_id=str(user_id), idempotency_key=idempotency_key)
        return existing, await get_balance(user_id)

    log.info(
        "ledger_applied",
        user_id=str(user_id),
        type=tx_type,
        amount=amount,
        balance_after=balance_after,
        transaction_id=str(entry.id),
    )
    if notify:
        await notifications.balance_changed(user_id, balance_after)
    return entry, balance_after


async def reverse(entry: CreditTransaction, description: str | None = None, session=None, notify: bool = True) -> tuple[CreditTransaction, int]:
    """Append a compensating entry that cancels `entry`'s effect on the balance."""
    return await apply_delta(
        entry.user,
        -entry.amount,
        "refund" if entry.amount < 0 else "penalty",
        description or f"Reversal: {entry.description}",
        related_session=entry.related_session,
        related_user=entry.related_user,
        metadata={"reverses": str(entry.id)},
        session=session,
        notify=notify,
    )


async def purchase(
    user_id: PydanticObjectId,
    amount: int,
    payment_method: str,
    idempotency_key: str | None = None,
) -> tuple[CreditTransaction, int]:
    """Grant purchased credits. No payment gateway is involved; the caller is trusted."""
    if amount <= 0:
        raise BadRequestError("Invalid amount")
    if not payment_method or not payment_method.strip():
        raise BadRequestError("Payment method is required")
    entry, balance = await apply_delta(
        user_id,
        amount,
        "credit_purchase",
        f"Credit purchase via {payment_method}",
        idempotency_key=idempotency_key,
        metadata={"payment_method": payment_method, "reference": f"txn_{uuid.uuid4().hex[:16]}"},
    )
    await log_event(str(user_id), "credit_purchase", "credit_transaction", str(entry.id), {"amount": amount})
    return entry, balance


def _is_duplicate_key(error: Exception) -> bool:
    if isinstance(error, DuplicateKeyError):
        return True
    write_errors = (getattr(error, "details", None) or {}).get("writeErrors", [])
    return any(e.get("code") == 11000 for e in write_errors)


async def _transfer_replay(
    from_user_id: PydanticObjectId,
    to_user_id: PydanticObjectId,
    idempotency_key: str,
) -> dict[str, Any] | None:
    """Result of an earlier transfer made with this key, or None."""
    debit = await _find_by_key(from_user_id, idempotency_key)
    if not debit:
        return None
    credit = await _find_by_key(to_user_id, f"{idempotency_key}:credit")
    return {
        "from_balance": await get_balance(from_user_id),
        "to_balance": credit.balance_after if credit else None,
        "transactions": [t for t in (debit, credit) if t],
    }


async def transfer(
    from_user_id: PydanticObjectId,
    to_user_id: PydanticObjectId,
    amount: int,
    description: str | None = None,
    idempotency_key: str | None = None,
) -> dict[str, Any]:
    """
    Move credits between two users. Both balances change and two records are
    appended, or nothing happens. Returns sender/recipient balances and both records.
    """
    if amount <= 0:
        raise BadRequestError("Transfer amount must be positive")
    if str(from_user_id) == str(to_user_id):
        raise SelfTransferError()
    if not await User.get(to_user_id):
        raise RecipientNotFoundError()
    description = description or "Credit transfer"

    if idempotency_key:
        replay = await _transfer_replay(from_user_id, to_user_id, idempotency_key)
        if replay:
            return replay

    async def _write(s) -> tuple[int, int, CreditTransaction, CreditTransaction]:
        to_balance = None
        from_balance = await _move_balance(from_user_id, -amount, "credit_transfer", s)
        if from_balance is None:
            await _reject(from_user_id, -amount, s)
        try:
            to_balance = await _move_balance(to_user_id, amount, "credit_transfer", s)
            if to_balance is None:
                raise RecipientNotFoundError()
            debit = _build_entry(
                from_user_id, -amount, "credit_transfer", from_balance, description,
                related_user=to_user_id, idempotency_key=idempotency_key,
            )
            credit = _build_entry(
                to_user_id, amount, "credit_transfer", to_balance, description,
                related_user=from_user_id,
                idempotency_key=f"{idempotency_key}:credit" if idempotency_key else None,
            )
            await CreditTransaction.insert_many([debit, credit], session=s)
        except Exception:
            if s is None:
                await _revert_balance(from_user_id, -amount, "credit_transfer")
                if to_balance is not None:
                    await _revert_balance(to_user_id, amount, "credit_transfer")
            raise
        return from_balance, to_balance, debit, credit

    try:
        from_balance, to_balance, debit, credit = await run_in_transaction(_write)
    except (DuplicateKeyError, BulkWriteError) as e:
        if not idempotency_key or not _is_duplicate_key(e):
            raise
        replay = await _transfer_replay(from_user_id, to_user_id, idempotency_key)
        if replay is None:
            raise
        log.info("ledger_replayed", user_id=str(from_user_id), idempotency_key=idempotency_key)
        return replay

    log.info(
        "credit_transfer",
        from_user_id=str(from_user_id),
        to_user_id=str(to_user_id),
        amount=amount,
    )
    await log_event(
        str(from_user_id), "credit_transfer", "credit_transaction", str(debit.id),
        {"to_user_id": str(to_user_id), "amount": amount},
    )
    await notifications.balance_changed(from_user_id, from_balance)
    await notifications.balance_changed(to_user_id, to_balance)
    return {"from_balance": from_balance, "to_balance": to_balance, "transactions": [debit, credit]}


async def history(
    user_id: PydanticObjectId,
    tx_type: str | None = None,
    status: str | None = None,
    page: int = 1,
    limit: int | None = None,
) -> Page[CreditTransaction]:
    """Transactions on the user's account, newest first."""
    settings = get_settings()
    page, limit, skip = paginate(page, limit or settings.history_default_limit, settings.history_max_limit)
    conditions = [CreditTransaction.user == user_id]
    if tx_type is not None:
        if tx_type not in TRANSACTION_TYPES:
            raise BadRequestError(f"Invalid transaction type: {tx_type}")
        conditions.append(CreditTransaction.type == tx_type)
    if status is not None:
        if status not in TRANSACTION_STATUSES:
            raise BadRequestError(f"Invalid transaction status: {status}")
        conditions.append(CreditTransaction.status == status)

    total = await CreditTransaction.find(*conditions).count()
    items = (
        await CreditTransaction.find(*conditions)
        .sort("-created_at", "-_id")
        .skip(skip)
        .limit(limit)
        .to_list()
    )
    return Page[CreditTransaction](items=items, page=page, limit=limit, total=total, pages=page_count(total, limit))


async def stats(user_id: PydanticObjectId, period: str = "30d", now: datetime | None = None) -> dict[str, Any]:
    """Balance plus credits earned / spent and transfers made over a trailing window."""
    if period not in STATS_PERIODS:
        raise BadRequestError(f"Invalid period: {period}")
    since = (now or datetime.utcnow()) - timedelta(days=STATS_PERIODS[period])
    window = [
        CreditTransaction.user == user_id,
        CreditTransaction.status == "completed",
        CreditTransaction.created_at >= since,
    ]
    earned = await CreditTransaction.find(*window, CreditTransaction.amount > 0).sum(CreditTransaction.amount)
    spent = await CreditTransaction.find(*window, CreditTransaction.amount < 0).sum(CreditTransaction.amount)
    transfer_count = await CreditTransaction.find(*window, CreditTransaction.type == "credit_transfer").count()
    return {
        "current_balance": await get_balance(user_id),
        "period": period,
        "earned": int(earned or 0),
        "spent": -int(spent or 0),
        "transfer_count": transfer_count,
    }
