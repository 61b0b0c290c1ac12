"""Transaction scope for multi-document writes.

With MONGODB_TRANSACTIONS enabled, a unit of work runs through Motor's
`with_transaction`, which aborts on error and retries the whole callback on
TransientTransactionError and the commit on UnknownTransactionCommitResult.
Without it the callback receives None: each write is single-document atomic and
the callback is responsible for compensating earlier writes when a later one fails.
"""

from typing import Any, Awaitable, Callable, TypeVar

from app.core.config import get_settings
from app.db.init import get_client

T = TypeVar("T")


def transactions_enabled() -> bool:
    return get_settings().mongodb_transactions


async def run_in_transaction(work: Callable[[Any], Awaitable[T]], session=None) -> T:
    """Await `work(session)` as one unit; a caller's session is reused as-is.

    `work` may run more than once when transactions are on, so it must not have
    effects outside the database.
    """
    if session is not None or not transactions_enabled():
        return await work(session)
    async with await get_client().start_session() as s:
        return await s.with_transaction(work)
