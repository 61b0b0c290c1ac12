"""Append-only credit log. Documents are inserted once and never updated."""

from datetime import datetime
from typing import Literal

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, IndexModel

TransactionType = Literal[
    "earned",
    "spent",
    "bonus",
    "refund",
    "penalty",
    "session_booking",
    "session_cancellation",
    "session_completion",
    "credit_purchase",
    "credit_transfer",
]

TransactionCategory = Literal[
    "teaching", "learning", "bonus", "refund", "admin", "session", "purchase", "transfer"
]

TransactionStatus = Literal["completed", "pending", "failed", "reversed"]

CATEGORY_BY_TYPE: dict[str, str] = {
    "earned": "teaching",
    "spent": "learning",
    "bonus": "bonus",
    "refund": "refund",
    "penalty": "admin",
    "session_booking": "learning",
    "session_cancellation": "refund",
    "session_completion": "teaching",
    "credit_purchase": "purchase",
    "credit_transfer": "transfer",
}


class CreditTransaction(Document):
    user: PydanticObjectId
    type: TransactionType
    amount: int  # signed: positive = credit, negative = debit
    balance_after: int
    related_session: PydanticObjectId | None = None
    related_user: PydanticObjectId | None = None
    description: str
    category: TransactionCategory
    status: TransactionStatus = "completed"
    idempotency_key: str | None = None
    metadata: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_transactions"
        indexes = [
            [("user", 1), ("created_at", -1)],
            [("type", 1), ("status", 1)],
            [("related_session", 1)],
            # One entry per (user, key); entries without a key are not indexed
            IndexModel(
                [("user", ASCENDING), ("idempotency_key", ASCENDING)],
                name="user_idempotency_key_unique",
                unique=True,
                partialFilterExpression={"idempotency_key": {"$type": "string"}},
            ),
        ]
