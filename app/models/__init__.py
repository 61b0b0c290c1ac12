from app.models.user import OfferedSkill, User
from app.models.credit_transaction import CreditTransaction
from app.models.session import ReminderRecord, TutoringSession
from app.models.audit_log import AuditLog
from app.models.failed_job import FailedJob

__all__ = [
    "User",
    "OfferedSkill",
    "CreditTransaction",
    "TutoringSession",
    "ReminderRecord",
    "AuditLog",
    "FailedJob",
]
