import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from app.core.config import get_settings
from app.models.audit_log import AuditLog
from app.models.credit_transaction import CreditTransaction
from app.models.failed_job import FailedJob
from app.models.session import TutoringSession
from app.models.user import User

DOCUMENT_MODELS = [
    User,
    CreditTransaction,
    TutoringSession,
    AuditLog,
    FailedJob,
]

_client: AsyncIOMotorClient | None = None


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def get_client():
    """Client behind the initialised database; used to open transaction sessions."""
    if _client is None:
        raise RuntimeError("Database not initialised; call init_db() first")
    return _client


async def init_db(database: AsyncIOMotorDatabase | None = None) -> None:
    """Connect and register document models. Pass `database` to reuse an existing handle (tests)."""
    global _client
    if database is None:
        settings = get_settings()
        # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
        database = client[settings.mongodb_db_name]
    _client = getattr(database, "client", None)
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
