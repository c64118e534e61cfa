import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from creditflow.core.config import get_settings
from creditflow.models.audit_log import AuditLog
from creditflow.models.checkout_mapping import CheckoutMappingDocument
from creditflow.models.credit_entry import CreditEntryDocument
from creditflow.models.failed_job import FailedJob
from creditflow.models.user import User

DOCUMENT_MODELS = [
    User,
    CreditEntryDocument,
    CheckoutMappingDocument,
    AuditLog,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db() -> None:
    settings = get_settings()
    kwargs = {}
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    client = AsyncIOMotorClient(
        settings.mongodb_uri,
        serverSelectionTimeoutMS=int(settings.storage_timeout_seconds * 1000),
        **kwargs,
    )
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
