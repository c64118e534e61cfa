"""Cron: expire time-limited credit grants."""

from creditflow.core.config import get_settings
from creditflow.core.logging import get_logger
from creditflow.db.init import init_db
from creditflow.ledger.mongo import MongoLedgerStore
from creditflow.services.expiration import sweep_expired

log = get_logger(__name__)


async def run_expire_credits() -> int:
    """Flip expired grants, consumed grants and the deductions they settle to inactive."""
    await init_db()
    store = MongoLedgerStore(timeout=get_settings().storage_timeout_seconds)
    count = await sweep_expired(store)
    if count:
        log.info("expire_credits", count=count)
    return count
