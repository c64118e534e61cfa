"""ARQ job definitions."""

import uuid
from typing import Any

from arq.connections import RedisSettings

from creditflow.core.config import get_settings
from creditflow.core.logging import get_logger

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    args: list[Any],
    kwargs: dict[str, Any],
    coro,
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        return await coro
    except Exception as e:
        from creditflow.db.init import init_db
        from creditflow.models.failed_job import FailedJob
        await init_db()
        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            args=args,
            kwargs=kwargs,
            reason=str(e)[:2000],
            retries=0,
        ).insert()
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


async def startup(ctx: dict) -> None:
    from creditflow.core.logging import configure_logging
    from creditflow.db.init import init_db
    configure_logging(debug=get_settings().debug)
    await init_db()


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path else 0,
    )


async def expire_credits(ctx: dict[str, Any]) -> int:
    """Cron job: deactivate ledger entries whose expiry has passed."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    from creditflow.worker.cron import run_expire_credits
    return await _run_with_dlq("expire_credits", job_id, [], {}, run_expire_credits())
