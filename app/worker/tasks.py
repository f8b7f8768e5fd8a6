"""ARQ job definitions."""

import uuid
from typing import Any

from arq import create_pool
from arq.connections import RedisSettings

from app.core.config import get_settings
from app.core.logging import bind_order_id, get_logger
from app.db.base import get_store
from app.models.failed_job import FailedJob
from app.services import hosting as hosting_service
from app.services.hestiacp import get_panel_client
from app.services.provisioning import ProvisioningCoordinator

log = get_logger(__name__)


async def _run_with_dlq(
    ctx: dict[str, Any],
    job_name: str,
    args: list[Any],
    kwargs: dict[str, Any],
    coro,
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    try:
        return await coro
    except Exception as e:
        fid = job_id or str(uuid.uuid4())
        await ctx["store"].insert_failed_job(
            FailedJob(
                job_name=job_name,
                job_id=fid,
                args=args,
                kwargs=kwargs,
                reason=str(e)[:2000],
                retries=ctx.get("job_try", 1) - 1,
            )
        )
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


def _coordinator(ctx: dict[str, Any]) -> ProvisioningCoordinator:
    return ProvisioningCoordinator(ctx["store"], ctx["panel"])


async def provision_order(ctx: dict[str, Any], order_id: int, manual: bool = False) -> str:
    """Run the provisioning saga for one order."""

    async def _run() -> str:
        bind_order_id(order_id)
        log.info("job_start", job="provision_order", order_id=order_id, manual=manual)
        outcome = await _coordinator(ctx).provision(order_id, manual=manual)
        log.info("job_done", job="provision_order", order_id=order_id, result=outcome.result)
        return outcome.result

    return await _run_with_dlq(ctx, "provision_order", [order_id], {"manual": manual}, _run())


async def resume_stalled_provisioning(ctx: dict[str, Any]) -> int:
    """Cron: pick up sagas left between steps."""
    outcomes = await _run_with_dlq(
        ctx, "resume_stalled_provisioning", [], {},
        hosting_service.resume_stalled(ctx["store"], _coordinator(ctx)),
    )
    return len(outcomes)


async def enforce_hosting_expiry(ctx: dict[str, Any]) -> int:
    """Cron: suspend accounts whose paid period has ended."""
    return await _run_with_dlq(
        ctx, "enforce_hosting_expiry", [], {},
        hosting_service.enforce_expiry(ctx["store"], ctx["panel"]),
    )


async def startup(ctx: dict) -> None:
    from app.core.logging import configure_logging
    from app.db.init import init_db
    configure_logging(debug=get_settings().debug)
    await init_db()
    ctx["store"] = get_store()
    ctx["panel"] = get_panel_client()


async def shutdown(ctx: dict) -> None:
    from app.db.init import close_db
    await close_db()


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )


async def enqueue_provision_order(order_id: int, manual: bool = False) -> None:
    """Enqueue provision_order job (call from API)."""
    redis = await create_pool(get_redis_settings())
    # One queued run per order; duplicates would only lose the saga claim anyway
    await redis.enqueue_job("provision_order", order_id, manual=manual, _job_id=f"provision:{order_id}")
    await redis.close()
