"""ARQ job definitions."""

from typing import Any
from urllib.parse import urlparse

from arq.connections import RedisSettings

from app.core.config import get_settings
from app.core.logging import get_logger
from app.services import webhooks as webhooks_service
from app.services.catalog import BeanieCatalog

log = get_logger(__name__)


async def replay_failed_webhooks(ctx: dict[str, Any]) -> dict[str, int]:
    """Retry dead-lettered webhooks that failed for transient reasons."""
    log.info("job_start", job="replay_failed_webhooks")
    out = await webhooks_service.replay_transient_failures(BeanieCatalog())
    log.info("job_done", job="replay_failed_webhooks", **out)
    return out


async def startup(ctx: dict) -> None:
    from app.core.logging import configure_logging
    from app.db.init import init_db
    configure_logging(debug=get_settings().debug)
    await init_db()


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )
