"""Process-wide service graph, built once at startup and passed explicitly."""
import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from .chain import ChainClient
from .config import Settings
from .executor import ConfirmationPolicy, TransactionExecutor
from .monitor import QueueMonitor
from .redis_helper import get_redis
from .tx_queue import QueuePair
from .worker import TransactionWorker

logger = structlog.stdlib.get_logger(__name__)


@dataclass
class RelayerServices:
    settings: Settings
    redis: object
    queues: QueuePair
    chain: object
    executor: TransactionExecutor
    monitor: QueueMonitor
    worker: TransactionWorker

    def start(self, run_worker: bool = True) -> None:
        self.monitor.attach()
        if run_worker:
            self.worker.start()

    async def stop(self) -> None:
        await self.worker.stop(timeout=self.settings.job_timeout_seconds)
        self.monitor.detach()
        close = getattr(self.redis, "aclose", None)
        if close is not None:
            await close()


def _warn_on_production_gaps(settings: Settings) -> None:
    if not settings.is_production:
        return
    if not settings.allowed_ip_list:
        logger.warning("ip_allowlist_disabled", detail="ALLOWED_IPS is empty, every client IP is accepted")
    if not settings.admin_ip_list:
        logger.warning("admin_ips_empty", detail="ADMIN_IPS is empty, sensitive operations are refused")
    if settings.rate_limit_per_minute > 100:
        logger.warning("rate_limit_high", rateLimitPerMinute=settings.rate_limit_per_minute)


async def build_services(
    settings: Settings,
    redis_client=None,
    chain=None,
    clock: Callable[[], float] = time.time,
) -> RelayerServices:
    _warn_on_production_gaps(settings)
    logger.info("relayer_configuration", **settings.redacted())

    if redis_client is None:
        redis_client = await get_redis(settings.redis_url)
    if chain is None:
        chain = ChainClient.from_settings(settings)

    queues = QueuePair.from_settings(redis_client, settings, clock=clock)
    executor = TransactionExecutor(
        chain,
        token_decimals=settings.token_decimals,
        gas_margin_percent=settings.gas_margin_percent,
        confirmation_timeout=settings.confirmation_timeout_seconds,
        policy=ConfirmationPolicy(settings.skip_confirmation),
    )
    worker = TransactionWorker(
        queues,
        executor,
        poll_interval=settings.worker_poll_seconds,
        stalled_interval=settings.stalled_interval_seconds,
    )
    return RelayerServices(
        settings=settings,
        redis=redis_client,
        queues=queues,
        chain=chain,
        executor=executor,
        monitor=QueueMonitor(queues, redis_client, prefix=settings.queue_prefix),
        worker=worker,
    )


async def ping_redis(services: RelayerServices) -> bool:
    try:
        return bool(await services.redis.ping())
    except Exception:
        logger.exception("redis_ping_failed")
        return False
