"""
Worker process: runs every periodic job on its own cadence.

    python -m app.workers.runner

Each job loops run_once -> sleep(interval); consecutive failures back off
exponentially up to 300 seconds. A Prometheus metrics server exposes worker
counters on METRICS_PORT.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable

from prometheus_client import Gauge, start_http_server

from app.bootstrap import Services, build_services
from app.core.config import settings
from app.core.sentry import init_sentry
from app.notifications.worker import WebhookWorker
from app.reconciliation.engine import ReconciliationEngine
from app.workers.confirmation import ConfirmationWorker
from app.workers.expiry import ExpiryWorker
from app.workers.sweep import SweepWorker

logger = logging.getLogger("settlement.workers.runner")

MAX_BACKOFF_SECONDS = 300
MET_JOB_LAST_SUCCESS = Gauge("settlement_job_last_success_unixtime", "Unix time of the last successful run", ["job"])


class PeriodicJob:
    def __init__(self, name: str, run_once: Callable[[], Awaitable[object]], interval: float):
        self.name = name
        self.run_once = run_once
        self.interval = interval
        self.running = False
        self.consecutive_errors = 0

    def backoff(self) -> float:
        return min(MAX_BACKOFF_SECONDS, 2 ** min(self.consecutive_errors, 9))

    async def tick(self) -> float:
        """One iteration; returns the delay before the next one."""
        try:
            await self.run_once()
        except Exception:
            self.consecutive_errors += 1
            logger.exception("Job %s failed (consecutive errors=%s)", self.name, self.consecutive_errors)
            return self.backoff()
        self.consecutive_errors = 0
        MET_JOB_LAST_SUCCESS.labels(self.name).set(int(time.time()))
        return self.interval

    async def run(self):
        self.running = True
        logger.info("Starting job %s every %ss", self.name, self.interval)
        while self.running:
            await asyncio.sleep(await self.tick())

    def stop(self):
        self.running = False


def build_jobs(services: Services) -> list[PeriodicJob]:
    confirmation = ConfirmationWorker(services.payments, services.repository)
    expiry = ExpiryWorker(services.payments, services.repository)
    sweep = SweepWorker(services.payments, services.repository, services.registry, services.allocator)
    reconciliation = ReconciliationEngine(services.session_factory)
    jobs = [
        PeriodicJob("confirmation", confirmation.run_once, settings.CONFIRMATION_POLL_SECONDS),
        PeriodicJob("expiry", expiry.run_once, settings.EXPIRY_POLL_SECONDS),
        PeriodicJob("sweep", sweep.run_once, settings.SWEEP_POLL_SECONDS),
        PeriodicJob("reconciliation", reconciliation.run_once, settings.RECONCILIATION_POLL_SECONDS),
    ]
    if settings.WEBHOOK_URL:
        webhooks = WebhookWorker(services.session_factory, settings.WEBHOOK_SECRET.get_secret_value())
        jobs.append(PeriodicJob("webhooks", webhooks.run_once, settings.WEBHOOK_WORKER_POLL_SECONDS))
    return jobs


async def run_all():
    services = build_services()
    if services.allocator.is_configured:
        await services.allocator.ensure_counters()
    else:
        logger.warning("HD_MNEMONIC not set; manual payments are disabled")
    jobs = build_jobs(services)
    await asyncio.gather(*(job.run() for job in jobs))


def main():
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    init_sentry("settlement-workers")
    try:
        start_http_server(settings.METRICS_PORT)
        logger.info("Prometheus metrics server started on port %s", settings.METRICS_PORT)
    except OSError as exc:
        logger.warning("Failed to start metrics server: %s", exc)
    asyncio.run(run_all())


if __name__ == "__main__":
    main()
