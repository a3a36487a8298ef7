"""
Per-run item accounting shared by the workers.

Each item in a batch is classified as one outcome; the summary is logged once
per run and exported as Prometheus counters.
"""
import logging
from dataclasses import dataclass, field

from prometheus_client import Counter

logger = logging.getLogger("settlement.workers")

SUCCEEDED = "succeeded"
SKIPPED = "skipped"
TRANSIENT = "transient"
PERMANENT = "permanent"
OUTCOMES = (SUCCEEDED, SKIPPED, TRANSIENT, PERMANENT)

MET_WORKER_ITEMS = Counter("settlement_worker_items_total", "Worker items processed by outcome", ["worker", "outcome"])


@dataclass
class BatchSummary:
    worker: str
    counts: dict = field(default_factory=lambda: {o: 0 for o in OUTCOMES})

    def record(self, outcome: str) -> None:
        self.counts[outcome] += 1
        MET_WORKER_ITEMS.labels(self.worker, outcome).inc()

    def merge(self, other: "BatchSummary") -> "BatchSummary":
        for outcome, n in other.counts.items():
            self.counts[outcome] += n
        return self

    @property
    def succeeded(self) -> int:
        return self.counts[SUCCEEDED]

    @property
    def skipped(self) -> int:
        return self.counts[SKIPPED]

    @property
    def transient(self) -> int:
        return self.counts[TRANSIENT]

    @property
    def permanent(self) -> int:
        return self.counts[PERMANENT]

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def log(self) -> None:
        if self.total == 0:
            logger.debug("%s run: nothing to do", self.worker)
            return
        logger.info(
            "%s run: total=%s succeeded=%s skipped=%s transient=%s permanent=%s",
            self.worker, self.total, self.succeeded, self.skipped, self.transient, self.permanent,
        )
