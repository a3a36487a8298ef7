"""
Reconciliation engine: a periodic cross-check of payments, invoices and refunds.

Each check runs in its own transaction. A check that raises becomes a
``check_failed`` finding and the remaining checks still run. The only
auto-remediation is expiring unpaid invoices past their deadline; everything
else is reported for a human to act on (logged, written to the audit log and
exported as a per-category gauge), never fixed silently.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import sqlalchemy as sa
from prometheus_client import Gauge
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.db.models import AuditLog, Invoice, Payment, RefundRequest, utcnow
from app.payments.enums import SETTLED_STATUSES, InvoiceState, PaymentStatus, ProviderKind, RefundState

logger = logging.getLogger("settlement.reconciliation")

ORPHANED_PAYMENT = "orphaned_payment"
DUPLICATE_PROVIDER_REF = "duplicate_provider_ref"
AMOUNT_MISMATCH = "amount_mismatch"
STUCK_REFUND = "stuck_refund"
STUCK_INVOICE = "stuck_invoice"
STALLED_CONFIRMATION = "stalled_confirmation"
STUCK_SWEEP = "stuck_sweep"
CHECK_FAILED = "check_failed"
CATEGORIES = (
    ORPHANED_PAYMENT, DUPLICATE_PROVIDER_REF, AMOUNT_MISMATCH, STUCK_REFUND,
    STUCK_INVOICE, STALLED_CONFIRMATION, STUCK_SWEEP, CHECK_FAILED,
)

MET_FINDINGS = Gauge("settlement_reconciliation_findings", "Findings in the last reconciliation run", ["category"])
MET_LAST_RUN = Gauge("settlement_reconciliation_last_run_unixtime", "Unix time of the last reconciliation run")

_SETTLED = sorted(SETTLED_STATUSES, key=lambda s: s.value)


@dataclass(frozen=True)
class Finding:
    category: str
    message: str
    record_ids: tuple = ()


@dataclass
class ReconciliationReport:
    run_at: datetime
    findings: list[Finding] = field(default_factory=list)
    expired_invoices: int = 0
    stats: dict = field(default_factory=dict)

    @property
    def has_anomalies(self) -> bool:
        return bool(self.findings)

    def by_category(self, category: str) -> list[Finding]:
        return [f for f in self.findings if f.category == category]

    def counts(self) -> dict[str, int]:
        return {c: len(self.by_category(c)) for c in CATEGORIES}

    def render(self) -> str:
        lines = [f"Payment reconciliation report - {self.run_at:%Y-%m-%d}", f"Generated: {self.run_at:%Y-%m-%d %H:%M:%S} UTC", ""]
        lines.append(f"Invoices auto-expired: {self.expired_invoices}")
        for key, value in self.stats.items():
            lines.append(f"{key}: {value}")
        lines.append("")
        if not self.findings:
            lines.append("No anomalies detected.")
        for finding in self.findings:
            lines.append(f"[{finding.category}] {finding.message}")
            for record_id in finding.record_ids:
                lines.append(f"  - {record_id}")
        return "\n".join(lines)


Check = Callable[[AsyncSession, datetime], Awaitable[list[Finding]]]


class ReconciliationEngine:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *,
                 stuck_invoice_hours: Optional[int] = None, stuck_refund_days: Optional[int] = None,
                 stuck_sweep_hours: Optional[int] = None, max_confirmation_wait_minutes: Optional[int] = None,
                 invoice_expiry_lookback_days: Optional[int] = None, tolerance_minor: Optional[int] = None):
        self.session_factory = session_factory
        self.stuck_invoice_age = timedelta(hours=stuck_invoice_hours or settings.STUCK_INVOICE_HOURS)
        self.stuck_refund_age = timedelta(days=stuck_refund_days or settings.STUCK_REFUND_DAYS)
        self.stuck_sweep_age = timedelta(hours=stuck_sweep_hours or settings.STUCK_SWEEP_HOURS)
        self.max_confirmation_wait = timedelta(minutes=max_confirmation_wait_minutes or settings.CONFIRMATION_MAX_WAIT_MINUTES)
        self.expiry_lookback = timedelta(days=invoice_expiry_lookback_days or settings.INVOICE_EXPIRY_LOOKBACK_DAYS)
        self.tolerance_minor = settings.AMOUNT_TOLERANCE_MINOR_UNITS if tolerance_minor is None else tolerance_minor

    @property
    def checks(self) -> list[tuple[str, Check]]:
        return [
            ("orphaned_payments", self.check_orphaned_payments),
            ("duplicate_provider_refs", self.check_duplicate_provider_refs),
            ("amount_mismatches", self.check_amount_mismatches),
            ("stuck_refunds", self.check_stuck_refunds),
            ("stuck_invoices", self.check_stuck_invoices),
            ("stalled_confirmations", self.check_stalled_confirmations),
            ("stuck_sweeps", self.check_stuck_sweeps),
        ]

    async def run_once(self, now: Optional[datetime] = None) -> ReconciliationReport:
        now = now or utcnow()
        report = ReconciliationReport(run_at=now)
        logger.info("Starting payment reconciliation")

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    report.expired_invoices = await self.expire_unpaid_invoices(session, now)
        except Exception as exc:
            logger.exception("Invoice auto-expiry failed")
            report.findings.append(Finding(CHECK_FAILED, f"invoice auto-expiry failed: {exc}"))

        for name, check in self.checks:
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        report.findings.extend(await check(session, now))
            except Exception as exc:
                logger.exception("Reconciliation check %s failed", name)
                report.findings.append(Finding(CHECK_FAILED, f"{name} failed: {exc}"))

        try:
            async with self.session_factory() as session:
                report.stats = await self.summary_stats(session, now)
        except Exception as exc:
            logger.exception("Reconciliation summary statistics failed")
            report.findings.append(Finding(CHECK_FAILED, f"summary statistics failed: {exc}"))

        await self._publish(report)
        return report

    async def _publish(self, report: ReconciliationReport) -> None:
        counts = report.counts()
        for category, n in counts.items():
            MET_FINDINGS.labels(category).set(n)
        MET_LAST_RUN.set(int(report.run_at.timestamp()))
        if report.has_anomalies:
            logger.warning("Reconciliation found %s anomalies:\n%s", len(report.findings), report.render())
        else:
            logger.info("Reconciliation completed with no anomalies (%s invoices expired)", report.expired_invoices)
        async with self.session_factory() as session:
            async with session.begin():
                session.add(AuditLog(
                    actor="reconciliation",
                    action="reconciliation_run",
                    details={
                        "counts": counts,
                        "expired_invoices": report.expired_invoices,
                        "stats": report.stats,
                    },
                ))

    # ------------------------------------------------------------------
    # remediation
    # ------------------------------------------------------------------

    async def expire_unpaid_invoices(self, session: AsyncSession, now: datetime) -> int:
        stmt = (
            sa.update(Invoice)
            .where(
                Invoice.state.in_([InvoiceState.CREATED, InvoiceState.AWAITING_PAYMENT]),
                Invoice.expires_at < now,
                Invoice.created_at > now - self.expiry_lookback,
            )
            .values(state=InvoiceState.EXPIRED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount:
            logger.info("Marked %s expired unpaid invoices as EXPIRED", result.rowcount)
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # checks
    # ------------------------------------------------------------------

    async def check_orphaned_payments(self, session: AsyncSession, now: datetime) -> list[Finding]:
        stmt = (
            sa.select(Payment.id, Payment.provider_ref)
            .outerjoin(Invoice, Invoice.id == Payment.invoice_id)
            .where(Payment.invoice_id.is_not(None), Invoice.id.is_(None))
        )
        rows = (await session.execute(stmt)).all()
        if not rows:
            return []
        return [Finding(
            ORPHANED_PAYMENT,
            f"{len(rows)} payments reference an invoice that does not exist",
            tuple(f"payment {r.id} ref {r.provider_ref}" for r in rows),
        )]

    async def check_duplicate_provider_refs(self, session: AsyncSession, now: datetime) -> list[Finding]:
        stmt = (
            sa.select(Payment.provider_ref, sa.func.count(Payment.id).label("n"))
            .where(Payment.provider_ref.is_not(None))
            .group_by(Payment.provider_ref)
            .having(sa.func.count(Payment.id) > 1)
        )
        findings = []
        for ref, n in (await session.execute(stmt)).all():
            ids = (await session.execute(sa.select(Payment.id).where(Payment.provider_ref == ref))).scalars().all()
            findings.append(Finding(
                DUPLICATE_PROVIDER_REF, f"provider reference {ref} is shared by {n} payments",
                tuple(str(i) for i in ids),
            ))
        return findings

    async def check_amount_mismatches(self, session: AsyncSession, now: datetime) -> list[Finding]:
        # payments confirmed without a reported amount fall back to the requested amount
        settled = sa.func.coalesce(Payment.received_amount_minor, Payment.amount_minor)
        stmt = (
            sa.select(Payment.id, settled.label("settled_minor"), Invoice.id.label("invoice_id"),
                      Invoice.amount_minor_at_settlement)
            .join(Invoice, Invoice.id == Payment.invoice_id)
            .where(
                Payment.status.in_(_SETTLED),
                Invoice.amount_minor_at_settlement.is_not(None),
                sa.func.abs(settled - Invoice.amount_minor_at_settlement) > self.tolerance_minor,
            )
        )
        return [
            Finding(
                AMOUNT_MISMATCH,
                f"payment {r.id} settled {r.settled_minor} but invoice {r.invoice_id} expects {r.amount_minor_at_settlement}",
                (str(r.id), str(r.invoice_id)),
            )
            for r in (await session.execute(stmt)).all()
        ]

    async def check_stuck_refunds(self, session: AsyncSession, now: datetime) -> list[Finding]:
        stmt = sa.select(RefundRequest.id, RefundRequest.created_at).where(
            RefundRequest.state == RefundState.PROCESSING,
            RefundRequest.created_at < now - self.stuck_refund_age,
        )
        rows = (await session.execute(stmt)).all()
        if not rows:
            return []
        return [Finding(
            STUCK_REFUND,
            f"{len(rows)} refunds stuck in PROCESSING for more than {self.stuck_refund_age.days} days",
            tuple(f"refund {r.id} created {r.created_at:%Y-%m-%d %H:%M}" for r in rows),
        )]

    async def check_stuck_invoices(self, session: AsyncSession, now: datetime) -> list[Finding]:
        stmt = sa.select(Invoice.id, Invoice.created_at).where(
            Invoice.state == InvoiceState.CONFIRMED,
            Invoice.issued_at.is_(None),
            Invoice.created_at < now - self.stuck_invoice_age,
        )
        rows = (await session.execute(stmt)).all()
        if not rows:
            return []
        return [Finding(
            STUCK_INVOICE,
            f"{len(rows)} invoices confirmed but never issued",
            tuple(f"invoice {r.id} created {r.created_at:%Y-%m-%d %H:%M}" for r in rows),
        )]

    async def check_stalled_confirmations(self, session: AsyncSession, now: datetime) -> list[Finding]:
        stmt = sa.select(Payment.id).where(
            Payment.status == PaymentStatus.PENDING,
            Payment.created_at < now - self.max_confirmation_wait,
            sa.or_(
                sa.and_(Payment.provider == ProviderKind.MANUAL, Payment.expires_at > now),
                Payment.submitted_ref.is_not(None),
            ),
        )
        ids = (await session.execute(stmt)).scalars().all()
        if not ids:
            return []
        return [Finding(
            STALLED_CONFIRMATION,
            f"{len(ids)} payments pending confirmation beyond the maximum wait",
            tuple(str(i) for i in ids),
        )]

    async def check_stuck_sweeps(self, session: AsyncSession, now: datetime) -> list[Finding]:
        stmt = sa.select(Payment.id, Payment.destination_address).where(
            Payment.status == PaymentStatus.SWEEP_ELIGIBLE,
            Payment.sweep_started_at.is_not(None),
            Payment.sweep_started_at < now - self.stuck_sweep_age,
        )
        rows = (await session.execute(stmt)).all()
        if not rows:
            return []
        return [Finding(
            STUCK_SWEEP,
            f"{len(rows)} sweeps started but never recorded",
            tuple(f"payment {r.id} address {r.destination_address}" for r in rows),
        )]

    # ------------------------------------------------------------------
    # statistics
    # ------------------------------------------------------------------

    async def summary_stats(self, session: AsyncSession, now: datetime) -> dict:
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        invoices_today = (await session.execute(
            sa.select(sa.func.count(Invoice.id)).where(Invoice.created_at >= day_start)
        )).scalar_one()
        confirmed_today, settled_today = (await session.execute(
            sa.select(sa.func.count(Payment.id), sa.func.coalesce(sa.func.sum(Payment.amount_minor), 0))
            .where(Payment.confirmed_at >= day_start)
        )).one()
        revenue_today = (await session.execute(
            sa.select(sa.func.coalesce(sa.func.sum(Invoice.amount_minor_at_settlement), 0))
            .where(Invoice.issued_at >= day_start, Invoice.amount_minor_at_settlement.is_not(None))
        )).scalar_one()
        stats = {
            "invoices_created_today": int(invoices_today),
            "payments_confirmed_today": int(confirmed_today),
            "settled_minor_today": int(settled_today),
            "invoiced_revenue_minor_today": int(revenue_today),
        }
        logger.info("Reconciliation summary: %s invoices, %s payments, %s minor units settled today",
                    stats["invoices_created_today"], stats["payments_confirmed_today"], stats["settled_minor_today"])
        return stats
