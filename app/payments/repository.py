"""
PaymentRepository: the only read/write gateway to the payments table.

Each call runs in its own short transaction. Transitions are persisted with a
conditional UPDATE keyed on the expected source status, so concurrent writers
produce one winner and one no-op (``apply_transition`` returns False). The
partial unique index on provider_ref surfaces as DuplicateProviderReference.
The repository never calls out to a network.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import DuplicateProviderReference, NotFound
from app.db.models import AuditLog, Payment
from app.payments.enums import SETTLED_STATUSES, PaymentStatus, ProviderKind
from app.payments.state_machine import Transition, values_for

logger = logging.getLogger("settlement.payments.repository")


class PaymentRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    async def insert(self, payment: Payment, *, actor: str = "service") -> Payment:
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    session.add(payment)
                    await session.flush()
                    session.add(AuditLog(
                        actor=actor,
                        action="payment_created",
                        payment_id=payment.id,
                        details={
                            "provider": payment.provider.value,
                            "purpose": payment.purpose.value,
                            "amount_minor": payment.amount_minor,
                            "chain": payment.chain,
                            "derivation_index": payment.derivation_index,
                        },
                    ))
            except IntegrityError as exc:
                if payment.provider_ref:
                    raise DuplicateProviderReference(
                        "provider reference already recorded", provider_ref=payment.provider_ref
                    ) from exc
                raise
        logger.debug("Inserted payment id=%s provider=%s", payment.id, payment.provider.value)
        return payment

    async def apply_transition(self, transition: Transition, *, actor: str,
                               details: Optional[dict] = None) -> bool:
        """Persist ``transition`` if the row still matches its source state and guards."""
        stmt = sa.update(Payment).where(
            Payment.id == transition.payment_id,
            Payment.status.in_(sorted(transition.source, key=lambda s: s.value)),
        )
        for column_name, expected in transition.guards.items():
            column = getattr(Payment, column_name)
            stmt = stmt.where(column.is_(None) if expected is None else column == expected)
        stmt = stmt.values(**values_for(transition)).execution_options(synchronize_session=False)

        audit_details = {"changes": _jsonable(transition.changes)}
        if transition.target is not None:
            audit_details["target"] = transition.target.value
        if details:
            audit_details.update(details)

        async with self.session_factory() as session:
            try:
                async with session.begin():
                    result = await session.execute(stmt)
                    if result.rowcount != 1:
                        return False
                    session.add(AuditLog(
                        actor=actor,
                        action=f"payment_{transition.name}",
                        payment_id=transition.payment_id,
                        details=audit_details,
                    ))
            except IntegrityError as exc:
                provider_ref = transition.changes.get("provider_ref")
                if provider_ref:
                    raise DuplicateProviderReference(
                        "provider reference already recorded on another payment",
                        payment_id=str(transition.payment_id),
                        provider_ref=provider_ref,
                    ) from exc
                raise
        return True

    async def record_submitted_ref(self, payment_id: uuid.UUID, reference: str) -> bool:
        stmt = (
            sa.update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
            .values(submitted_ref=reference)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
                return result.rowcount == 1

    async def mark_stalled(self, payment_id: uuid.UUID, now: datetime, *, actor: str,
                           details: Optional[dict] = None) -> bool:
        """Set ``stalled_at`` once and audit it; False when the payment was already flagged or left pending."""
        stmt = (
            sa.update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.status == PaymentStatus.PENDING,
                Payment.stalled_at.is_(None),
            )
            .values(stalled_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
                if result.rowcount != 1:
                    return False
                session.add(AuditLog(actor=actor, action="confirmation_stalled", payment_id=payment_id,
                                     details=_jsonable(details or {})))
        return True

    async def reserve_sweep(self, payment_id: uuid.UUID, now: datetime) -> bool:
        """Mark a sweep as in flight; only one sweeper can hold the reservation."""
        stmt = (
            sa.update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.status == PaymentStatus.SWEEP_ELIGIBLE,
                Payment.treasury_tx_hash.is_(None),
                Payment.sweep_started_at.is_(None),
            )
            .values(sweep_started_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
                return result.rowcount == 1

    async def release_sweep(self, payment_id: uuid.UUID) -> bool:
        stmt = (
            sa.update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.status == PaymentStatus.SWEEP_ELIGIBLE,
                Payment.treasury_tx_hash.is_(None),
            )
            .values(sweep_started_at=None)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
                return result.rowcount == 1

    async def audit(self, action: str, *, actor: str, payment_id: Optional[uuid.UUID] = None,
                    details: Optional[dict] = None) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                session.add(AuditLog(actor=actor, action=action, payment_id=payment_id,
                                     details=_jsonable(details or {})))

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def get(self, payment_id: uuid.UUID) -> Optional[Payment]:
        async with self.session_factory() as session:
            return await session.get(Payment, payment_id)

    async def require(self, payment_id: uuid.UUID) -> Payment:
        payment = await self.get(payment_id)
        if payment is None:
            raise NotFound("payment not found", payment_id=str(payment_id))
        return payment

    async def get_by_provider_ref(self, provider_ref: str) -> Optional[Payment]:
        stmt = sa.select(Payment).where(Payment.provider_ref == provider_ref)
        return await self._one_or_none(stmt)

    async def get_by_ids(self, payment_ids: Sequence[uuid.UUID]) -> list[Payment]:
        if not payment_ids:
            return []
        stmt = sa.select(Payment).where(Payment.id.in_(list(payment_ids)))
        return await self._all(stmt)

    async def list_by_user(self, user_id: uuid.UUID) -> list[Payment]:
        stmt = (
            sa.select(Payment)
            .where(Payment.user_id == user_id)
            .order_by(Payment.created_at.desc())
        )
        return await self._all(stmt)

    async def list_awaiting_confirmation(self, *, now: datetime, created_before: datetime,
                                         limit: int = 100) -> list[Payment]:
        """Pending payments a poller can check: live manual addresses or submitted references."""
        stmt = (
            sa.select(Payment)
            .where(
                Payment.status == PaymentStatus.PENDING,
                Payment.created_at <= created_before,
                sa.or_(
                    sa.and_(Payment.provider == ProviderKind.MANUAL, Payment.expires_at > now),
                    Payment.submitted_ref.is_not(None),
                ),
            )
            .order_by(Payment.created_at.asc())
            .limit(limit)
        )
        return await self._all(stmt)

    async def list_expired_manual(self, *, now: datetime, limit: int = 200) -> list[Payment]:
        stmt = (
            sa.select(Payment)
            .where(
                Payment.status == PaymentStatus.PENDING,
                Payment.provider == ProviderKind.MANUAL,
                Payment.expires_at <= now,
            )
            .order_by(Payment.expires_at.asc())
            .limit(limit)
        )
        return await self._all(stmt)

    async def list_ready_for_sweep_eligibility(self, *, confirmed_before: datetime,
                                               limit: int = 100) -> list[Payment]:
        stmt = (
            sa.select(Payment)
            .where(
                Payment.status == PaymentStatus.CONFIRMED,
                Payment.confirmed_at.is_not(None),
                Payment.confirmed_at <= confirmed_before,
            )
            .order_by(Payment.confirmed_at.asc())
            .limit(limit)
        )
        return await self._all(stmt)

    async def list_sweep_eligible(self, *, limit: int = 100,
                                  provider: ProviderKind = ProviderKind.MANUAL) -> list[Payment]:
        stmt = (
            sa.select(Payment)
            .where(
                Payment.status == PaymentStatus.SWEEP_ELIGIBLE,
                Payment.provider == provider,
                Payment.treasury_tx_hash.is_(None),
                Payment.sweep_started_at.is_(None),
            )
            .order_by(Payment.sweep_eligible_at.asc())
            .limit(limit)
        )
        return await self._all(stmt)

    def _unclaimed_filter(self):
        return sa.and_(
            Payment.status.in_(sorted(SETTLED_STATUSES, key=lambda s: s.value)),
            Payment.user_id.is_(None),
            Payment.claimed_at.is_(None),
        )

    async def list_unclaimed_confirmed(self, *, limit: int = 100, offset: int = 0) -> list[Payment]:
        stmt = (
            sa.select(Payment)
            .where(self._unclaimed_filter())
            .order_by(Payment.confirmed_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return await self._all(stmt)

    async def count_unclaimed_confirmed(self) -> int:
        stmt = sa.select(sa.func.count()).select_from(Payment).where(self._unclaimed_filter())
        return await self._scalar(stmt)

    async def list_for_admin(self, *, status: Optional[PaymentStatus] = None, limit: int = 100,
                             offset: int = 0) -> list[Payment]:
        stmt = sa.select(Payment).order_by(Payment.created_at.desc()).limit(limit).offset(offset)
        if status is not None:
            stmt = stmt.where(Payment.status == status)
        return await self._all(stmt)

    async def count_all(self, *, status: Optional[PaymentStatus] = None) -> int:
        stmt = sa.select(sa.func.count()).select_from(Payment)
        if status is not None:
            stmt = stmt.where(Payment.status == status)
        return await self._scalar(stmt)

    async def _all(self, stmt) -> list[Payment]:
        async with self.session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def _one_or_none(self, stmt) -> Optional[Payment]:
        async with self.session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def _scalar(self, stmt) -> int:
        async with self.session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())


def _jsonable(value):
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (uuid.UUID, datetime)):
        return str(value)
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    return value
