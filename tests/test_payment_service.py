import asyncio
import uuid

import pytest
import sqlalchemy as sa

from app.core.errors import (
    AlreadyClaimed,
    AlreadySwept,
    DuplicateProviderReference,
    InvalidArgument,
    InvalidState,
    NotConfigured,
)
from app.db.models import AuditLog, WebhookQueue
from app.notifications.notifier import EVENT_CLAIMED, EVENT_CONFIRMED, WebhookNotifier
from app.payments.enums import PaymentPurpose, PaymentStatus, ProviderKind
from app.payments.service import PaymentService
from app.providers.base import VerificationStatus
from tests.conftest import HARDHAT_ADDRESSES, PLATFORM_WALLET, TEST_CHAIN


async def test_create_wallet_intent_points_at_platform_wallet(services):
    payment, intent = await services.payments.create_intent(
        user_id=uuid.uuid4(), purpose=PaymentPurpose.PREMIUM, amount_minor=999,
        provider=ProviderKind.WALLET, chain=TEST_CHAIN,
    )
    assert intent.destination == PLATFORM_WALLET
    assert intent.amount_minor == 999
    assert (await services.payments.get(payment.id)).status == PaymentStatus.PENDING


async def test_wallet_intent_requires_chain_and_provider(services):
    with pytest.raises(InvalidArgument):
        await services.payments.create_intent(
            user_id=None, purpose=PaymentPurpose.PREMIUM, amount_minor=100, provider=ProviderKind.WALLET,
        )
    with pytest.raises(NotConfigured):
        await services.payments.create_intent(
            user_id=None, purpose=PaymentPurpose.PREMIUM, amount_minor=100, provider=ProviderKind.WALLET,
            chain="polygon",
        )
    assert await services.repository.count_all() == 0


async def test_manual_intent_allocates_hd_address(services):
    payment, intent = await services.payments.create_manual_intent(
        purpose=PaymentPurpose.PLATFORM_SUPPORT, amount_minor=500, chain="ethereum",
        buyer_contact="buyer@example.com",
    )
    assert intent.derivation_index == 0
    assert intent.destination == HARDHAT_ADDRESSES[0]
    stored = await services.payments.get(payment.id)
    assert stored.provider == ProviderKind.MANUAL
    assert stored.user_id is None
    assert stored.destination_address == HARDHAT_ADDRESSES[0]

    with pytest.raises(InvalidArgument):
        await services.payments.create_manual_intent(
            purpose=PaymentPurpose.PLATFORM_SUPPORT, amount_minor=500, chain="ethereum", buyer_contact=" ",
        )


async def test_submit_verified_reference_confirms(services, make_wallet, fake_chain):
    payment = await make_wallet()
    fake_chain.pay("0xtx1", PLATFORM_WALLET, 500)

    result = await services.payments.submit(payment.id, "0xtx1")
    assert result.verification.status == VerificationStatus.VERIFIED
    assert result.payment.status == PaymentStatus.CONFIRMED
    assert result.payment.provider_ref == "0xtx1"

    # resubmitting the same reference is idempotent
    again = await services.payments.submit(payment.id, "0xtx1")
    assert again.verification.status == VerificationStatus.VERIFIED
    with pytest.raises(InvalidState):
        await services.payments.submit(payment.id, "0xother")


async def test_submit_reference_of_another_payment_is_rejected(services, make_wallet, fake_chain):
    first = await make_wallet()
    second = await make_wallet()
    fake_chain.pay("0xtx1", PLATFORM_WALLET, 500)
    await services.payments.submit(first.id, "0xtx1")

    with pytest.raises(DuplicateProviderReference):
        await services.payments.submit(second.id, "0xtx1")
    assert (await services.payments.get(second.id)).status == PaymentStatus.PENDING


async def test_submit_unseen_reference_is_recorded_for_polling(services, make_wallet):
    payment = await make_wallet()
    result = await services.payments.submit(payment.id, "0xnotyet")
    assert result.verification.status == VerificationStatus.PENDING
    stored = await services.payments.get(payment.id)
    assert stored.status == PaymentStatus.PENDING
    assert stored.submitted_ref == "0xnotyet"


async def test_submit_failed_and_mismatched_transactions(services, make_wallet, fake_chain):
    failed = await make_wallet()
    fake_chain.pay("0xreverted", PLATFORM_WALLET, 500, succeeded=False)
    result = await services.payments.submit(failed.id, "0xreverted")
    assert result.payment.status == PaymentStatus.FAILED

    short = await make_wallet()
    fake_chain.pay("0xshort", PLATFORM_WALLET, 400)
    result = await services.payments.submit(short.id, "0xshort")
    assert result.verification.status == VerificationStatus.REJECTED
    assert (await services.payments.get(short.id)).status == PaymentStatus.PENDING


async def test_submit_rejects_manual_payments(services, make_manual):
    payment = await make_manual()
    with pytest.raises(InvalidArgument):
        await services.payments.submit(payment.id, "tx")


async def test_concurrent_confirm_has_one_winner(services, make_wallet, session_factory):
    payment = await make_wallet()
    results = await asyncio.gather(
        services.payments.confirm(payment.id, "0xrace", actor="worker-a"),
        services.payments.confirm(payment.id, "0xrace", actor="worker-b"),
        return_exceptions=True,
    )
    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1 and isinstance(losers[0], InvalidState)

    async with session_factory() as session:
        confirms = (await session.execute(
            sa.select(sa.func.count()).select_from(AuditLog)
            .where(AuditLog.payment_id == payment.id, AuditLog.action == "payment_confirm")
        )).scalar_one()
    assert confirms == 1


async def test_claim_is_idempotent_once(services, make_manual):
    payment = await make_manual()
    await services.payments.confirm(payment.id, "0xfeed:0")
    user = uuid.uuid4()

    claimed = await services.payments.claim(payment.id, user)
    assert claimed.user_id == user
    assert claimed.status == PaymentStatus.CONFIRMED
    with pytest.raises(AlreadyClaimed):
        await services.payments.claim(payment.id, user)
    with pytest.raises(AlreadyClaimed):
        await services.payments.claim(payment.id, uuid.uuid4())


async def test_claim_requires_settled_anonymous_payment(services, make_manual, make_wallet):
    pending = await make_manual()
    with pytest.raises(InvalidState):
        await services.payments.claim(pending.id, uuid.uuid4())

    owned = await make_wallet()
    await services.payments.confirm(owned.id, "0xowned")
    with pytest.raises(InvalidState):
        await services.payments.claim(owned.id, uuid.uuid4())


async def test_admin_assign_records_admin_and_reason(services, make_manual, session_factory):
    payment = await make_manual()
    await services.payments.confirm(payment.id, "0xfeed:0")
    user = uuid.uuid4()

    with pytest.raises(InvalidArgument):
        await services.payments.admin_assign(payment.id, user, admin_id="ops-1", reason="  ")
    assigned = await services.payments.admin_assign(payment.id, user, admin_id="ops-1", reason="support ticket 42")
    assert assigned.user_id == user

    async with session_factory() as session:
        entry = (await session.execute(
            sa.select(AuditLog).where(AuditLog.payment_id == payment.id, AuditLog.action == "payment_admin_assign")
        )).scalar_one()
    assert entry.actor == "admin:ops-1"
    assert entry.details["reason"] == "support ticket 42"

    with pytest.raises(AlreadyClaimed):
        await services.payments.admin_assign(payment.id, uuid.uuid4(), admin_id="ops-2", reason="again")


async def test_sweep_requires_eligibility_first(services, make_manual):
    payment = await make_manual()
    with pytest.raises(InvalidState):
        await services.payments.mark_sweep_eligible(payment.id)
    await services.payments.confirm(payment.id, "0xfeed:0")
    with pytest.raises(InvalidState):
        await services.payments.sweep(payment.id, "0xtreasury")

    await services.payments.mark_sweep_eligible(payment.id)
    swept = await services.payments.sweep(payment.id, "0xtreasury")
    assert swept.status == PaymentStatus.SWEPT
    with pytest.raises(AlreadySwept):
        await services.payments.sweep(payment.id, "0xtreasury2")


async def test_admin_list_validates_paging(services, make_wallet):
    await make_wallet()
    items, total = await services.payments.list_for_admin(limit=10)
    assert total == 1 and len(items) == 1
    with pytest.raises(InvalidArgument):
        await services.payments.list_for_admin(limit=0)
    with pytest.raises(InvalidArgument):
        await services.payments.list_for_admin(limit=501)
    with pytest.raises(InvalidArgument):
        await services.payments.list_for_admin(offset=-1)


async def test_confirm_and_claim_enqueue_one_notification_each(services, make_manual, session_factory):
    notifier = WebhookNotifier(session_factory, "https://hooks.example.com/settlement")
    payments = PaymentService(services.repository, services.registry, notifier)
    payment = await make_manual()

    await payments.confirm(payment.id, "0xfeed:0")
    confirmed = await payments.get(payment.id)
    await notifier.notify(EVENT_CONFIRMED, confirmed)
    await payments.claim(payment.id, uuid.uuid4())

    async with session_factory() as session:
        rows = (await session.execute(sa.select(WebhookQueue).order_by(WebhookQueue.created_at))).scalars().all()
    assert sorted(r.event_type for r in rows) == sorted([EVENT_CONFIRMED, EVENT_CLAIMED])
    assert all(r.headers["webhook_url"] == "https://hooks.example.com/settlement" for r in rows)


async def test_notifier_failure_does_not_undo_confirm(services, make_wallet):
    class Broken:
        async def notify(self, event_type, payment):
            raise RuntimeError("webhook store down")

    payments = PaymentService(services.repository, services.registry, Broken())
    payment = await make_wallet()
    confirmed = await payments.confirm(payment.id, "0xok")
    assert confirmed.status == PaymentStatus.CONFIRMED
    assert (await payments.get(payment.id)).status == PaymentStatus.CONFIRMED
