import uuid
from datetime import timedelta

import pytest

from app.core.errors import AlreadyClaimed, AlreadySwept, InvalidArgument, InvalidState
from app.db.models import utcnow
from app.payments import state_machine as sm
from app.payments.enums import PaymentPurpose, PaymentStatus, ProviderKind


def _pending(**overrides):
    fields = dict(user_id=None, purpose=PaymentPurpose.PURCHASE, amount_minor=500,
                  provider=ProviderKind.WALLET, chain="solana", now=utcnow())
    fields.update(overrides)
    return sm.new_pending(**fields)


def _confirmed(**overrides):
    payment = _pending(**overrides)
    return sm.apply(payment, sm.confirm(payment, "tx-1", utcnow()))


def test_new_pending_validates_inputs():
    with pytest.raises(InvalidArgument):
        _pending(amount_minor=0)
    with pytest.raises(InvalidArgument):
        _pending(amount_minor=-5)
    with pytest.raises(InvalidArgument):
        _pending(amount_minor=True)
    with pytest.raises(InvalidArgument):
        _pending(purpose=PaymentPurpose.SUBJECT_SUPPORT)
    with pytest.raises(InvalidArgument):
        _pending(support_amount_minor=-1)
    with pytest.raises(InvalidArgument):
        _pending(provider=ProviderKind.MANUAL)

    payment = _pending(purpose=PaymentPurpose.SUBJECT_SUPPORT, subject_id=uuid.uuid4(), support_amount_minor=100)
    assert payment.status == PaymentStatus.PENDING
    assert payment.provider_ref is None


def test_new_pending_manual_requires_address_contact_and_future_expiry():
    now = utcnow()
    base = dict(purpose=PaymentPurpose.PLATFORM_SUPPORT, amount_minor=500, chain="solana",
                destination_address="addr#7", derivation_index=7, expires_at=now + timedelta(minutes=15),
                buyer_contact="buyer@example.com", now=now)
    payment = sm.new_pending_manual(**base)
    assert payment.provider == ProviderKind.MANUAL
    assert payment.user_id is None
    assert payment.derivation_index == 7

    for override in ({"destination_address": " "}, {"buyer_contact": ""}, {"derivation_index": -1},
                     {"expires_at": now}):
        with pytest.raises(InvalidArgument):
            sm.new_pending_manual(**{**base, **override})


def test_confirm_only_from_pending():
    payment = _pending()
    transition = sm.confirm(payment, " tx-1 ", utcnow())
    assert transition.source == frozenset({PaymentStatus.PENDING})
    assert transition.target == PaymentStatus.CONFIRMED
    assert transition.changes["provider_ref"] == "tx-1"

    sm.apply(payment, transition)
    assert payment.status == PaymentStatus.CONFIRMED
    with pytest.raises(InvalidState):
        sm.confirm(payment, "tx-2", utcnow())
    with pytest.raises(InvalidState):
        sm.fail(payment)
    with pytest.raises(InvalidState):
        sm.expire(payment)


def test_confirm_requires_reference():
    with pytest.raises(InvalidArgument):
        sm.confirm(_pending(), "", utcnow())


def test_confirm_records_received_amount():
    payment = _pending()
    transition = sm.confirm(payment, "tx-1", utcnow(), received_amount_minor=650)
    assert transition.changes["received_amount_minor"] == 650
    assert "received_amount_minor" not in sm.confirm(payment, "tx-1", utcnow()).changes
    with pytest.raises(InvalidArgument):
        sm.confirm(payment, "tx-1", utcnow(), received_amount_minor=-1)


def test_terminal_states_have_no_exits():
    failed = _pending()
    sm.apply(failed, sm.fail(failed))
    expired = _pending()
    sm.apply(expired, sm.expire(expired))
    for payment in (failed, expired):
        with pytest.raises(InvalidState):
            sm.confirm(payment, "tx", utcnow())
        with pytest.raises(InvalidState):
            sm.mark_sweep_eligible(payment, utcnow())


def test_sweep_ordering():
    payment = _pending()
    # not before confirm
    with pytest.raises(InvalidState):
        sm.mark_sweep_eligible(payment, utcnow())
    sm.apply(payment, sm.confirm(payment, "tx-1", utcnow()))
    # not before sweep-eligible
    with pytest.raises(InvalidState):
        sm.sweep(payment, "0xtreasury", utcnow())

    sm.apply(payment, sm.mark_sweep_eligible(payment, utcnow()))
    assert payment.status == PaymentStatus.SWEEP_ELIGIBLE
    with pytest.raises(InvalidArgument):
        sm.sweep(payment, "", utcnow())
    sm.apply(payment, sm.sweep(payment, "0xtreasury", utcnow()))
    assert payment.status == PaymentStatus.SWEPT
    with pytest.raises(AlreadySwept):
        sm.sweep(payment, "0xother", utcnow())


def test_claim_leaves_status_and_is_one_way():
    payment = _confirmed()
    user = uuid.uuid4()
    transition = sm.claim(payment, user, utcnow())
    assert transition.target is None
    assert transition.guards == {"user_id": None, "claimed_at": None}

    sm.apply(payment, transition)
    assert payment.status == PaymentStatus.CONFIRMED
    assert payment.user_id == user
    with pytest.raises(AlreadyClaimed):
        sm.claim(payment, user, utcnow())
    with pytest.raises(AlreadyClaimed):
        sm.claim(payment, uuid.uuid4(), utcnow())


def test_claim_rejects_unsettled_or_owned_payments():
    with pytest.raises(InvalidState):
        sm.claim(_pending(), uuid.uuid4(), utcnow())
    with pytest.raises(InvalidState):
        sm.claim(_confirmed(user_id=uuid.uuid4()), uuid.uuid4(), utcnow())
    with pytest.raises(InvalidArgument):
        sm.claim(_confirmed(), None, utcnow())


def test_values_for_omits_status_when_target_is_none():
    payment = _confirmed()
    values = sm.values_for(sm.claim(payment, uuid.uuid4(), utcnow()))
    assert "status" not in values
    assert set(values) == {"user_id", "claimed_at"}
