import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, status

from app.api.deps import get_current_user, get_optional_user
from app.api.schemas import (
    IntentCreateReq,
    IntentResp,
    ManualIntentCreateReq,
    PaymentResp,
    SubmitResp,
    VerificationResp,
    VerifyReq,
)
from app.bootstrap import Services, get_services

logger = logging.getLogger("settlement.api.payments")
router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/intents", response_model=IntentResp, status_code=status.HTTP_201_CREATED)
async def create_intent(req: IntentCreateReq, user_id: Optional[uuid.UUID] = Depends(get_optional_user),
                        services: Services = Depends(get_services)):
    payment, intent = await services.payments.create_intent(
        user_id=user_id,
        purpose=req.purpose,
        amount_minor=req.amount_minor,
        provider=req.provider,
        chain=req.chain,
        subject_id=req.subject_id,
        support_amount_minor=req.support_amount_minor,
        invoice_id=req.invoice_id,
    )
    return IntentResp.build(payment, intent)


@router.post("/manual", response_model=IntentResp, status_code=status.HTTP_201_CREATED)
async def create_manual_intent(req: ManualIntentCreateReq, services: Services = Depends(get_services)):
    """Anonymous payment to a one-off deposit address; claimable after confirmation."""
    payment, intent = await services.payments.create_manual_intent(
        purpose=req.purpose,
        amount_minor=req.amount_minor,
        chain=req.chain,
        buyer_contact=req.buyer_contact,
        subject_id=req.subject_id,
        support_amount_minor=req.support_amount_minor,
    )
    return IntentResp.build(payment, intent)


@router.post("/{payment_id}/verify", response_model=SubmitResp)
async def submit_reference(payment_id: uuid.UUID, req: VerifyReq, services: Services = Depends(get_services)):
    outcome = await services.payments.submit(payment_id, req.provider_ref)
    return SubmitResp(
        payment=PaymentResp.build(outcome.payment),
        verification=VerificationResp.build(outcome.verification),
    )


@router.post("/{payment_id}/claim", response_model=PaymentResp)
async def claim_payment(payment_id: uuid.UUID, user_id: uuid.UUID = Depends(get_current_user),
                        services: Services = Depends(get_services)):
    return PaymentResp.build(await services.payments.claim(payment_id, user_id))


@router.get("/{payment_id}", response_model=PaymentResp)
async def get_payment(payment_id: uuid.UUID, services: Services = Depends(get_services)):
    return PaymentResp.build(await services.payments.get(payment_id))
