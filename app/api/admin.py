import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_current_admin
from app.api.schemas import AssignReq, PaymentPage, PaymentResp
from app.bootstrap import Services, get_services
from app.payments.enums import PaymentStatus

router = APIRouter(prefix="/admin/payments", tags=["admin"])


@router.get("", response_model=PaymentPage)
async def list_payments(status: Optional[PaymentStatus] = None, limit: int = Query(50), offset: int = Query(0),
                        admin_id: str = Depends(get_current_admin), services: Services = Depends(get_services)):
    items, total = await services.payments.list_for_admin(status=status, limit=limit, offset=offset)
    return PaymentPage(items=[PaymentResp.build(p) for p in items], total=total, limit=limit, offset=offset)


@router.get("/unclaimed", response_model=PaymentPage)
async def list_unclaimed(limit: int = Query(50, ge=1, le=500), offset: int = Query(0, ge=0),
                         admin_id: str = Depends(get_current_admin), services: Services = Depends(get_services)):
    items, total = await services.payments.list_unclaimed(limit=limit, offset=offset)
    return PaymentPage(items=[PaymentResp.build(p) for p in items], total=total, limit=limit, offset=offset)


@router.post("/{payment_id}/assign", response_model=PaymentResp)
async def assign_payment(payment_id: uuid.UUID, req: AssignReq, admin_id: str = Depends(get_current_admin),
                         services: Services = Depends(get_services)):
    payment = await services.payments.admin_assign(payment_id, req.user_id, admin_id=admin_id, reason=req.reason)
    return PaymentResp.build(payment)
