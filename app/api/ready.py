import logging

import sqlalchemy as sa
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from app.bootstrap import Services, get_services

logger = logging.getLogger("settlement.api.ready")
router = APIRouter()


async def check_db(services: Services):
    try:
        async with services.session_factory() as session:
            await session.execute(sa.text("SELECT 1"))
        return True, None
    except Exception as e:
        logger.warning("Readiness database check failed: %s", e)
        return False, str(e)


@router.get("/ready")
async def ready(services: Services = Depends(get_services)):
    """
    Readiness verifies database connectivity; 503 when it is unreachable.
    """
    db_ok, db_err = await check_db(services)
    body = {
        "status": "ok" if db_ok else "degraded",
        "dependencies": {
            "database": {"ok": db_ok, "error": db_err},
            "hd_wallet": {"ok": services.allocator.is_configured, "error": None if services.allocator.is_configured else "HD_MNEMONIC not configured"},
        },
    }
    status_code = status.HTTP_200_OK if db_ok else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(body, status_code=status_code)
