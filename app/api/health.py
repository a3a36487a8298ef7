from datetime import datetime, timezone

from fastapi import APIRouter

router = APIRouter()


@router.get("/health")
async def health():
    """Always 200, no dependencies."""
    return {
        "status": "ok",
        "service": "settlement-core",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "1.0.0",
    }
