import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from scanguard.config import settings
from scanguard.core.async_tasks import pending_task_count
from scanguard.database import get_db
from scanguard.models.code import Code
from scanguard.models.risk import RiskAlert
from scanguard.models.verification import VerificationLog
from scanguard.schemas.common import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

_VERSION = "0.1.0"


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    codes = (await db.execute(select(func.count(Code.id)))).scalar() or 0
    verifications = (await db.execute(select(func.count(VerificationLog.id)))).scalar() or 0
    pending = (
        await db.execute(select(func.count(RiskAlert.id)).where(RiskAlert.status == "pending"))
    ).scalar() or 0

    return HealthResponse(
        status="healthy",
        version=_VERSION,
        environment=settings.environment,
        codes_count=codes,
        verifications_count=verifications,
        pending_alerts=pending,
        background_tasks=pending_task_count(),
    )


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Readiness probe: verifies DB connectivity."""
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "ready", "database": "connected"}
    except Exception:
        logger.exception("Readiness check failed, database unreachable")
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "database": "unreachable"},
        )
