from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from scanguard.database import get_db
from scanguard.schemas.verification import VerifyRequest, VerifyResponse
from scanguard.services import verification_service

router = APIRouter(tags=["verification"])


@router.post("/verify", response_model=VerifyResponse)
async def verify_code(req: VerifyRequest, db: AsyncSession = Depends(get_db)):
    """Verify a scanned code. Unknown codes answer 200 with state INVALID."""
    result = await verification_service.verify(
        db,
        verification_service.ScanEvent(
            code_value=req.code_value,
            manufacturer_id=req.manufacturer_id,
            actor_id=req.actor_id,
            latitude=req.latitude,
            longitude=req.longitude,
        ),
    )
    return VerifyResponse.model_validate(result)
