from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from scanguard.database import get_db
from scanguard.schemas.code import (
    BatchCreateRequest,
    BatchCreateResponse,
    BatchResponse,
    CodeLookupResponse,
    CodeResponse,
)
from scanguard.services import code_registry_service

router = APIRouter(tags=["codes"])


@router.post("/batches", response_model=BatchCreateResponse, status_code=201)
async def create_batch(req: BatchCreateRequest, db: AsyncSession = Depends(get_db)):
    batch, codes = await code_registry_service.create_batch_codes(
        db,
        manufacturer_id=req.manufacturer_id,
        product_id=req.product_id,
        batch_number=req.batch_number,
        expiration_date=req.expiration_date,
        quantity=req.quantity,
        production_date=req.production_date,
    )
    return BatchCreateResponse(
        batch=BatchResponse.model_validate(batch),
        codes=[CodeResponse.model_validate(c) for c in codes],
    )


@router.get("/codes/{code_value}", response_model=CodeLookupResponse)
async def get_code(code_value: str, db: AsyncSession = Depends(get_db)):
    ctx = await code_registry_service.lookup(db, code_value)
    return CodeLookupResponse(
        code=CodeResponse.model_validate(ctx.code),
        batch=BatchResponse.model_validate(ctx.batch) if ctx.batch else None,
        product_id=ctx.product.id if ctx.product else None,
        product_name=ctx.product.name if ctx.product else None,
        product_category=ctx.product.category if ctx.product else None,
        manufacturer_id=ctx.manufacturer.id if ctx.manufacturer else None,
        manufacturer_name=ctx.manufacturer.name if ctx.manufacturer else None,
    )
