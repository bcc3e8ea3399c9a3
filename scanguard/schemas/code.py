from datetime import date, datetime

from pydantic import BaseModel, Field


class BatchCreateRequest(BaseModel):
    manufacturer_id: str
    product_id: str
    batch_number: str = Field(..., min_length=1, max_length=80)
    expiration_date: date | None = None
    production_date: date | None = None
    # Range is enforced by the registry so the error carries its configured cap.
    quantity: int


class CodeResponse(BaseModel):
    id: str
    value: str
    batch_id: str | None = None
    manufacturer_id: str
    used: bool
    used_at: datetime | None = None
    first_verified_at: datetime | None = None
    scan_count: int
    qr_image_ref: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class BatchResponse(BaseModel):
    id: str
    batch_number: str
    manufacturer_id: str
    product_id: str | None = None
    production_date: date | None = None
    expiration_date: date | None = None
    quantity: int
    created_at: datetime

    model_config = {"from_attributes": True}


class BatchCreateResponse(BaseModel):
    batch: BatchResponse
    codes: list[CodeResponse]


class CodeLookupResponse(BaseModel):
    code: CodeResponse
    batch: BatchResponse | None = None
    product_id: str | None = None
    product_name: str | None = None
    product_category: str | None = None
    manufacturer_id: str | None = None
    manufacturer_name: str | None = None
