"""Thin admin surface over webhook registration and agency rate limits."""

from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from scanguard.database import get_db
from scanguard.schemas.regulatory import (
    DeliveryLogResponse,
    RateLimitStatusResponse,
    RateLimitUpdateRequest,
    WebhookRegisteredResponse,
    WebhookStatusResponse,
    WebhookTestResponse,
    WebhookUpsertRequest,
)
from scanguard.services import agency_rate_limit_service, escalation_service

router = APIRouter(prefix="/regulatory", tags=["regulatory"])


@router.put("/webhooks/{agency}", response_model=WebhookRegisteredResponse)
async def upsert_webhook(
    agency: str, req: WebhookUpsertRequest, db: AsyncSession = Depends(get_db)
):
    webhook, secret = await escalation_service.register_webhook(
        db,
        agency,
        req.url,
        retry_attempts=req.retry_attempts,
        retry_interval_seconds=req.retry_interval_seconds,
        timeout_seconds=req.timeout_seconds,
        custom_headers=req.custom_headers,
        is_active=req.is_active,
    )
    return WebhookRegisteredResponse(
        id=webhook.id,
        agency=webhook.agency,
        url=webhook.url,
        is_active=webhook.is_active,
        retry_attempts=webhook.retry_attempts,
        retry_interval_seconds=webhook.retry_interval_seconds,
        timeout_seconds=webhook.timeout_seconds,
        secret=secret,
    )


@router.get("/webhooks/{agency}", response_model=WebhookStatusResponse)
async def webhook_status(agency: str, db: AsyncSession = Depends(get_db)):
    status = await escalation_service.get_webhook_status(db, agency)
    status["recent_deliveries"] = [
        DeliveryLogResponse.model_validate(log) for log in status["recent_deliveries"]
    ]
    return WebhookStatusResponse(**status)


@router.post("/webhooks/{agency}/test", response_model=WebhookTestResponse)
async def send_webhook_test(agency: str, db: AsyncSession = Depends(get_db)):
    result = await escalation_service.send_test_event(db, agency)
    return WebhookTestResponse(
        agency=result.agency,
        status=result.status,
        response_code=result.response_code,
        message=result.message,
    )


@router.get("/rate-limits/{agency}", response_model=RateLimitStatusResponse)
async def rate_limit_status(agency: str, db: AsyncSession = Depends(get_db)):
    decision = await agency_rate_limit_service.get_status(db, agency.strip().upper())
    return RateLimitStatusResponse(**asdict(decision))


@router.put("/rate-limits/{agency}", response_model=RateLimitStatusResponse)
async def update_rate_limits(
    agency: str, req: RateLimitUpdateRequest, db: AsyncSession = Depends(get_db)
):
    decision = await agency_rate_limit_service.update_limits(
        db, agency.strip().upper(), req.alerts_per_hour, req.alerts_per_day
    )
    return RateLimitStatusResponse(**asdict(decision))
