import json

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from scanguard.database import get_db
from scanguard.schemas.risk import (
    ProductRiskResponse,
    RiskAlertListResponse,
    RiskAlertResponse,
    TrustScoreResponse,
    TrustTrendResponse,
)
from scanguard.services import risk_service, trust_score_service

router = APIRouter(tags=["risk"])


@router.get("/manufacturers/{manufacturer_id}/risk-alerts", response_model=RiskAlertListResponse)
async def list_risk_alerts(
    manufacturer_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    alerts = await risk_service.list_alerts(db, manufacturer_id, limit=limit)
    return RiskAlertListResponse(
        alerts=[RiskAlertResponse.model_validate(a) for a in alerts],
        count=len(alerts),
    )


@router.post("/manufacturers/{manufacturer_id}/trust-score", response_model=TrustScoreResponse)
async def recompute_trust_score(manufacturer_id: str, db: AsyncSession = Depends(get_db)):
    record = await trust_score_service.calculate_trust_score(db, manufacturer_id)
    return TrustScoreResponse(
        manufacturer_id=record.manufacturer_id,
        score=record.score,
        components=json.loads(record.components_json),
        breakdown=json.loads(record.breakdown_json),
        recorded_at=record.recorded_at,
    )


@router.get("/manufacturers/{manufacturer_id}/trust-score/trend", response_model=TrustTrendResponse)
async def trust_score_trend(
    manufacturer_id: str,
    days: int = Query(90, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
):
    trend = await trust_score_service.get_trust_score_trend(db, manufacturer_id, days=days)
    return TrustTrendResponse(manufacturer_id=manufacturer_id, days=days, **trend)


@router.get("/products/{product_id}/risk", response_model=ProductRiskResponse)
async def product_risk(product_id: str, db: AsyncSession = Depends(get_db)):
    report = await risk_service.get_product_risk(db, product_id)
    return ProductRiskResponse(
        product_id=report.product_id,
        manufacturer_id=report.manufacturer_id,
        risk_score=report.score,
        risk_level=report.level,
        total_verifications=report.counts.total,
        suspicious=report.counts.suspicious,
        invalid=report.counts.invalid,
        already_used=report.counts.already_used,
        alert=RiskAlertResponse.model_validate(report.alert) if report.alert else None,
    )
