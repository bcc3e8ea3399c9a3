"""Weekly external-reputation recheck of manufacturer websites.

Score starts neutral at 50 and moves with what an HTTPS probe of the
manufacturer's site shows. Higher means more suspicious.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from urllib.parse import urlparse

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from scanguard.config import settings
from scanguard.core.clock import utcnow
from scanguard.core.exceptions import NotFoundError
from scanguard.models.manufacturer import Manufacturer
from scanguard.models.risk import WebsiteCheck

logger = logging.getLogger(__name__)

BASE_SCORE = 50


def extract_domain(website: str) -> str | None:
    website = (website or "").strip()
    if not website:
        return None
    if not website.startswith(("http://", "https://")):
        website = f"https://{website}"
    return urlparse(website).hostname


def classify(score: int) -> str:
    if score < 30:
        return "LEGITIMATE"
    if score < 60:
        return "MODERATE"
    return "SUSPICIOUS"


async def probe_site(domain: str, company_name: str) -> dict:
    """GET https://<domain>. Network failure is a finding here, not an error."""
    try:
        async with httpx.AsyncClient(
            timeout=settings.reputation_check_timeout_seconds, follow_redirects=True
        ) as client:
            response = await client.get(
                f"https://{domain}", headers={"User-Agent": "ScanGuard-Reputation/1.0"}
            )
    except httpx.HTTPError as exc:
        return {"ssl": False, "reachable": False, "status_code": None, "name_occurrences": None,
                "error": str(exc)[:300]}

    text = (response.text or "").lower()
    name = (company_name or "").strip().lower()
    occurrences = text.count(name) if name else None
    return {
        "ssl": True,
        "reachable": response.status_code < 500,
        "status_code": response.status_code,
        "name_occurrences": occurrences,
        "error": None,
    }


def score_probe(probe: dict) -> int:
    score = BASE_SCORE
    if probe["ssl"]:
        score -= 10
    else:
        score += 25
    occurrences = probe.get("name_occurrences")
    if occurrences == 0:
        score += 15
    elif occurrences is not None and occurrences >= 2:
        score -= 5
    return max(0, min(100, score))


async def check_website(
    db: AsyncSession, manufacturer_id: str, now: datetime | None = None
) -> WebsiteCheck:
    now = now or utcnow()
    manufacturer = await db.get(Manufacturer, manufacturer_id)
    if manufacturer is None:
        raise NotFoundError("Manufacturer", manufacturer_id)

    domain = extract_domain(manufacturer.website)
    if domain is None:
        check = WebsiteCheck(
            manufacturer_id=manufacturer.id,
            domain=None,
            risk_score=BASE_SCORE,
            verdict="INCOMPLETE",
            details_json=json.dumps({"reason": "No website provided"}),
            checked_at=now,
        )
    else:
        probe = await probe_site(domain, manufacturer.name)
        score = score_probe(probe)
        check = WebsiteCheck(
            manufacturer_id=manufacturer.id,
            domain=domain,
            risk_score=score,
            verdict=classify(score),
            has_ssl=probe["ssl"],
            reachable=probe["reachable"],
            details_json=json.dumps(probe),
            checked_at=now,
        )
        if check.verdict == "LEGITIMATE":
            manufacturer.website_verified = True
        elif check.verdict == "SUSPICIOUS":
            manufacturer.website_verified = False

    db.add(check)
    await db.commit()
    await db.refresh(check)
    logger.info(
        "Website check for manufacturer %s (%s): %s, risk %d",
        manufacturer_id, domain or "-", check.verdict, check.risk_score,
    )
    return check


async def recheck_all_websites(db: AsyncSession, now: datetime | None = None) -> dict:
    result = await db.execute(
        select(Manufacturer.id).where(
            Manufacturer.website.is_not(None), Manufacturer.website != ""
        )
    )
    manufacturer_ids = list(result.scalars().all())

    verdicts: dict[str, int] = {}
    failed = 0
    for manufacturer_id in manufacturer_ids:
        try:
            check = await check_website(db, manufacturer_id, now=now)
            verdicts[check.verdict] = verdicts.get(check.verdict, 0) + 1
        except Exception:
            failed += 1
            await db.rollback()
            logger.exception("Website recheck failed for manufacturer %s", manufacturer_id)

    logger.info("Website recheck: %d checked, %d failed", sum(verdicts.values()), failed)
    return {"checked": sum(verdicts.values()), "failed": failed, "verdicts": verdicts}
