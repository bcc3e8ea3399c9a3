from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from scanguard.models.regulatory import RegulatoryWebhook, WebhookDeliveryLog


class WebhookRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_for_agency(self, agency: str) -> RegulatoryWebhook | None:
        result = await self.session.execute(
            select(RegulatoryWebhook).where(RegulatoryWebhook.agency == agency)
        )
        return result.scalar_one_or_none()

    async def add(self, webhook: RegulatoryWebhook) -> RegulatoryWebhook:
        self.session.add(webhook)
        await self.session.flush()
        return webhook

    async def log_attempt(self, entry: WebhookDeliveryLog) -> WebhookDeliveryLog:
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def recent_logs(self, webhook_id: str, limit: int = 20) -> list[WebhookDeliveryLog]:
        result = await self.session.execute(
            select(WebhookDeliveryLog)
            .where(WebhookDeliveryLog.webhook_id == webhook_id)
            .order_by(WebhookDeliveryLog.created_at.desc(), WebhookDeliveryLog.attempt_number.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def logs_for_alert(self, alert_id: str) -> list[WebhookDeliveryLog]:
        result = await self.session.execute(
            select(WebhookDeliveryLog)
            .where(WebhookDeliveryLog.alert_id == alert_id)
            .order_by(WebhookDeliveryLog.attempt_number)
        )
        return list(result.scalars().all())

    async def outcome_counts(self, webhook_id: str) -> dict[str, int]:
        result = await self.session.execute(
            select(WebhookDeliveryLog.outcome, func.count(WebhookDeliveryLog.id))
            .where(WebhookDeliveryLog.webhook_id == webhook_id)
            .group_by(WebhookDeliveryLog.outcome)
        )
        return {outcome: int(count) for outcome, count in result.all()}
