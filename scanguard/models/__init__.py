from scanguard.models.manufacturer import Manufacturer, Payment, Product
from scanguard.models.code import Batch, Code
from scanguard.models.verification import VerificationLog
from scanguard.models.risk import RiskAlert, TrustScoreRecord, WebsiteCheck
from scanguard.models.regulatory import (
    AgencyRateLimit,
    RegulatoryWebhook,
    WebhookDeliveryLog,
)

__all__ = [
    "Manufacturer",
    "Product",
    "Payment",
    "Batch",
    "Code",
    "VerificationLog",
    "RiskAlert",
    "TrustScoreRecord",
    "WebsiteCheck",
    "AgencyRateLimit",
    "RegulatoryWebhook",
    "WebhookDeliveryLog",
]
