"""Consumer-facing advice derived from a verification outcome."""

from enum import Enum


class TrustDecision(str, Enum):
    SAFE_TO_USE = "SAFE_TO_USE"
    VERIFY_WITH_PHARMACIST = "VERIFY_WITH_PHARMACIST"
    DO_NOT_USE = "DO_NOT_USE"
    REPORT_TO_REGULATOR = "REPORT_TO_REGULATOR"


def decide(state: str, risk_score: int, *, suspicious: bool = False, expired: bool = False) -> TrustDecision:
    if suspicious:
        return TrustDecision.REPORT_TO_REGULATOR
    if state in ("CODE_ALREADY_USED", "INVALID") or expired:
        return TrustDecision.DO_NOT_USE
    if state == "UNREGISTERED_PRODUCT":
        return TrustDecision.DO_NOT_USE if risk_score >= 60 else TrustDecision.VERIFY_WITH_PHARMACIST
    if state == "GENUINE":
        if risk_score < 30:
            return TrustDecision.SAFE_TO_USE
        if risk_score < 60:
            return TrustDecision.VERIFY_WITH_PHARMACIST
        return TrustDecision.DO_NOT_USE
    return TrustDecision.VERIFY_WITH_PHARMACIST
