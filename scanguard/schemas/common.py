from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    codes_count: int
    verifications_count: int
    pending_alerts: int
    background_tasks: int
