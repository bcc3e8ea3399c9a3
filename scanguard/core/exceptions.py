"""Domain error taxonomy.

Only ``ValidationError`` and ``NotFoundError`` ever reach an HTTP caller; the
app factory maps them to 422 and 404. The remaining errors are raised and
handled inside the services that own them.
"""


class ScanGuardError(Exception):
    """Base class for all domain errors."""


class ValidationError(ScanGuardError):
    """Bad input. Rejected immediately, never retried."""


class NotFoundError(ScanGuardError):
    def __init__(self, entity: str, key: str):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} {key} not found")


class DuplicateCodeError(ScanGuardError):
    """The generator produced a value that already exists in the registry."""

    def __init__(self, code_value: str):
        self.code_value = code_value
        super().__init__(f"Code value {code_value} already exists")


class TransientDeliveryError(ScanGuardError):
    """A webhook attempt failed in a way that is worth retrying."""

    def __init__(self, message: str, response_code: int | None = None):
        self.response_code = response_code
        super().__init__(message)


class ExternalServiceDegraded(ScanGuardError):
    """An optional external service was unreachable or returned garbage."""

    def __init__(self, service: str, reason: str):
        self.service = service
        self.reason = reason
        super().__init__(f"{service} degraded: {reason}")
