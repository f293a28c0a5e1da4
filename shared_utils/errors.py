"""
Pipeline error taxonomy.

Boundary errors (ValidationError and subclasses) are rejected without side
effects. Provider errors split into transient (retried) and permanent (not
retried). Exhausted retries surface as DeliveryFailed / ModelUnavailable.
"""
from typing import Optional


class PipelineError(Exception):
    """Base class for every error raised by the message pipeline"""


class ValidationError(PipelineError):
    pass


class InvalidSignatureError(ValidationError):
    pass


class VerificationError(ValidationError):
    pass


class MalformedPayloadError(ValidationError):
    pass


class NotFoundError(PipelineError):
    pass


class RoutingError(PipelineError):
    def __init__(self, phone: str, message: Optional[str] = None):
        self.phone = phone
        super().__init__(message or f"No tenant found for phone {phone}")


class BudgetExceeded(PipelineError):
    def __init__(self, tenant_id: str, period: str, spent: float, limit: float):
        self.tenant_id = tenant_id
        self.period = period
        self.spent = spent
        self.limit = limit
        super().__init__(f"{period} budget exceeded for tenant {tenant_id}: {spent:.4f} >= {limit:.4f}")


class ProviderError(PipelineError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TransientProviderError(ProviderError):
    """Network failure, timeout, 5xx, 429 or 408 from an upstream API"""


class PermanentProviderError(ProviderError):
    """4xx (other than 408/429) or a provider-reported rejection"""


class ModelUnavailable(PipelineError):
    pass


class DeliveryFailed(PipelineError):
    def __init__(self, message: str, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)


class PersistenceError(PipelineError):
    pass
