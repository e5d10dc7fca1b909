from __future__ import annotations

from typing import Optional


class ResilienceError(RuntimeError):
    """Base class for failures raised by the external-call wrappers."""


class CircuitOpenError(ResilienceError):
    code = "CIRCUIT_BREAKER_OPEN"

    def __init__(self, service_name: str) -> None:
        super().__init__(f"Circuit breaker open for {service_name}")
        self.service_name = service_name


class ExternalServiceError(ResilienceError):
    """A transient failure talking to an external service (network, 5xx)."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class QuotaExceededError(ExternalServiceError):
    """Quota or rate-limit rejection (HTTP 429). Never retried."""
