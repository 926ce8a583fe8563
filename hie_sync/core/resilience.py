"""
Resilience patterns: Circuit Breaker and Retry Logic

Provides resilience utilities for external service calls:
- Circuit breakers: fail fast while a collaborator is down
- Retry decorators: exponential backoff for transient transport failures

Usage:
    ensure_available(network_breaker)

    @retry_transient_http()
    async def call_network():
        ...

Circuit Breaker States:
- CLOSED: Normal operation, requests pass through
- OPEN: Service is failing, requests fail immediately
- HALF-OPEN: Testing if service recovered
"""

import asyncio
import logging

import aiohttp
import structlog
from pybreaker import CircuitBreaker, CircuitBreakerError
from tenacity import after_log, before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = structlog.get_logger(__name__)


class TransientHTTPError(Exception):
    """5xx or 429 response that is worth retrying"""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


# =============================================================================
# Circuit Breakers for External Dependencies
# =============================================================================

# Remote HIE network
# Higher fail threshold: document fetches from remote gateways fail individually
network_breaker = CircuitBreaker(
    fail_max=20,
    reset_timeout=120,
    name="network_circuit_breaker",
)

# Canonical FHIR store
fhir_server_breaker = CircuitBreaker(
    fail_max=5,
    reset_timeout=60,
    name="fhir_server_circuit_breaker",
)

# CDA -> FHIR converter
converter_breaker = CircuitBreaker(
    fail_max=5,
    reset_timeout=90,
    name="converter_circuit_breaker",
)

# Tenant webhooks and usage reporting
webhook_breaker = CircuitBreaker(
    fail_max=10,
    reset_timeout=60,
    name="webhook_circuit_breaker",
)


def ensure_available(breaker: CircuitBreaker) -> None:
    """Raise CircuitBreakerError when the breaker is open (lightweight check)."""
    breaker.call(lambda: None)


def record_failure(breaker: CircuitBreaker, error: BaseException) -> None:
    """Count a failure that happened outside of breaker.call()."""

    def _fail():
        raise error

    try:
        breaker.call(_fail)
    except (CircuitBreakerError, type(error)):
        logger.debug("circuit_breaker_failure_recorded", breaker=breaker.name, state=str(breaker.current_state))


# =============================================================================
# Retry Decorators
# =============================================================================

RETRYABLE_HTTP_ERRORS = (
    TransientHTTPError,
    aiohttp.ClientConnectionError,
    aiohttp.ServerTimeoutError,
    asyncio.TimeoutError,
)


def retry_transient_http(max_attempts: int = 3):
    """
    Retry decorator for HTTP operations against external services.

    Retries connection errors, timeouts, 429 and 5xx responses with
    exponential backoff. Client errors (4xx) are never retried.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
    """
    return retry(
        retry=retry_if_exception_type(RETRYABLE_HTTP_ERRORS),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        after=after_log(logger, logging.DEBUG),
        reraise=True,
    )


def get_circuit_breaker_status() -> dict:
    """
    Get status of all circuit breakers for health monitoring.

    Returns:
        Dict with breaker name -> status info
    """
    breakers = {
        "network": network_breaker,
        "fhir_server": fhir_server_breaker,
        "converter": converter_breaker,
        "webhook": webhook_breaker,
    }

    return {
        name: {
            "state": str(breaker.current_state),
            "fail_count": breaker.fail_counter,
            "fail_max": breaker.fail_max,
            "reset_timeout": breaker.reset_timeout,
        }
        for name, breaker in breakers.items()
    }
