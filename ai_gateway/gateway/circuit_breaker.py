"""Circuit Breaker and backoff policy per provider.

Implements the circuit breaker pattern per provider:
  - CLOSED: normal operation, requests pass through
  - OPEN: too many failures, the provider is skipped during failover
  - HALF_OPEN: testing recovery with a single in-flight probe request

Backoff strategy between attempts on the same provider:
  delay = min(initial * multiplier^(attempt-1), max_delay) ± jitter
  jitter = delay * jitter_factor
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

# Status codes worth another attempt (with a fresh key)
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504, 520})


@dataclass(frozen=True)
class RetryConfig:
    """Retry, backoff and circuit parameters for the dispatcher."""

    max_attempts: int = 3  # only for providers without credentials
    initial_delay: float = 1.0  # seconds
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1
    failure_threshold: int = 5  # consecutive failures to open circuit
    recovery_timeout: float = 60.0  # seconds before trying half-open
    success_threshold: int = 1  # half-open successes needed to close

    @classmethod
    def from_settings(cls, settings) -> RetryConfig:
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
            jitter_factor=settings.retry_jitter_factor,
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout=settings.circuit_recovery_timeout,
        )


class CircuitState(str, Enum):
    CLOSED = "closed"  # calls pass through
    OPEN = "open"  # provider skipped until recovery_timeout elapses
    HALF_OPEN = "half_open"  # one probe call at a time


@dataclass
class ProviderCircuit:
    """Failure bookkeeping for one provider."""

    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    total_failures: int = 0
    total_successes: int = 0
    half_open_successes: int = 0
    opened_at: float = 0.0
    probe_in_flight: bool = False

    def trip(self) -> None:
        self.state = CircuitState.OPEN
        self.opened_at = time.monotonic()
        self.probe_in_flight = False

    def close(self) -> None:
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.half_open_successes = 0
        self.probe_in_flight = False

    def seconds_until_probe(self, recovery_timeout: float) -> float:
        if self.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, recovery_timeout - (time.monotonic() - self.opened_at))


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """Delay before retry number ``attempt`` (1-based); 0 when backoff is disabled."""
    if config.initial_delay <= 0:
        return 0.0
    base = config.initial_delay * config.backoff_multiplier ** max(attempt - 1, 0)
    delay = min(base, config.max_delay)
    spread = delay * config.jitter_factor
    return max(0.0, delay + random.uniform(-spread, spread))


class CircuitBreaker:
    """Per-provider circuit breaker consulted by the dispatcher before each provider.

    Usage:
        breaker = CircuitBreaker(RetryConfig())
        if breaker.allow_request("openai"):
            ...
            breaker.record_success("openai")  # or record_failure("openai")
    """

    def __init__(self, config: RetryConfig | None = None):
        self.config = config or RetryConfig()
        self._circuits: dict[str, ProviderCircuit] = {}

    def _circuit(self, provider_id: str) -> ProviderCircuit:
        return self._circuits.setdefault(provider_id, ProviderCircuit())

    def allow_request(self, provider_id: str) -> bool:
        """False while the circuit is open or a half-open probe is still running.

        The first call after the recovery timeout becomes the probe; every
        other caller is turned away until that probe reports back through
        ``record_success``, ``record_failure`` or ``release_probe``.
        """
        circuit = self._circuit(provider_id)
        if circuit.state == CircuitState.CLOSED:
            return True
        if circuit.state == CircuitState.HALF_OPEN:
            if circuit.probe_in_flight:
                return False
            circuit.probe_in_flight = True
            return True
        if circuit.seconds_until_probe(self.config.recovery_timeout) > 0:
            return False
        circuit.state = CircuitState.HALF_OPEN
        circuit.half_open_successes = 0
        circuit.probe_in_flight = True
        logger.info("Circuit for %s half-open, allowing a probe", provider_id, extra={"provider": provider_id})
        return True

    def release_probe(self, provider_id: str) -> None:
        """Free the half-open slot when a probe ended without a verdict (cache hit, bad input)."""
        circuit = self._circuits.get(provider_id)
        if circuit is not None:
            circuit.probe_in_flight = False

    def record_success(self, provider_id: str) -> None:
        circuit = self._circuit(provider_id)
        circuit.probe_in_flight = False
        circuit.consecutive_failures = 0
        circuit.total_successes += 1
        if circuit.state == CircuitState.CLOSED:
            return
        if circuit.state == CircuitState.HALF_OPEN:
            circuit.half_open_successes += 1
            if circuit.half_open_successes < self.config.success_threshold:
                return
        circuit.close()
        logger.info("Circuit for %s closed", provider_id, extra={"provider": provider_id})

    def record_failure(self, provider_id: str) -> None:
        circuit = self._circuit(provider_id)
        circuit.probe_in_flight = False
        circuit.consecutive_failures += 1
        circuit.total_failures += 1
        if circuit.state == CircuitState.OPEN:
            return
        if circuit.state == CircuitState.HALF_OPEN or circuit.consecutive_failures >= self.config.failure_threshold:
            circuit.trip()
            logger.warning(
                "Circuit for %s opened after %d consecutive failure(s)",
                provider_id,
                circuit.consecutive_failures,
                extra={"provider": provider_id},
            )

    def get_circuit_state(self, provider_id: str) -> dict:
        circuit = self._circuit(provider_id)
        return {
            "provider": provider_id,
            "state": circuit.state.value,
            "consecutive_failures": circuit.consecutive_failures,
            "total_failures": circuit.total_failures,
            "total_successes": circuit.total_successes,
            "retry_in_seconds": round(circuit.seconds_until_probe(self.config.recovery_timeout), 1),
        }

    def get_all_states(self) -> list[dict]:
        return [self.get_circuit_state(pid) for pid in self._circuits]

    def reset(self, provider_id: str) -> None:
        self._circuit(provider_id).close()
        logger.info("Circuit for %s reset", provider_id, extra={"provider": provider_id})
