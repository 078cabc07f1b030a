"""bithedge_oracle.resilience — Circuit breakers and fallback ordering."""

from bithedge_oracle.resilience.breaker import CircuitBreaker
from bithedge_oracle.resilience.controller import ResilienceController

__all__ = ["CircuitBreaker", "ResilienceController"]
