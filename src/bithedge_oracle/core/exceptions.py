"""Custom exception hierarchy for bithedge-oracle."""

from typing import Any


class OracleError(Exception):
    """Base exception for all bithedge-oracle errors.

    All exceptions carry an optional `context` dict for structured error
    metadata that can be logged or serialized without parsing the message.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.context = context or {}


class ConfigError(OracleError):
    """Invalid or missing configuration.

    Raised by load_config() during startup. Should be treated as fatal.

    Context keys:
        field: str — the config field that failed validation
        value: Any — the invalid value (redacted for secrets)
    """


class SourceError(OracleError):
    """A single market-data source failed to produce a value.

    Policy: absorbed by the ResilienceController. Counts as a circuit
    failure; never reaches the Aggregator as an exception.

    Context keys:
        url: str — the URL that was being fetched
        status_code: int | None — HTTP status if one was received
        retry_after: int | None — seconds, for rate-limited responses
    """

    NETWORK = "network"
    PARSE = "parse"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"

    def __init__(
        self,
        message: str,
        kind: str,
        provider: str,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context)
        self.kind = kind
        self.provider = provider


class InsufficientConsensusError(OracleError):
    """Too few healthy sources contributed to a consensus price.

    Policy: surface to callers as "no price available now". Never
    substitute stale or single-source data. Not retried on the read path.

    Context keys:
        contributing: int — sources left after staleness/outlier filtering
        required: int — configured minimum
    """


class InsufficientDataError(OracleError):
    """A volatility window does not hold enough closes.

    Policy: surface distinctly from a computed-but-low value.

    Context keys:
        window_days: int
        methodology: str
        sample_count: int
    """


class InvalidInputError(OracleError):
    """Malformed pricing request parameters.

    Policy: reject before computation.

    Context keys:
        field: str — the offending parameter
        value: Any — the rejected value
    """


class DataIntegrityError(OracleError):
    """A non-positive price or inconsistent timestamp reached storage.

    Policy: fatal for that record. Log and drop, never store.

    Context keys:
        source_id: str
        date: str — ISO day of the offending close
        reason: str
    """


class StorageError(OracleError):
    """Database operation failed.

    Policy: raise immediately. Data integrity is critical.

    Context keys:
        operation: str — "insert", "query", "migrate", etc.
        table: str — the table involved
    """
