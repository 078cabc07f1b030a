"""Source adapter protocol — the provider-agnostic interface layer.

Architecture
------------
Market data flows through adapters so that collection logic never knows
which exchange it is talking to:

    Endpoint → ResponseParser → SourceAdapter → ResilienceController → Aggregator

- **SourceAdapter** is the protocol every provider implements. It fetches
  one spot price or one historical series and normalizes it into
  ``PricePoint`` / ``HistoricalClose`` records.

- **ResponseParser** knows one provider's JSON schema. Adding a provider
  means writing a parser (often just a field path) and a config entry.

Adapters are stateless with respect to business logic and never retry.
Every failure surfaces as ``SourceError`` with a ``kind`` of network,
parse, rate_limited or timeout; retry and backoff belong to the
ResilienceController.
"""

from __future__ import annotations

from datetime import date
from typing import Protocol, runtime_checkable

from bithedge_oracle.core.models import Capability, HistoricalClose, PricePoint


@runtime_checkable
class SourceAdapter(Protocol):
    """One market-data provider."""

    @property
    def source_id(self) -> str: ...

    @property
    def capabilities(self) -> frozenset[Capability]: ...

    async def fetch_spot(self) -> PricePoint:
        """Fetch the current BTC/USD price.

        Raises
        ------
        SourceError
            On any network, HTTP, timeout or parse failure.
        """
        ...

    async def fetch_historical(self, start: date, end: date) -> list[HistoricalClose]:
        """Fetch completed daily closes in ``[start, end]``, oldest first.

        Raises
        ------
        SourceError
            On any network, HTTP, timeout or parse failure.
        """
        ...
