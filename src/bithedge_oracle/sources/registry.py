"""Build source adapters from configuration."""

from __future__ import annotations

import logging

import httpx

from bithedge_oracle.core.clock import Clock
from bithedge_oracle.core.config import OracleConfig
from bithedge_oracle.core.exceptions import ConfigError
from bithedge_oracle.core.models import Capability
from bithedge_oracle.sources.http import HttpSourceAdapter
from bithedge_oracle.sources.parsers import HISTORICAL_PARSERS, SPOT_PARSERS

logger = logging.getLogger(__name__)


def build_adapters(
    config: OracleConfig,
    client: httpx.AsyncClient,
    clock: Clock | None = None,
) -> dict[str, HttpSourceAdapter]:
    """Instantiate one adapter per enabled source.

    Raises
    ------
    ConfigError
        If a source names an unknown parser or a response_schema_version
        its parser does not understand.
    """
    adapters: dict[str, HttpSourceAdapter] = {}
    for source in config.sources:
        if not source.enabled:
            logger.debug("Source %s disabled, skipping", source.provider_id)
            continue

        spot_parser = SPOT_PARSERS.get(source.parser_name)
        if spot_parser is None:
            raise ConfigError(
                f"No spot parser named {source.parser_name!r}",
                context={"field": "parser", "value": source.parser_name},
            )
        _check_version(source.provider_id, source.response_schema_version, spot_parser.schema_versions)

        historical_parser = None
        if Capability.HISTORICAL in source.capabilities:
            historical_parser = HISTORICAL_PARSERS.get(source.parser_name)
            if historical_parser is None:
                raise ConfigError(
                    f"No historical parser named {source.parser_name!r}",
                    context={"field": "parser", "value": source.parser_name},
                )
            _check_version(
                source.provider_id,
                source.response_schema_version,
                historical_parser.schema_versions,
            )

        adapters[source.provider_id] = HttpSourceAdapter(
            source,
            client,
            spot_parser=spot_parser,
            historical_parser=historical_parser,
            clock=clock,
            asset=config.storage.asset,
        )
    return adapters


def _check_version(provider_id: str, version: int, supported: frozenset[int]) -> None:
    if version not in supported:
        raise ConfigError(
            f"Source {provider_id!r} response_schema_version {version} is not "
            f"supported (known: {sorted(supported)})",
            context={"field": "response_schema_version", "value": version},
        )
