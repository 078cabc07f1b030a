"""bithedge_oracle.storage — Historical closes, pipeline state, compaction."""

from bithedge_oracle.storage.store import (
    CONSENSUS_SOURCE_ID,
    HistoricalStore,
    SqliteStore,
    create_store,
)

__all__ = ["CONSENSUS_SOURCE_ID", "HistoricalStore", "SqliteStore", "create_store"]
