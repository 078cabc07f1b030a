"""Storage backend: Protocol definition, SQLite implementation, factory."""

from __future__ import annotations

import asyncio
import json
import logging
import math
from collections import defaultdict
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime, timedelta
from itertools import groupby
from pathlib import Path
from typing import ClassVar, Protocol, runtime_checkable

import aiosqlite

from bithedge_oracle.core.clock import Clock, SystemClock
from bithedge_oracle.core.config import StorageConfig
from bithedge_oracle.core.exceptions import DataIntegrityError, StorageError
from bithedge_oracle.core.models import (
    AppendOutcome,
    CircuitState,
    CloseAuditEntry,
    ConsensusPrice,
    HistoricalClose,
    IntradayPrice,
    Methodology,
    SourceHealth,
    VolatilityEstimate,
)

logger = logging.getLogger(__name__)

# Closes derived from our own intraday consensus rank below every configured source
CONSENSUS_SOURCE_ID = "consensus"

_TICK = "tick"
_DAILY = "daily"


@runtime_checkable
class HistoricalStore(Protocol):
    """Append-only, day-keyed store of closes plus pipeline state."""

    async def append_close(self, close: HistoricalClose) -> AppendOutcome: ...
    async def range(
        self, start: date, end: date, asset: str | None = None
    ) -> list[HistoricalClose]: ...
    async def latest(self, asset: str | None = None) -> HistoricalClose | None: ...
    async def audit_trail(
        self, day: date, asset: str | None = None
    ) -> list[CloseAuditEntry]: ...
    async def record_consensus(self, consensus: ConsensusPrice) -> None: ...
    async def latest_consensus(self, asset: str | None = None) -> ConsensusPrice | None: ...
    async def intraday(
        self, start: datetime, end: datetime, asset: str | None = None
    ) -> list[IntradayPrice]: ...
    async def save_volatility(self, estimate: VolatilityEstimate) -> None: ...
    async def latest_volatility(
        self, window_days: int, methodology: Methodology
    ) -> VolatilityEstimate | None: ...
    async def volatility_history(
        self, window_days: int, methodology: Methodology, limit: int
    ) -> list[VolatilityEstimate]: ...
    async def save_health(self, snapshots: Sequence[SourceHealth]) -> None: ...
    async def load_health(self) -> list[SourceHealth]: ...
    async def compact(self, now: datetime) -> dict[str, int]: ...
    async def initialize(self) -> None: ...
    async def close(self) -> None: ...
    async def health_check(self) -> bool: ...


def _ts(value: datetime) -> str:
    """Normalize to a UTC ISO string so lexical order is time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _opt_ts(value: datetime | None) -> str | None:
    return _ts(value) if value is not None else None


def _opt_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SqliteStore:
    """SQLite implementation of the storage protocol.

    Uses aiosqlite for async access, WAL mode for concurrent reads,
    and a version-tracked migration system.

    Writers share one connection, so every multi-statement write runs
    inside ``_transaction()`` under a store-wide lock and either commits
    whole or rolls back (including on cancellation). Close appends are
    additionally serialized per ``(asset, day)`` across the
    read-decide-write sequence.

    Parameters
    ----------
    config : StorageConfig
        Database path, asset code and retention tiers.
    source_priority : Sequence[str]
        Historical source ids, most preferred first. Decides which close
        wins when two land on the same day.
    clock : Clock | None
        Stamps audit entries and health snapshots. Defaults to wall clock.
    """

    _MIGRATIONS: ClassVar[dict[int, tuple[str, list[str]]]] = {
        1: (
            "Initial schema",
            [
                """CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT DEFAULT (datetime('now'))
                )""",
                """CREATE TABLE IF NOT EXISTS historical_closes (
                    asset TEXT NOT NULL,
                    date TEXT NOT NULL,
                    price REAL NOT NULL CHECK (price > 0),
                    source_id TEXT NOT NULL,
                    stored_at TEXT NOT NULL,
                    open REAL,
                    high REAL,
                    low REAL,
                    PRIMARY KEY(asset, date)
                )""",
                """CREATE TABLE IF NOT EXISTS close_audit (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    asset TEXT NOT NULL,
                    date TEXT NOT NULL,
                    price REAL NOT NULL,
                    source_id TEXT NOT NULL,
                    stored_at TEXT NOT NULL,
                    open REAL,
                    high REAL,
                    low REAL,
                    outcome TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    recorded_at TEXT NOT NULL
                )""",
                """CREATE TABLE IF NOT EXISTS intraday_prices (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    asset TEXT NOT NULL,
                    observed_at TEXT NOT NULL,
                    price REAL NOT NULL,
                    confidence REAL NOT NULL,
                    high REAL,
                    low REAL,
                    sample_count INTEGER NOT NULL DEFAULT 1,
                    resolution TEXT NOT NULL DEFAULT 'tick',
                    sources_json TEXT,
                    outliers_json TEXT
                )""",
                """CREATE TABLE IF NOT EXISTS price_archive (
                    asset TEXT NOT NULL,
                    day TEXT NOT NULL,
                    close REAL NOT NULL,
                    high REAL,
                    low REAL,
                    sample_count INTEGER NOT NULL,
                    archived_at TEXT NOT NULL,
                    PRIMARY KEY(asset, day)
                )""",
                """CREATE TABLE IF NOT EXISTS volatility_estimates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    window_days INTEGER NOT NULL,
                    methodology TEXT NOT NULL,
                    value REAL,
                    computed_at TEXT NOT NULL,
                    sample_count INTEGER NOT NULL,
                    insufficient_data INTEGER NOT NULL,
                    effective_methodology TEXT,
                    as_of TEXT
                )""",
                """CREATE TABLE IF NOT EXISTS source_health (
                    source_id TEXT PRIMARY KEY,
                    weight REAL NOT NULL,
                    consecutive_failures INTEGER NOT NULL,
                    circuit_state TEXT NOT NULL,
                    cooldown_seconds REAL,
                    opened_at TEXT,
                    last_success_at TEXT,
                    last_deviation REAL,
                    updated_at TEXT DEFAULT (datetime('now'))
                )""",
                # Indexes
                "CREATE INDEX IF NOT EXISTS idx_audit_day ON close_audit(asset, date)",
                "CREATE INDEX IF NOT EXISTS idx_intraday_time ON intraday_prices(asset, observed_at)",
                "CREATE INDEX IF NOT EXISTS idx_vol_key ON volatility_estimates(window_days, methodology, computed_at)",
            ],
        ),
    }

    def __init__(
        self,
        config: StorageConfig,
        source_priority: Sequence[str] = (),
        clock: Clock | None = None,
    ) -> None:
        self._config = config
        self._path = config.sqlite_path
        self._asset = config.asset
        self._priority = {source_id: rank for rank, source_id in enumerate(source_priority)}
        self._clock = clock or SystemClock()
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._day_locks: defaultdict[tuple[str, date], asyncio.Lock] = defaultdict(asyncio.Lock)

    async def initialize(self) -> None:
        """Open connection, enable WAL + FK, run migrations."""
        try:
            if self._path != ":memory:":
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(self._path)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA foreign_keys=ON")
            current = await self._get_schema_version()
            await self._apply_migrations(current)
            await self._db.commit()
        except Exception as e:
            raise StorageError(
                f"Failed to initialize SQLite store: {e}",
                context={"operation": "initialize", "path": self._path},
            ) from e

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def health_check(self) -> bool:
        if self._db is None:
            return False
        try:
            async with self._db.execute("SELECT 1") as cursor:
                row = await cursor.fetchone()
            return row is not None
        except aiosqlite.Error:
            return False

    # --- Schema Migration ---

    async def _get_schema_version(self) -> int:
        try:
            async with self._db.execute(
                "SELECT MAX(version) FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
            return row[0] if row[0] is not None else 0
        except aiosqlite.OperationalError:
            return 0

    async def _apply_migrations(self, current_version: int) -> None:
        for version in sorted(self._MIGRATIONS.keys()):
            if version <= current_version:
                continue
            desc, statements = self._MIGRATIONS[version]
            logger.info("Applying migration %d: %s", version, desc)
            for sql in statements:
                await self._db.execute(sql)
            await self._db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._write_lock:
            try:
                yield self._db
                await self._db.commit()
            except BaseException:
                await self._db.rollback()
                raise

    # --- Historical Closes ---

    def rank(self, source_id: str) -> int:
        """Lower is preferred. Unlisted sources follow listed ones; consensus is last."""
        if source_id == CONSENSUS_SOURCE_ID:
            return len(self._priority) + 1
        return self._priority.get(source_id, len(self._priority))

    @staticmethod
    def validate_close(close: HistoricalClose) -> None:
        """Raise DataIntegrityError for a close that must never be stored."""
        reason = None
        if not (math.isfinite(close.price) and close.price > 0):
            reason = f"non-positive or non-finite price {close.price}"
        elif any(
            v is not None and not (math.isfinite(v) and v > 0)
            for v in (close.open, close.high, close.low)
        ):
            reason = "non-positive open/high/low"
        elif close.date > close.stored_at.astimezone(UTC).date():
            reason = f"close dated {close.date} recorded earlier, at {close.stored_at}"
        if reason is not None:
            raise DataIntegrityError(
                f"Rejected close from {close.source_id}: {reason}",
                context={
                    "source_id": close.source_id,
                    "date": close.date.isoformat(),
                    "reason": reason,
                },
            )

    async def append_close(self, close: HistoricalClose) -> AppendOutcome:
        """Offer a close for its day.

        Returns ACCEPTED when the close is now the stored one, REJECTED when
        an equal-or-higher-priority close already holds the day, and
        DUPLICATE for a byte-for-byte repeat from the same source. Every
        accepted, superseded and rejected close lands in the audit trail.

        Raises
        ------
        DataIntegrityError
            For non-positive prices or a close dated after it was recorded.
        """
        self.validate_close(close)
        async with self._day_locks[(close.asset, close.date)]:
            existing = await self._get_close(close.asset, close.date)
            now = self._clock.now()
            try:
                if existing is None:
                    async with self._transaction() as db:
                        await self._insert_close(db, close)
                        await self._audit(db, close, AppendOutcome.ACCEPTED, "first close for day", now)
                    return AppendOutcome.ACCEPTED

                if existing.source_id == close.source_id and existing.price == close.price:
                    logger.debug("Duplicate close for %s from %s", close.date, close.source_id)
                    return AppendOutcome.DUPLICATE

                if self.rank(close.source_id) < self.rank(existing.source_id):
                    async with self._transaction() as db:
                        await db.execute(
                            "DELETE FROM historical_closes WHERE asset = ? AND date = ?",
                            (close.asset, close.date.isoformat()),
                        )
                        await self._insert_close(db, close)
                        await self._audit(
                            db, existing, AppendOutcome.SUPERSEDED,
                            f"replaced by higher-priority {close.source_id}", now,
                        )
                        await self._audit(
                            db, close, AppendOutcome.ACCEPTED,
                            f"outranks {existing.source_id}", now,
                        )
                    logger.info(
                        "Close for %s: %s superseded %s",
                        close.date, close.source_id, existing.source_id,
                    )
                    return AppendOutcome.ACCEPTED

                async with self._transaction() as db:
                    await self._audit(
                        db, close, AppendOutcome.REJECTED,
                        f"{existing.source_id} holds the day with equal or higher priority", now,
                    )
                return AppendOutcome.REJECTED
            except aiosqlite.Error as e:
                raise StorageError(
                    f"Failed to append close: {e}",
                    context={
                        "operation": "insert",
                        "table": "historical_closes",
                        "date": close.date.isoformat(),
                    },
                ) from e

    async def range(
        self, start: date, end: date, asset: str | None = None
    ) -> list[HistoricalClose]:
        """Accepted closes with ``start <= date <= end``, oldest first."""
        try:
            async with self._db.execute(
                """SELECT * FROM historical_closes
                   WHERE asset = ? AND date >= ? AND date <= ?
                   ORDER BY date ASC""",
                (asset or self._asset, start.isoformat(), end.isoformat()),
            ) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_close(r) for r in rows]
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to query closes: {e}",
                context={"operation": "query", "table": "historical_closes"},
            ) from e

    async def latest(self, asset: str | None = None) -> HistoricalClose | None:
        try:
            async with self._db.execute(
                "SELECT * FROM historical_closes WHERE asset = ? ORDER BY date DESC LIMIT 1",
                (asset or self._asset,),
            ) as cursor:
                row = await cursor.fetchone()
            return self._row_to_close(row) if row else None
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to query latest close: {e}",
                context={"operation": "query", "table": "historical_closes"},
            ) from e

    async def audit_trail(self, day: date, asset: str | None = None) -> list[CloseAuditEntry]:
        try:
            async with self._db.execute(
                "SELECT * FROM close_audit WHERE asset = ? AND date = ? ORDER BY id ASC",
                (asset or self._asset, day.isoformat()),
            ) as cursor:
                rows = await cursor.fetchall()
            return [
                CloseAuditEntry(
                    close=self._row_to_close(r),
                    outcome=AppendOutcome(r["outcome"]),
                    reason=r["reason"],
                    recorded_at=datetime.fromisoformat(r["recorded_at"]),
                )
                for r in rows
            ]
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to query audit trail: {e}",
                context={"operation": "query", "table": "close_audit"},
            ) from e

    async def _get_close(self, asset: str, day: date) -> HistoricalClose | None:
        async with self._db.execute(
            "SELECT * FROM historical_closes WHERE asset = ? AND date = ?",
            (asset, day.isoformat()),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_close(row) if row else None

    @staticmethod
    async def _insert_close(db: aiosqlite.Connection, close: HistoricalClose) -> None:
        await db.execute(
            """INSERT INTO historical_closes
               (asset, date, price, source_id, stored_at, open, high, low)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                close.asset,
                close.date.isoformat(),
                close.price,
                close.source_id,
                _ts(close.stored_at),
                close.open,
                close.high,
                close.low,
            ),
        )

    @staticmethod
    async def _audit(
        db: aiosqlite.Connection,
        close: HistoricalClose,
        outcome: AppendOutcome,
        reason: str,
        recorded_at: datetime,
    ) -> None:
        await db.execute(
            """INSERT INTO close_audit
               (asset, date, price, source_id, stored_at, open, high, low,
                outcome, reason, recorded_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                close.asset,
                close.date.isoformat(),
                close.price,
                close.source_id,
                _ts(close.stored_at),
                close.open,
                close.high,
                close.low,
                str(outcome),
                reason,
                _ts(recorded_at),
            ),
        )

    # --- Intraday Consensus ---

    async def record_consensus(self, consensus: ConsensusPrice) -> None:
        try:
            async with self._transaction() as db:
                await db.execute(
                    """INSERT INTO intraday_prices
                       (asset, observed_at, price, confidence, resolution,
                        sources_json, outliers_json)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (
                        self._asset,
                        _ts(consensus.computed_at),
                        consensus.price,
                        consensus.confidence,
                        _TICK,
                        json.dumps(sorted(consensus.contributing_sources)),
                        json.dumps(sorted(consensus.outliers)),
                    ),
                )
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to record consensus: {e}",
                context={"operation": "insert", "table": "intraday_prices"},
            ) from e

    async def intraday(
        self, start: datetime, end: datetime, asset: str | None = None
    ) -> list[IntradayPrice]:
        """Consensus snapshots and daily rollups with ``start <= observed_at <= end``."""
        try:
            async with self._db.execute(
                """SELECT * FROM intraday_prices
                   WHERE asset = ? AND observed_at >= ? AND observed_at <= ?
                   ORDER BY observed_at ASC""",
                (asset or self._asset, _ts(start), _ts(end)),
            ) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_intraday(r) for r in rows]
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to query intraday prices: {e}",
                context={"operation": "query", "table": "intraday_prices"},
            ) from e

    async def latest_consensus(self, asset: str | None = None) -> ConsensusPrice | None:
        """Most recent per-cycle consensus, as recorded (rollups excluded)."""
        try:
            async with self._db.execute(
                """SELECT * FROM intraday_prices
                   WHERE asset = ? AND resolution = ?
                   ORDER BY observed_at DESC LIMIT 1""",
                (asset or self._asset, _TICK),
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to query latest consensus: {e}",
                context={"operation": "query", "table": "intraday_prices"},
            ) from e
        if row is None:
            return None
        return ConsensusPrice(
            price=row["price"],
            confidence=row["confidence"],
            contributing_sources=frozenset(json.loads(row["sources_json"] or "[]")),
            outliers=frozenset(json.loads(row["outliers_json"] or "[]")),
            computed_at=datetime.fromisoformat(row["observed_at"]),
        )

    async def archived(self, start: date, end: date, asset: str | None = None) -> list[IntradayPrice]:
        """Daily rollups moved out of the intraday table by compaction."""
        try:
            async with self._db.execute(
                """SELECT * FROM price_archive
                   WHERE asset = ? AND day >= ? AND day <= ?
                   ORDER BY day ASC""",
                (asset or self._asset, start.isoformat(), end.isoformat()),
            ) as cursor:
                rows = await cursor.fetchall()
            return [
                IntradayPrice(
                    observed_at=datetime.combine(date.fromisoformat(r["day"]), datetime.min.time(), UTC),
                    price=r["close"],
                    confidence=1.0,
                    asset=r["asset"],
                    high=r["high"],
                    low=r["low"],
                    sample_count=r["sample_count"],
                )
                for r in rows
            ]
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to query archive: {e}",
                context={"operation": "query", "table": "price_archive"},
            ) from e

    # --- Volatility Estimates ---

    async def save_volatility(self, estimate: VolatilityEstimate) -> None:
        try:
            async with self._transaction() as db:
                await db.execute(
                    """INSERT INTO volatility_estimates
                       (window_days, methodology, value, computed_at, sample_count,
                        insufficient_data, effective_methodology, as_of)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        estimate.window_days,
                        str(estimate.methodology),
                        estimate.value,
                        _ts(estimate.computed_at),
                        estimate.sample_count,
                        int(estimate.insufficient_data),
                        str(estimate.effective_methodology) if estimate.effective_methodology else None,
                        estimate.as_of.isoformat() if estimate.as_of else None,
                    ),
                )
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to save volatility estimate: {e}",
                context={"operation": "insert", "table": "volatility_estimates"},
            ) from e

    async def latest_volatility(
        self, window_days: int, methodology: Methodology
    ) -> VolatilityEstimate | None:
        history = await self.volatility_history(window_days, methodology, limit=1)
        return history[0] if history else None

    async def volatility_history(
        self, window_days: int, methodology: Methodology, limit: int
    ) -> list[VolatilityEstimate]:
        """Most recent estimates first."""
        try:
            async with self._db.execute(
                """SELECT * FROM volatility_estimates
                   WHERE window_days = ? AND methodology = ?
                   ORDER BY computed_at DESC, id DESC LIMIT ?""",
                (window_days, str(methodology), limit),
            ) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_volatility(r) for r in rows]
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to query volatility estimates: {e}",
                context={"operation": "query", "table": "volatility_estimates"},
            ) from e

    # --- Source Health ---

    async def save_health(self, snapshots: Sequence[SourceHealth]) -> None:
        """Replace the persisted snapshot for each source, all or nothing."""
        try:
            async with self._transaction() as db:
                for h in snapshots:
                    await db.execute(
                        """INSERT OR REPLACE INTO source_health
                           (source_id, weight, consecutive_failures, circuit_state,
                            cooldown_seconds, opened_at, last_success_at, last_deviation,
                            updated_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                        (
                            h.source_id,
                            h.weight,
                            h.consecutive_failures,
                            str(h.circuit_state),
                            h.cooldown_seconds,
                            _opt_ts(h.opened_at),
                            _opt_ts(h.last_success_at),
                            h.last_deviation,
                            _ts(self._clock.now()),
                        ),
                    )
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to save source health: {e}",
                context={"operation": "insert", "table": "source_health"},
            ) from e

    async def load_health(self) -> list[SourceHealth]:
        try:
            async with self._db.execute(
                "SELECT * FROM source_health ORDER BY source_id"
            ) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_health(r) for r in rows]
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to load source health: {e}",
                context={"operation": "query", "table": "source_health"},
            ) from e

    # --- Compaction ---

    async def compact(self, now: datetime) -> dict[str, int]:
        """Apply the tiered retention policy to intraday data.

        - ticks from days older than ``full_fidelity_days`` collapse to one
          daily row (last price, high, low, tick count)
        - daily rows older than ``daily_granularity_days`` move to the archive
        - archive rows older than ``retention_days`` are dropped

        Daily closes are never touched, so every volatility window stays
        answerable.
        """
        cfg = self._config
        fidelity_cutoff = (now - timedelta(days=cfg.full_fidelity_days)).astimezone(UTC).date()
        archive_cutoff = (now - timedelta(days=cfg.daily_granularity_days)).astimezone(UTC).date()
        retention_cutoff = (now - timedelta(days=cfg.retention_days)).astimezone(UTC).date()
        fidelity_ts = _ts(datetime.combine(fidelity_cutoff, datetime.min.time(), UTC))
        archive_ts = _ts(datetime.combine(archive_cutoff, datetime.min.time(), UTC))
        counts = {"ticks_rolled_up": 0, "days_rolled_up": 0, "days_archived": 0, "archive_dropped": 0}

        try:
            async with self._transaction() as db:
                async with db.execute(
                    """SELECT * FROM intraday_prices
                       WHERE asset = ? AND resolution = ? AND observed_at < ?
                       ORDER BY observed_at ASC""",
                    (self._asset, _TICK, fidelity_ts),
                ) as cursor:
                    ticks = [self._row_to_intraday(r) for r in await cursor.fetchall()]

                for day, group in groupby(ticks, key=lambda p: p.observed_at.astimezone(UTC).date()):
                    day_ticks = list(group)
                    prices = [p.price for p in day_ticks]
                    await db.execute(
                        """INSERT INTO intraday_prices
                           (asset, observed_at, price, confidence, high, low,
                            sample_count, resolution)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                        (
                            self._asset,
                            _ts(day_ticks[-1].observed_at),
                            day_ticks[-1].price,
                            sum(p.confidence for p in day_ticks) / len(day_ticks),
                            max(prices),
                            min(prices),
                            len(day_ticks),
                            _DAILY,
                        ),
                    )
                    counts["days_rolled_up"] += 1
                    counts["ticks_rolled_up"] += len(day_ticks)
                await db.execute(
                    "DELETE FROM intraday_prices WHERE asset = ? AND resolution = ? AND observed_at < ?",
                    (self._asset, _TICK, fidelity_ts),
                )

                async with db.execute(
                    """SELECT * FROM intraday_prices
                       WHERE asset = ? AND resolution = ? AND observed_at < ?""",
                    (self._asset, _DAILY, archive_ts),
                ) as cursor:
                    stale_daily = [self._row_to_intraday(r) for r in await cursor.fetchall()]
                for p in stale_daily:
                    await db.execute(
                        """INSERT OR REPLACE INTO price_archive
                           (asset, day, close, high, low, sample_count, archived_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?)""",
                        (
                            p.asset,
                            p.observed_at.astimezone(UTC).date().isoformat(),
                            p.price,
                            p.high,
                            p.low,
                            p.sample_count,
                            _ts(now),
                        ),
                    )
                counts["days_archived"] = len(stale_daily)
                await db.execute(
                    "DELETE FROM intraday_prices WHERE asset = ? AND resolution = ? AND observed_at < ?",
                    (self._asset, _DAILY, archive_ts),
                )

                cursor = await db.execute(
                    "DELETE FROM price_archive WHERE asset = ? AND day < ?",
                    (self._asset, retention_cutoff.isoformat()),
                )
                counts["archive_dropped"] = cursor.rowcount
        except aiosqlite.Error as e:
            raise StorageError(
                f"Compaction failed: {e}",
                context={"operation": "compact", "table": "intraday_prices"},
            ) from e

        logger.info("Compaction complete: %s", counts)
        return counts

    # --- Statistics ---

    async def get_statistics(self) -> dict:
        """Row counts and close coverage for status displays."""
        try:
            stats: dict = {}
            async with self._db.execute(
                """SELECT COUNT(*), MIN(date), MAX(date) FROM historical_closes
                   WHERE asset = ?""",
                (self._asset,),
            ) as cursor:
                row = await cursor.fetchone()
            stats["total_closes"] = row[0]
            stats["earliest_close"] = row[1]
            stats["latest_close"] = row[2]
            for key, table in (
                ("audit_entries", "close_audit"),
                ("intraday_rows", "intraday_prices"),
                ("archived_days", "price_archive"),
                ("volatility_estimates", "volatility_estimates"),
            ):
                async with self._db.execute(f"SELECT COUNT(*) FROM {table}") as cursor:
                    stats[key] = (await cursor.fetchone())[0]
            return stats
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to gather statistics: {e}",
                context={"operation": "query", "table": "*"},
            ) from e

    # --- Row Mappers ---

    @staticmethod
    def _row_to_close(row: aiosqlite.Row) -> HistoricalClose:
        return HistoricalClose(
            date=date.fromisoformat(row["date"]),
            price=row["price"],
            source_id=row["source_id"],
            stored_at=datetime.fromisoformat(row["stored_at"]),
            asset=row["asset"],
            open=row["open"],
            high=row["high"],
            low=row["low"],
        )

    @staticmethod
    def _row_to_intraday(row: aiosqlite.Row) -> IntradayPrice:
        return IntradayPrice(
            observed_at=datetime.fromisoformat(row["observed_at"]),
            price=row["price"],
            confidence=row["confidence"],
            asset=row["asset"],
            high=row["high"],
            low=row["low"],
            sample_count=row["sample_count"],
        )

    @staticmethod
    def _row_to_volatility(row: aiosqlite.Row) -> VolatilityEstimate:
        effective = row["effective_methodology"]
        return VolatilityEstimate(
            window_days=row["window_days"],
            methodology=Methodology(row["methodology"]),
            value=row["value"],
            computed_at=datetime.fromisoformat(row["computed_at"]),
            sample_count=row["sample_count"],
            insufficient_data=bool(row["insufficient_data"]),
            effective_methodology=Methodology(effective) if effective else None,
            as_of=date.fromisoformat(row["as_of"]) if row["as_of"] else None,
        )

    @staticmethod
    def _row_to_health(row: aiosqlite.Row) -> SourceHealth:
        return SourceHealth(
            source_id=row["source_id"],
            weight=row["weight"],
            consecutive_failures=row["consecutive_failures"],
            circuit_state=CircuitState(row["circuit_state"]),
            cooldown_seconds=row["cooldown_seconds"],
            opened_at=_opt_dt(row["opened_at"]),
            last_success_at=_opt_dt(row["last_success_at"]),
            last_deviation=row["last_deviation"],
        )


async def create_store(
    config: StorageConfig,
    source_priority: Sequence[str] = (),
    clock: Clock | None = None,
) -> SqliteStore:
    """Create and initialize the storage backend."""
    store = SqliteStore(config, source_priority, clock=clock)
    await store.initialize()
    return store
