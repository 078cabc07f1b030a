"""Tests for the CLI module."""

from __future__ import annotations

import json
from datetime import date, timedelta

import pytest
from click.testing import CliRunner
from conftest import network_error

from bithedge_oracle.cli import cli
from bithedge_oracle.core.models import Capability
from bithedge_oracle.pipeline import OracleService, Scheduler
from bithedge_oracle.storage.store import create_store

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "bithedge-oracle.yml"
    path.write_text(f"storage:\n  sqlite_path: {tmp_path / 'oracle.db'}\n")
    return str(path)


@pytest.fixture
def adapters(make_adapter, make_close):
    closes = [
        make_close(
            date(2026, 3, 14) - timedelta(days=i),
            60000.0 if i % 2 else 61500.0,
            source_id="history",
        )
        for i in range(60)
    ]
    out = {
        sid: make_adapter(sid, price)
        for sid, price in (("alpha", 60000.0), ("bravo", 60050.0), ("charlie", 60100.0), ("delta", 60150.0))
    }
    out["history"] = make_adapter(
        "history", capabilities=frozenset({Capability.HISTORICAL}), closes=closes
    )
    return out


@pytest.fixture(autouse=True)
def fake_service(monkeypatch, oracle_config, adapters, clock):
    """Route every command to scripted adapters, keeping the configured database."""

    async def _create(config):
        cfg = oracle_config.model_copy(update={"storage": config.storage})
        store = await create_store(cfg.storage, source_priority=["history"])
        service = OracleService(cfg, store, adapters, clock=clock)
        await service.start()
        return service

    monkeypatch.setattr("bithedge_oracle.cli._create_service_async", _create)


# ---------------------------------------------------------------------------
# spot
# ---------------------------------------------------------------------------


class TestSpot:
    def test_table(self, runner, config_file):
        result = runner.invoke(cli, ["-c", config_file, "spot"])
        assert result.exit_code == 0, result.output
        assert "$60,075.00" in result.output
        assert "none" in result.output

    def test_json(self, runner, config_file):
        result = runner.invoke(cli, ["-c", config_file, "spot", "--format", "json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["price"] == 60075.0
        assert sorted(data["contributing_sources"]) == ["alpha", "bravo", "charlie", "delta"]

    def test_no_consensus_exits_3(self, runner, config_file, adapters):
        for sid in ("bravo", "charlie", "delta"):
            adapters[sid].set_spot(network_error(sid))
        result = runner.invoke(cli, ["-c", config_file, "spot"])
        assert result.exit_code == 3
        assert "No consensus" in result.output


# ---------------------------------------------------------------------------
# backfill / volatility
# ---------------------------------------------------------------------------


class TestBackfill:
    def test_backfill(self, runner, config_file):
        result = runner.invoke(cli, ["-c", config_file, "backfill", "--days", "40"])
        assert result.exit_code == 0, result.output
        assert "accepted: 40" in result.output

    def test_rejects_zero_days(self, runner, config_file):
        result = runner.invoke(cli, ["-c", config_file, "backfill", "--days", "0"])
        assert result.exit_code == 2

    def test_all_sources_failed(self, runner, config_file, adapters):
        adapters["history"].closes = network_error("history")
        result = runner.invoke(cli, ["-c", config_file, "backfill", "--days", "5"])
        assert result.exit_code == 3


class TestVolatility:
    def test_after_backfill(self, runner, config_file):
        runner.invoke(cli, ["-c", config_file, "backfill", "--days", "40"])
        result = runner.invoke(cli, ["-c", config_file, "volatility", "-w", "30", "-w", "60"])
        assert result.exit_code == 0, result.output
        assert "30d" in result.output
        assert "insufficient data" in result.output

    def test_unknown_methodology(self, runner, config_file):
        result = runner.invoke(cli, ["-c", config_file, "volatility", "-m", "garch"])
        assert result.exit_code == 2


# ---------------------------------------------------------------------------
# premium
# ---------------------------------------------------------------------------


class TestPremium:
    def test_strike_quote(self, runner, config_file):
        runner.invoke(cli, ["-c", config_file, "backfill", "--days", "40"])
        result = runner.invoke(
            cli, ["-c", config_file, "premium", "--strike", "55000", "--days", "30"]
        )
        assert result.exit_code == 0, result.output
        assert "Put Premium" in result.output
        assert "Break-even" in result.output

    def test_protection_quote_shows_scenarios(self, runner, config_file):
        runner.invoke(cli, ["-c", config_file, "backfill", "--days", "40"])
        result = runner.invoke(
            cli, ["-c", config_file, "premium", "--protect", "90", "--days", "30"]
        )
        assert result.exit_code == 0, result.output
        assert "Expiry Scenarios" in result.output

    def test_strike_and_protect_conflict(self, runner, config_file):
        result = runner.invoke(
            cli,
            ["-c", config_file, "premium", "--strike", "1", "--protect", "90", "--days", "30"],
        )
        assert result.exit_code == 2

    def test_no_history_exits_3(self, runner, config_file):
        result = runner.invoke(
            cli, ["-c", config_file, "premium", "--strike", "55000", "--days", "30"]
        )
        assert result.exit_code == 3
        assert "InsufficientDataError" in result.output


# ---------------------------------------------------------------------------
# run / compact / status / serve
# ---------------------------------------------------------------------------


class TestOperations:
    def test_run_backfills_then_schedules(self, runner, config_file, monkeypatch):
        calls = []

        async def fake_run(self):
            calls.append(self.interval)

        monkeypatch.setattr(Scheduler, "run", fake_run)
        result = runner.invoke(cli, ["-c", config_file, "run"])
        assert result.exit_code == 0, result.output
        assert "Backfill" in result.output
        assert calls == [60.0]

    def test_compact(self, runner, config_file):
        result = runner.invoke(cli, ["-c", config_file, "compact"])
        assert result.exit_code == 0, result.output
        assert "ticks rolled up: 0" in result.output

    def test_status(self, runner, config_file):
        runner.invoke(cli, ["-c", config_file, "spot"])
        result = runner.invoke(cli, ["-c", config_file, "status"])
        assert result.exit_code == 0, result.output
        assert "Daily closes" in result.output
        assert "$60,075.00" in result.output
        assert "alpha" in result.output

    def test_serve_uses_app_factory(self, runner, config_file, monkeypatch):
        captured = {}
        monkeypatch.setenv("BITHEDGE_ORACLE_CONFIG", config_file)
        monkeypatch.setattr("uvicorn.run", lambda app, **kw: captured.update(app=app, **kw))
        result = runner.invoke(cli, ["-c", config_file, "serve", "--port", "9001"])
        assert result.exit_code == 0, result.output
        assert captured["app"] == "bithedge_oracle.api.app:create_app"
        assert captured["factory"] is True
        assert captured["port"] == 9001
        assert captured["host"] == "0.0.0.0"


class TestConfigErrors:
    def test_missing_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["-c", str(tmp_path / "nope.yml"), "status"])
        assert result.exit_code == 2

    def test_invalid_config(self, runner, tmp_path):
        bad = tmp_path / "bad.yml"
        bad.write_text("aggregation:\n  min_sources: 0\n")
        result = runner.invoke(cli, ["-c", str(bad), "status"])
        assert result.exit_code == 2
        assert "Configuration error" in result.output
