"""Click-based CLI for bithedge-oracle.

Thin wrapper around library modules. Every command delegates to
``OracleService`` or the scheduler.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timedelta

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run_async(coro):
    """Run an async coroutine from synchronous Click code."""
    return asyncio.run(coro)


def _load_config(ctx: click.Context):
    """Load config lazily, caching on first call."""
    if "config" not in ctx.obj:
        from bithedge_oracle.core import ConfigError, load_config

        try:
            ctx.obj["config"] = load_config(config_path=ctx.obj.get("config_path"))
        except ConfigError as e:
            console.print(f"[red]Configuration error:[/red] {e}")
            raise SystemExit(2) from e
    return ctx.obj["config"]


async def _create_service_async(config):
    """Build the oracle service (adapters, store, restored health) from config."""
    from bithedge_oracle.pipeline import OracleService

    return await OracleService.create(config)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )


def _fmt_usd(value: float | None) -> str:
    return f"${value:,.2f}" if value is not None else "N/A"


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    envvar="BITHEDGE_ORACLE_CONFIG",
    default=None,
    help="Path to bithedge-oracle.yml config file.",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable verbose output.",
)
@click.version_option(package_name="bithedge-oracle")
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: bool) -> None:
    """BitHedge Oracle: BTC consensus price, volatility and option premiums."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose
    ctx.obj["console"] = console
    _configure_logging(verbose)


# ---------------------------------------------------------------------------
# spot
# ---------------------------------------------------------------------------


@cli.command()
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    help="Output format.",
)
@click.pass_context
def spot(ctx: click.Context, output_format: str) -> None:
    """Run one collection cycle and show the consensus price."""
    async def _run():
        config = _load_config(ctx)
        service = await _create_service_async(config)
        try:
            consensus = await service.run_spot_cycle()
            health = service.health()
        finally:
            await service.close()

        if consensus is None:
            console.print("[red]No consensus: too few healthy sources this cycle.[/red]")
            _output_sources_table(health)
            raise SystemExit(3)

        if output_format == "json":
            click.echo(json.dumps(consensus.model_dump(mode="json"), indent=2, default=str))
            return

        table = Table(title="BTC Consensus")
        table.add_column("Metric", style="bold")
        table.add_column("Value", justify="right")
        table.add_row("Price", _fmt_usd(consensus.price))
        table.add_row("Confidence", f"{consensus.confidence:.2%}")
        table.add_row("Sources", ", ".join(sorted(consensus.contributing_sources)))
        table.add_row("Outliers", ", ".join(sorted(consensus.outliers)) or "none")
        table.add_row("Computed at", consensus.computed_at.isoformat())
        console.print(table)

    _run_async(_run())


def _output_sources_table(health) -> None:
    """Render SourceHealth snapshots as a Rich table."""
    table = Table(title="Sources")
    table.add_column("Source", style="bold")
    table.add_column("Circuit")
    table.add_column("Failures", justify="right")
    table.add_column("Weight", justify="right")
    table.add_column("Last deviation", justify="right")

    for h in health:
        style = {"closed": "green", "half_open": "yellow", "open": "red"}[h.circuit_state.value]
        table.add_row(
            h.source_id,
            f"[{style}]{h.circuit_state.value}[/{style}]",
            str(h.consecutive_failures),
            f"{h.weight:.3f}",
            f"{h.last_deviation:.4%}" if h.last_deviation is not None else "-",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# backfill
# ---------------------------------------------------------------------------


@cli.command()
@click.option(
    "--days",
    "-d",
    type=click.IntRange(min=1),
    default=None,
    help="Days of closes to fetch, ending yesterday. Default: from config.",
)
@click.pass_context
def backfill(ctx: click.Context, days: int | None) -> None:
    """Fetch historical daily closes and recompute volatility."""
    async def _run():
        config = _load_config(ctx)
        service = await _create_service_async(config)
        try:
            counts = await service.backfill(days)
        finally:
            await service.close()

        if not counts:
            console.print("[yellow]No closes fetched: every historical source failed.[/yellow]")
            raise SystemExit(3)
        for outcome, n in sorted(counts.items()):
            console.print(f"  {outcome}: {n}")

    _run_async(_run())


# ---------------------------------------------------------------------------
# volatility
# ---------------------------------------------------------------------------


@cli.command()
@click.option(
    "--window",
    "-w",
    "windows",
    type=int,
    multiple=True,
    help="Window in days (repeatable). Default: every configured window.",
)
@click.option(
    "--methodology",
    "-m",
    type=click.Choice(["log_returns", "parkinson", "ewma"]),
    default="log_returns",
    help="Volatility estimator.",
)
@click.pass_context
def volatility(ctx: click.Context, windows: tuple[int, ...], methodology: str) -> None:
    """Show annualized volatility from stored closes."""
    from bithedge_oracle.core import Methodology

    async def _run():
        config = _load_config(ctx)
        service = await _create_service_async(config)
        try:
            estimates = [
                await service.volatility.compute(w, Methodology(methodology))
                for w in (windows or config.volatility.windows)
            ]
        finally:
            await service.close()

        table = Table(title=f"Volatility ({methodology})")
        table.add_column("Window", justify="right", style="bold")
        table.add_column("Volatility", justify="right")
        table.add_column("Closes", justify="right")
        table.add_column("Method used")
        for e in estimates:
            table.add_row(
                f"{e.window_days}d",
                f"{e.value:.2%}" if e.value is not None else "[yellow]insufficient data[/yellow]",
                str(e.sample_count),
                e.effective_methodology.value if e.effective_methodology else "-",
            )
        console.print(table)

    _run_async(_run())


# ---------------------------------------------------------------------------
# premium
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--strike", "-k", type=float, default=None, help="Strike price in USD.")
@click.option(
    "--protect",
    "protected_pct",
    type=float,
    default=None,
    help="Strike as a percentage of spot (alternative to --strike).",
)
@click.option("--days", "-d", type=float, required=True, help="Days to expiry.")
@click.option(
    "--type",
    "option_type",
    type=click.Choice(["put", "call"]),
    default="put",
    help="Option type.",
)
@click.option("--amount", "-a", type=float, default=1.0, help="BTC covered.")
@click.option(
    "--methodology",
    "-m",
    type=click.Choice(["log_returns", "parkinson", "ewma"]),
    default="log_returns",
)
@click.option("--scenarios", is_flag=True, default=False, help="Show expiry scenarios.")
@click.pass_context
def premium(
    ctx: click.Context,
    strike: float | None,
    protected_pct: float | None,
    days: float,
    option_type: str,
    amount: float,
    methodology: str,
    scenarios: bool,
) -> None:
    """Quote an option premium on a fresh consensus price."""
    from bithedge_oracle.core import OracleError

    if (strike is None) == (protected_pct is None):
        raise click.UsageError("Give exactly one of --strike and --protect")

    async def _run():
        config = _load_config(ctx)
        service = await _create_service_async(config)
        try:
            await service.run_spot_cycle()
            if strike is not None:
                expiry = service.clock.now() + timedelta(days=days)
                return await service.get_premium(
                    option_type, strike, expiry,
                    amount=amount, methodology=methodology, include_scenarios=scenarios,
                )
            return await service.get_protection_quote(
                protected_pct, days, amount=amount,
                option_type=option_type, methodology=methodology,
            )
        finally:
            await service.close()

    try:
        quote = _run_async(_run())
    except OracleError as e:
        console.print(f"[red]{type(e).__name__}:[/red] {e}")
        raise SystemExit(3) from e

    _output_quote_table(quote, scenarios or protected_pct is not None)


def _output_quote_table(quote, show_scenarios: bool) -> None:
    """Render a PremiumQuote as Rich tables."""
    vol = quote.volatility_used
    table = Table(title=f"{quote.option_type.value.title()} Premium")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Spot", _fmt_usd(quote.underlying_price))
    table.add_row("Strike", _fmt_usd(quote.strike))
    table.add_row("Amount", f"{quote.amount:g} BTC")
    table.add_row("Expiry", f"{quote.time_to_expiry_years * 365:.1f} days")
    table.add_row(
        "Volatility",
        f"{vol.value:.2%} ({vol.window_days}d {vol.effective_methodology or vol.methodology})",
    )
    table.add_row("Risk-free rate", f"{quote.risk_free_rate:.2%}")
    table.add_section()
    table.add_row("Premium", _fmt_usd(quote.premium))
    table.add_row("Intrinsic value", _fmt_usd(quote.intrinsic_value))
    table.add_row("Time value", _fmt_usd(quote.time_value))
    table.add_row("Break-even", _fmt_usd(quote.break_even_price))
    table.add_row("Premium % of notional", f"{quote.premium_percentage:.2f}%")
    table.add_row("Annualized", f"{quote.annualized_premium_percentage:.2f}%")
    console.print(table)

    if show_scenarios and quote.scenarios:
        st = Table(title="Expiry Scenarios")
        st.add_column("BTC price", justify="right")
        st.add_column("Protection", justify="right")
        st.add_column("Net", justify="right")
        for s in quote.scenarios:
            color = "green" if s.net_value >= 0 else "red"
            st.add_row(
                _fmt_usd(s.price),
                _fmt_usd(s.protection_value),
                f"[{color}]{_fmt_usd(s.net_value)}[/{color}]",
            )
        console.print(st)


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


@cli.command()
@click.option(
    "--backfill/--no-backfill",
    "do_backfill",
    default=True,
    help="Backfill closes before starting the schedule.",
)
@click.pass_context
def run(ctx: click.Context, do_backfill: bool) -> None:
    """Run the polling schedule until interrupted."""
    from bithedge_oracle.pipeline import Scheduler

    async def _run():
        config = _load_config(ctx)
        service = await _create_service_async(config)
        try:
            if do_backfill:
                counts = await service.backfill()
                console.print(f"Backfill: {counts or 'no historical source available'}")
            scheduler = Scheduler(service, config.scheduler, clock=service.clock)
            console.print(
                f"Polling every [bold]{config.scheduler.spot_interval_seconds:.0f}s[/bold] "
                f"(adaptive {config.scheduler.min_spot_interval_seconds:.0f}"
                f"-{config.scheduler.max_spot_interval_seconds:.0f}s). Ctrl-C to stop."
            )
            await scheduler.run()
        finally:
            await service.close()

    try:
        _run_async(_run())
    except KeyboardInterrupt:
        console.print("Stopped.")


# ---------------------------------------------------------------------------
# compact
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_context
def compact(ctx: click.Context) -> None:
    """Apply the intraday retention tiers now."""
    async def _run():
        config = _load_config(ctx)
        service = await _create_service_async(config)
        try:
            return await service.compact()
        finally:
            await service.close()

    counts = _run_async(_run())
    for key, n in counts.items():
        console.print(f"  {key.replace('_', ' ')}: {n}")


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--host", type=str, default=None, help="Bind address. Default: from config.")
@click.option("--port", "-p", type=int, default=None, help="Port number. Default: from config.")
@click.option("--reload", is_flag=True, default=False, help="Auto-reload on code changes.")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, reload: bool) -> None:
    """Start the REST API server."""
    import uvicorn

    config = _load_config(ctx)
    host = host or config.api.host
    port = port or config.api.port
    # The factory reloads config in the server process
    if ctx.obj.get("config_path"):
        os.environ["BITHEDGE_ORACLE_CONFIG"] = ctx.obj["config_path"]

    console.print(f"Starting bithedge-oracle API on [bold]{host}:{port}[/bold]")
    console.print(f"API docs: http://{host}:{port}/docs")

    uvicorn.run(
        "bithedge_oracle.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
    )


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show source health and data coverage."""
    async def _run():
        from bithedge_oracle.core import InsufficientConsensusError

        config = _load_config(ctx)
        service = await _create_service_async(config)
        try:
            stats = await service.store.get_statistics()
            health = service.health()
            try:
                consensus = await service.get_consensus_price()
            except InsufficientConsensusError:
                consensus = None
        finally:
            await service.close()

        table = Table(title="BitHedge Oracle Status")
        table.add_column("Metric", style="bold")
        table.add_column("Value", justify="right")

        table.add_row("Database path", config.storage.sqlite_path)
        table.add_row("Asset", config.storage.asset)
        table.add_section()
        table.add_row("Daily closes", str(stats["total_closes"]))
        table.add_row(
            "Date range",
            f"{stats['earliest_close']} → {stats['latest_close']}"
            if stats["total_closes"] > 0
            else "N/A",
        )
        table.add_row("Intraday rows", str(stats["intraday_rows"]))
        table.add_row("Archived days", str(stats["archived_days"]))
        table.add_row("Volatility estimates", str(stats["volatility_estimates"]))
        table.add_section()
        table.add_row(
            "Consensus",
            f"{_fmt_usd(consensus.price)} @ {_stamp(consensus.computed_at)}"
            if consensus
            else "[yellow]none fresh[/yellow]",
        )

        console.print(table)
        _output_sources_table(health)

    _run_async(_run())


def _stamp(when: datetime) -> str:
    return when.strftime("%Y-%m-%d %H:%M:%S UTC")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
