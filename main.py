#!/usr/bin/env python3
"""
Trailing Stop Engine - Main Entry Point

Usage:
    Keeper:
        python main.py --run                      Start the keeper loop
        python main.py --check ID [ID ...]        List ids due for update
        python main.py --cycle ID [ID ...]        Run one update cycle

    Administration:
        python main.py --configure ID --oracle ETH/USDT --stop 1800.5 \\
                       --distance 200 --frequency 3600
        python main.py --pause --caller admin [--reason "..."]
        python main.py --unpause --caller admin
        python main.py --status                   Show configured orders

    Demo:
        python main.py --simulate                 In-memory configure/update/fill run
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv
from rich.table import Table

# Load environment variables before settings are read
load_dotenv()

from automation.scheduler import AutomationScheduler
from core.config import Settings, load_settings
from core.engine import TrailingStopEngine
from core.event_bus import EventBus
from core.fixed_point import from_fixed, to_fixed
from core.logger import console, get_logger, setup_logger
from core.state import CycleResult, CycleStatus
from execution.custody import InMemoryCustody
from execution.gateway import ExecutionGateway
from execution.swap_venue import FixedRateVenue
from risk.circuit_breaker import CircuitBreaker, GuardedOperations
from sensors.price_feed import ExchangePriceFeed, HttpPriceFeed, PriceFeed, StaticPriceFeed
from storage.audit_log import AuditLog
from storage.registry import InMemoryRegistry, SqlRegistry, TrailingStopRegistry
from storage.state_persistence import StatePersistence

log = get_logger("main")


def build_feed(settings: Settings) -> PriceFeed:
    """Price feed selected in settings."""
    feed = settings.feed
    if feed.kind == "http":
        if not feed.http_url:
            raise ValueError("feed.kind is 'http' but feed.http_url is empty")
        return HttpPriceFeed(feed.http_url, timeout=settings.engine.oracle_timeout_seconds)
    if feed.kind == "exchange":
        return ExchangePriceFeed(feed.exchange_id, feed_decimals=feed.feed_decimals)
    raise ValueError(f"Unknown feed kind {feed.kind!r}")


def build_operations(
    settings: Settings,
    registry: TrailingStopRegistry,
    feed: PriceFeed,
    custody: InMemoryCustody | None = None,
    clock=None,
) -> GuardedOperations:
    """Wire engine, gateway, circuit breaker and audit log on one event bus."""
    events = EventBus()
    AuditLog(settings.storage.audit_dir).attach(events)

    engine = TrailingStopEngine(registry, feed, events, settings.engine, clock=clock)
    gateway = ExecutionGateway(
        custody or InMemoryCustody(), engine, events=events, settings=settings.execution
    )
    breaker = CircuitBreaker(
        settings.owner, events, store=StatePersistence(settings.storage.state_file)
    )
    return GuardedOperations(engine, gateway, breaker)


def print_results(results: list[CycleResult]) -> None:
    """Render a cycle summary."""
    table = Table(title="Cycle results")
    table.add_column("Order")
    table.add_column("Status")
    table.add_column("Error")
    table.add_column("Stop price", justify="right")
    table.add_column("Detail")

    styles = {CycleStatus.SUCCESS: "success", CycleStatus.ERROR: "error", CycleStatus.SKIPPED: "warning"}
    for r in results:
        table.add_row(
            r.order_id[:10] + "..." + r.order_id[-6:],
            f"[{styles[r.status]}]{r.status.value}[/]",
            r.error.value if r.error else "",
            str(from_fixed(r.stop_price)) if r.stop_price is not None else "",
            r.detail,
        )
    console.print(table)


def show_status(settings: Settings, registry: TrailingStopRegistry) -> None:
    store = StatePersistence(settings.storage.state_file)
    breaker = CircuitBreaker(settings.owner, store=store)
    if breaker.paused:
        console.print(f"[paused] PAUSED [/] {breaker.reason}")
    else:
        console.print("[success]Active[/]")

    heartbeat = store.load_cycle()
    if heartbeat:
        console.print(
            f"Keeper cycle #{heartbeat['cycle']} at {heartbeat['written_at']}: {heartbeat['summary']}"
        )
    else:
        console.print("[warning]Keeper has not completed a cycle[/]")

    table = Table(title="Trailing stops")
    table.add_column("Order")
    table.add_column("Oracle")
    table.add_column("Stop price", justify="right")
    table.add_column("Distance", justify="right")
    table.add_column("Every", justify="right")
    table.add_column("Next update", justify="right")

    for order_id in registry.list_ids():
        config = registry.get(order_id)
        if config is None:
            continue
        table.add_row(
            order_id,
            config.oracle_ref,
            str(from_fixed(config.current_stop_price)),
            f"{config.trailing_distance_bps} bps",
            f"{config.update_frequency}s",
            str(config.next_update_at),
        )
    console.print(table)


async def run_simulation(settings: Settings) -> bool:
    """
    End-to-end demo on in-memory collaborators with a manual clock.

    configure -> update after a rally -> fill below the stop.
    """
    now = [1_700_000_000]
    clock = lambda: now[0]  # noqa: E731

    feed = StaticPriceFeed(feed_decimals=8, clock=clock)
    custody = InMemoryCustody()
    ops = build_operations(settings, InMemoryRegistry(), feed, custody, clock=clock)

    venue = FixedRateVenue(custody, name="demo")
    ops.gateway.register_venue("demo", venue)

    order_id = "0x" + "ab" * 32
    maker = "maker"
    custody.mint("WETH", maker, 10 ** 18)
    custody.approve("WETH", maker, ops.gateway.account, 10 ** 18)
    custody.mint("USDC", venue.account, 10_000 * 10 ** 6)

    configured = await ops.configure(
        settings.owner, order_id, "ETH/USD", to_fixed(1000), 200, 3600
    )
    console.print(f"configure: {configured.to_dict()}")

    now[0] += 3601
    feed.set_price("ETH/USD", to_fixed(1200, 8))
    scheduler = AutomationScheduler(ops, settings.scheduler)
    print_results(await scheduler.run_cycle([order_id]))

    # Market drops to 1170; venue pays 1170 USDC per WETH
    venue.set_rate("WETH", "USDC", 1170 * 10 ** 6, 10 ** 18)
    filled = await ops.fill(
        order_id,
        observed_price=to_fixed(1170),
        maker=maker,
        maker_asset="WETH",
        taker_asset="USDC",
        making_amount=10 ** 18,
        min_acceptable_output=1150 * 10 ** 6,
        swap_venue_ref="demo",
    )
    console.print(f"fill: {filled.to_dict()}")
    console.print(f"balances: {custody.balances()}")
    return filled.ok


async def run_keeper(settings: Settings) -> None:
    registry = SqlRegistry(settings.storage.db_path)
    ops = build_operations(settings, registry, build_feed(settings))
    scheduler = AutomationScheduler(ops, settings.scheduler, store=ops.breaker.store)
    try:
        await scheduler.run()
    finally:
        scheduler.stop()


async def run_admin(args: argparse.Namespace, settings: Settings) -> bool:
    registry = SqlRegistry(settings.storage.db_path)
    needs_feed = bool(args.cycle)
    feed = build_feed(settings) if needs_feed else StaticPriceFeed()
    ops = build_operations(settings, registry, feed)
    caller = args.caller or settings.owner

    if args.configure:
        if not (args.oracle and args.stop and args.distance is not None and args.frequency is not None):
            console.print("[error]--configure needs --oracle, --stop, --distance and --frequency[/]")
            return False
        outcome = await ops.configure(
            caller, args.configure, args.oracle, to_fixed(args.stop), args.distance, args.frequency
        )
        console.print(outcome.to_dict())
        return outcome.ok

    if args.pause:
        outcome = await ops.breaker.pause(caller, args.reason or "")
        console.print(outcome.to_dict())
        return outcome.ok

    if args.unpause:
        outcome = await ops.breaker.unpause(caller)
        console.print(outcome.to_dict())
        return outcome.ok

    scheduler = AutomationScheduler(ops, settings.scheduler)

    if args.check:
        for order_id in scheduler.check_due(args.check):
            console.print(order_id)
        return True

    if args.cycle:
        results = await scheduler.run_cycle(args.cycle)
        print_results(results)
        return all(r.status != CycleStatus.ERROR for r in results)

    return True


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Trailing Stop Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("--config", type=Path, default=None, help="Settings YAML file")
    parser.add_argument("--run", action="store_true", help="Start the keeper loop")
    parser.add_argument("--check", nargs="+", metavar="ID", help="List ids due for update")
    parser.add_argument("--cycle", nargs="+", metavar="ID", help="Run one update cycle")
    parser.add_argument("--status", action="store_true", help="Show configured orders")
    parser.add_argument("--simulate", action="store_true", help="Run the in-memory demo")

    parser.add_argument("--configure", metavar="ID", help="Configure a trailing stop")
    parser.add_argument("--oracle", help="Oracle reference for --configure")
    parser.add_argument("--stop", help="Initial stop price (decimal) for --configure")
    parser.add_argument("--distance", type=int, help="Trailing distance in bps for --configure")
    parser.add_argument("--frequency", type=int, help="Update frequency in seconds for --configure")

    parser.add_argument("--pause", action="store_true", help="Pause updates and executions")
    parser.add_argument("--unpause", action="store_true", help="Resume updates and executions")
    parser.add_argument("--reason", help="Reason recorded with --pause")
    parser.add_argument("--caller", help="Identity used for authorization (default: owner)")

    args = parser.parse_args()

    has_cmd = any([args.run, args.check, args.cycle, args.status, args.simulate,
                   args.configure, args.pause, args.unpause])
    if not has_cmd:
        parser.print_help()
        sys.exit(0)

    settings = load_settings(args.config)
    setup_logger(
        log_file=settings.logging.file,
        level=settings.logging.level,
        rotation=settings.logging.rotation,
        retention=settings.logging.retention,
        json_file=settings.logging.json_file,
    )

    try:
        if args.run:
            asyncio.run(run_keeper(settings))
            sys.exit(0)

        if args.status:
            show_status(settings, SqlRegistry(settings.storage.db_path))
            sys.exit(0)

        if args.simulate:
            success = asyncio.run(run_simulation(settings))
        else:
            success = asyncio.run(run_admin(args, settings))

        sys.exit(0 if success else 1)

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)

    except Exception as e:
        log.exception(f"Fatal error: {e}")
        console.print(f"[error]Fatal error: {e}[/]")
        sys.exit(1)


if __name__ == "__main__":
    main()
