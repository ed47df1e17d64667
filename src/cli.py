"""
Accrual Ledger CLI

Commands:
  serve       - Run the HTTP service
  config      - Show the effective ledger configuration
  provider    - Show a provider from the persisted ledger
  subscriber  - Show a subscriber from the persisted ledger
  events      - List recent committed events
  simulate    - Run a one-period billing walkthrough in memory
"""

import argparse
import json
import os
import sys


def _open_ledger(args):
    """Load the persisted ledger named by --database or DATABASE_URL."""
    from accrual.config import LedgerConfig
    from accrual.ledger import AccrualLedger
    from persistence.store import LedgerStore

    database_url = args.database or os.environ.get("DATABASE_URL")
    if not database_url:
        print("Error: --database or DATABASE_URL required")
        sys.exit(1)

    store = LedgerStore.from_url(database_url)
    return AccrualLedger(config=LedgerConfig.from_env(), store=store), store


def cmd_serve(args):
    """Run the HTTP service."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Accrual Ledger on {host}:{port}")

    uvicorn.run(
        "api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        # Single process: every worker would hold its own in-memory ledger
        workers=1,
    )


def cmd_config(args):
    """Show the effective ledger configuration."""
    from accrual.config import LedgerConfig

    try:
        config = LedgerConfig.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}")
        sys.exit(1)

    print("Accrual Ledger Configuration")
    print("=" * 40)
    for key, value in config.to_dict().items():
        print(f"{key}: {value}")


def cmd_provider(args):
    """Show a provider."""
    from accrual.errors import LedgerError

    ledger, _ = _open_ledger(args)
    try:
        provider = ledger.get_provider_state(args.provider_id)
        print(f"Provider {provider.provider_id}")
        print(f"  Owner: {provider.owner}")
        print(f"  Active: {'Yes' if ledger.is_provider_active(provider.provider_id) else 'No'}")
        print(f"  Fee: {provider.fee}")
        print(f"  Subscribers: {provider.subscriber_count}")
        print(f"  Settled balance: {provider.balance}")
        print(f"  Pending earnings: {ledger.get_provider_earnings(provider.provider_id)}")
        print(f"  Last settled: {provider.last_settled}")
    except LedgerError as e:
        print(f"Error: {e.code}: {e}")
        sys.exit(1)


def cmd_subscriber(args):
    """Show a subscriber."""
    from accrual.errors import LedgerError

    ledger, _ = _open_ledger(args)
    try:
        subscriber = ledger.get_subscriber_state(args.subscriber_id)
        print(f"Subscriber {subscriber.subscriber_id}")
        print(f"  Owner: {subscriber.owner}")
        print(f"  Plan: {subscriber.plan.value}")
        print(f"  Providers: {', '.join(str(p) for p in subscriber.provider_ids)}")
        print(f"  Deposited: {subscriber.balance}")
        print(f"  Live balance: {ledger.get_subscriber_live_balance(subscriber.subscriber_id)}")
        print(f"  Paused: {subscriber.paused_date or 'No'}")
    except LedgerError as e:
        print(f"Error: {e.code}: {e}")
        sys.exit(1)


def cmd_events(args):
    """List recent committed events."""
    _, store = _open_ledger(args)
    for record in store.events.list_recent(limit=args.limit, event=args.event):
        print(json.dumps(record.to_dict(), sort_keys=True))


def cmd_simulate(args):
    """Walk three providers and one subscriber through a billing period."""
    from accrual.clock import ManualClock
    from accrual.config import LedgerConfig
    from accrual.errors import LedgerError
    from accrual.ledger import AccrualLedger
    from custody.transfer import InMemoryTreasury

    config = LedgerConfig(min_fee=1)
    clock = ManualClock(start=1_700_000_000)
    treasury = InMemoryTreasury()
    treasury.fund("subscriber", args.deposit)
    ledger = AccrualLedger(config=config, clock=clock, transfer=treasury)

    provider_ids = [
        ledger.register_provider(f"provider-{i}", f"sim-key-{i}", args.fee)
        for i in range(1, 4)
    ]
    print(f"Registered providers {provider_ids} at fee {args.fee}")

    try:
        subscriber_id = ledger.register_subscriber("subscriber", args.deposit, "BASIC", provider_ids)
    except LedgerError as e:
        print(f"Subscriber rejected: {e.code}: {e}")
        sys.exit(1)
    print(f"Subscriber {subscriber_id} deposited {args.deposit}")

    clock.advance(config.billing_period_seconds * args.periods)
    print(f"Advanced {args.periods} billing period(s)")

    for provider_id in provider_ids:
        print(f"  Provider {provider_id} pending: {ledger.get_provider_earnings(provider_id)}")
    print(f"  Subscriber live balance: {ledger.get_subscriber_live_balance(subscriber_id)}")

    for i, provider_id in enumerate(provider_ids, start=1):
        try:
            amount = ledger.withdraw_provider_earnings(provider_id, f"provider-{i}")
        except LedgerError as e:
            print(f"  Provider {provider_id} withdrawal failed: {e.code}: {e}")
            continue
        print(f"  Provider {provider_id} withdrew {amount}")
    print(f"Custody balance: {treasury.custody_balance}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Accrual Ledger - Multi-tenant accrual billing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")

    # config
    subparsers.add_parser("config", help="Show configuration")

    # provider
    provider_parser = subparsers.add_parser("provider", help="Show a provider")
    provider_parser.add_argument("provider_id", type=int)
    provider_parser.add_argument("--database", help="SQLite URL (sqlite:///path)")

    # subscriber
    subscriber_parser = subparsers.add_parser("subscriber", help="Show a subscriber")
    subscriber_parser.add_argument("subscriber_id", type=int)
    subscriber_parser.add_argument("--database", help="SQLite URL (sqlite:///path)")

    # events
    events_parser = subparsers.add_parser("events", help="List recent events")
    events_parser.add_argument("--database", help="SQLite URL (sqlite:///path)")
    events_parser.add_argument("--limit", type=int, default=20)
    events_parser.add_argument("--event", help="Filter by event name")

    # simulate
    simulate_parser = subparsers.add_parser("simulate", help="In-memory billing walkthrough")
    simulate_parser.add_argument("--fee", type=int, default=100)
    simulate_parser.add_argument("--deposit", type=int, default=600)
    simulate_parser.add_argument("--periods", type=int, default=1)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "config":
        cmd_config(args)
    elif args.command == "provider":
        cmd_provider(args)
    elif args.command == "subscriber":
        cmd_subscriber(args)
    elif args.command == "events":
        cmd_events(args)
    elif args.command == "simulate":
        cmd_simulate(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
