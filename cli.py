#!/usr/bin/env python3
"""
Command-line interface for the card shop.

Usage:
    uv run python cli.py [command] [options]

Commands:
    serve           Start the API server
    add-card        Stock a new card product from a file of codes
    sweep-expired   Mark pending orders past their matching window as expired
    poll            Poll a running server until an order is settled
    test            Run the test suite

Examples:
    uv run python cli.py serve --reload
    uv run python cli.py add-card "VIP access" codes.txt --price 199
    uv run python cli.py sweep-expired
    uv run python cli.py poll C1700000000000a3f9c1 --created-at 2024-11-14T22:13:20+00:00
"""

import argparse
import logging
import subprocess
import sys
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
    datefmt="%H:%M:%S",
)


def run_add_card(title: str, codes_file: str, price: str) -> None:
    """Create a product stocked with one code per line of `codes_file`."""
    from shared.inventory import InventoryLedger

    try:
        amount = Decimal(price)
    except InvalidOperation:
        print(f"Invalid price: {price}")
        sys.exit(1)

    with open(codes_file, encoding="utf-8") as f:
        codes = [line.strip() for line in f if line.strip()]
    if not codes:
        print(f"No codes found in {codes_file}")
        sys.exit(1)

    product = InventoryLedger().add_product(title, amount, codes)
    print(f"Created product {product.id}: {product.title} ({product.available_count} codes at {product.price} USDT)")


def run_sweep() -> None:
    """Expire stale pending orders."""
    from reconciliation.engine import OrderService

    service = OrderService()
    try:
        swept = service.sweep_expired()
    finally:
        service.shutdown()
    print(f"Expired {swept} orders")


def run_poll(base_url: str, order_id: str, created_at: str, kind: str, interval: float) -> None:
    """Poll the check endpoint of a running server."""
    from reconciliation.polling import PaymentPoller, PollState

    if created_at:
        started = datetime.fromisoformat(created_at)
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
    else:
        started = datetime.now(timezone.utc)

    poller = PaymentPoller(base_url, order_id, started, kind=kind, interval=interval)
    print(f"Polling {poller.url} every {interval:g}s ({poller.remaining():.0f}s left)")
    try:
        outcome = poller.run()
    except KeyboardInterrupt:
        poller.cancel()
        print("Cancelled")
        sys.exit(130)

    if outcome.state == PollState.DELIVERED:
        print(f"Delivered: {outcome.code}")
    elif outcome.state == PollState.PAID:
        print("Paid")
    else:
        print(f"Order {order_id} {outcome.state.value} after {outcome.polls} checks")
        sys.exit(1)


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = ["uv", "run", "pytest"] + args
    subprocess.run(cmd)


def run_server(host: str, port: int, reload: bool) -> None:
    """Start the API server."""
    cmd = ["uv", "run", "uvicorn", "api.main:app", f"--host={host}", f"--port={port}"]
    if reload:
        cmd.append("--reload")

    print(f"Starting server at http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    subprocess.run(cmd)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Card Shop CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s serve --reload
  %(prog)s add-card "VIP access" codes.txt --price 199
  %(prog)s sweep-expired
  %(prog)s poll TG1700000000000b81c2e --kind subscription
  %(prog)s test -v
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    # Add-card command
    card_parser = subparsers.add_parser("add-card", help="Stock a new card product")
    card_parser.add_argument("title", help="Product title")
    card_parser.add_argument("codes_file", help="File with one code per line")
    card_parser.add_argument("--price", default="199", help="Unit price in USDT")

    # Sweep command
    subparsers.add_parser("sweep-expired", help="Expire pending orders past their window")

    # Poll command
    poll_parser = subparsers.add_parser("poll", help="Poll an order until it is settled")
    poll_parser.add_argument("order_id", help="Order to poll")
    poll_parser.add_argument("--base-url", default="http://127.0.0.1:8000", help="Server base URL")
    poll_parser.add_argument("--created-at", default="", help="Order creation time (ISO 8601); defaults to now")
    poll_parser.add_argument("--kind", choices=["card", "subscription"], default="card", help="Order kind")
    poll_parser.add_argument("--interval", type=float, default=15.0, help="Seconds between checks")

    # Test command
    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs="*",
        default=[],
        help="Arguments to pass to pytest",
    )

    args = parser.parse_args()

    if args.command == "serve":
        run_server(args.host, args.port, args.reload)
    elif args.command == "add-card":
        run_add_card(args.title, args.codes_file, args.price)
    elif args.command == "sweep-expired":
        run_sweep()
    elif args.command == "poll":
        run_poll(args.base_url, args.order_id, args.created_at, args.kind, args.interval)
    elif args.command == "test":
        run_tests(args.pytest_args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
