"""Command-line interface for the CreditShaft loan engine."""
from __future__ import annotations

import argparse
import asyncio
import json
import sys

from .app import Engine
from .config import load_config
from .logging_setup import configure_logging
from .models import generate_loan_id
from .services import Result


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="creditshaft",
        description="Card pre-authorization loan lifecycle and position reconciliation",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command")

    loans_parser = sub.add_parser("loans", help="List a wallet's loans and credit summary")
    loans_parser.add_argument("wallet")

    create_parser = sub.add_parser("create", help="Record a new loan against a hold")
    create_parser.add_argument("--id", default=None, help="Loan id (generated if omitted)")
    create_parser.add_argument("--wallet", required=True)
    create_parser.add_argument("--pre-auth", required=True, dest="pre_auth")
    create_parser.add_argument("--amount", required=True, type=float)
    create_parser.add_argument("--asset", required=True)

    charge_parser = sub.add_parser("charge", help="Capture a loan's hold")
    charge_parser.add_argument("loan_id")
    charge_parser.add_argument(
        "--amount", type=int, default=None, help="Amount in cents (default: full hold)"
    )
    charge_parser.add_argument("--reason", default=None)

    release_parser = sub.add_parser("release", help="Release a loan's hold")
    release_parser.add_argument("loan_id")
    release_parser.add_argument("--reason", default=None)

    event_parser = sub.add_parser("event", help="Apply a settlement event reported by the contract")
    event_parser.add_argument("event_type", help="e.g. AutoChargeExecuted, LoanReleased, LoanLiquidated")
    event_parser.add_argument("loan_id")
    event_parser.add_argument(
        "--data", type=json.loads, default={}, help="Event data as a JSON object"
    )

    watch_parser = sub.add_parser("watch", help="Observe a wallet's on-chain position")
    watch_parser.add_argument("wallet")
    watch_parser.add_argument(
        "--seconds",
        type=float,
        default=60.0,
        help="How long to watch before exiting (default: 60)",
    )

    return parser


def _emit(result: Result) -> int:
    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.success else 1


async def _watch(engine: Engine, wallet: str, seconds: float) -> int:
    subscription = await engine.reconciler.subscribe(wallet)
    print(json.dumps({"wallet": wallet, "snapshot": subscription.current}, default=_encode))

    async def stream() -> None:
        async for snapshot in subscription:
            print(json.dumps({"wallet": wallet, "snapshot": snapshot}, default=_encode))

    try:
        await asyncio.wait_for(stream(), timeout=seconds)
    except asyncio.TimeoutError:
        pass
    finally:
        await engine.reconciler.unsubscribe(subscription)
    return 0


def _encode(value: object) -> object:
    if hasattr(value, "__dataclass_fields__"):
        return {name: getattr(value, name) for name in value.__dataclass_fields__}
    return str(value)


async def _run(args: argparse.Namespace) -> int:
    """Execute the selected command."""
    configure_logging(args.log_level)
    config = load_config(args.config)
    engine = Engine(config)

    try:
        if args.command == "loans":
            return _emit(await engine.loans.get_loans(args.wallet))
        if args.command == "create":
            payload = {
                "id": args.id or generate_loan_id(),
                "walletAddress": args.wallet,
                "preAuthId": args.pre_auth,
                "borrowAmount": args.amount,
                "asset": args.asset,
            }
            return _emit(await engine.loans.create_loan(payload))
        if args.command == "charge":
            return _emit(
                await engine.loans.charge_loan(args.loan_id, amount=args.amount, reason=args.reason)
            )
        if args.command == "release":
            return _emit(await engine.loans.release_loan(args.loan_id, reason=args.reason))
        if args.command == "event":
            payload = {"eventType": args.event_type, "loanId": args.loan_id, "data": args.data}
            return _emit(await engine.loans.apply_chain_event(payload))
        if args.command == "watch":
            return await _watch(engine, args.wallet, args.seconds)

        build_parser().print_help()
        return 1
    finally:
        await engine.close()


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    sys.exit(asyncio.run(_run(args)))
