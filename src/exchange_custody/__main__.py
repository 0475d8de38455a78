"""Command line entry point: ``python -m exchange_custody <command>``."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from collections.abc import Sequence

from pydantic import ValidationError

from exchange_custody.config import Settings, get_settings
from exchange_custody.custody.crypto import generate_key
from exchange_custody.custody.wallets import WalletSecret
from exchange_custody.errors import CustodyError
from exchange_custody.scanner import CycleResult
from exchange_custody.service import CustodyService


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="exchange_custody",
        description="Multi-chain wallet custody and deposit scanner",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the deposit scanner until interrupted")

    scan_once = sub.add_parser("scan-once", help="Run a single scan cycle per chain")
    scan_once.add_argument("--chain", action="append", help="Limit to this chain (repeatable)")

    sub.add_parser("init-db", help="Create database tables (development; use alembic in production)")

    create = sub.add_parser("create-wallet", help="Generate a wallet for a user")
    create.add_argument("user_id")

    reset = sub.add_parser("reset-wallet", help="Replace a user's wallet with a new seed phrase")
    reset.add_argument("user_id")

    addresses = sub.add_parser("addresses", help="Show a user's deposit addresses")
    addresses.add_argument("user_id")

    deposits = sub.add_parser("deposits", help="List recent deposit transactions")
    deposits.add_argument("--user", dest="user_id", default=None)
    deposits.add_argument("--status", choices=["pending", "completed", "failed"], default=None)
    deposits.add_argument("--limit", type=int, default=20)

    balances = sub.add_parser("balances", help="Show a user's token balances")
    balances.add_argument("user_id")

    sub.add_parser("generate-key", help="Print a new mnemonic encryption key")
    sub.add_parser("config", help="Print effective configuration with secrets redacted")
    return parser


def _print_secret(secret: WalletSecret) -> None:
    print(f"User: {secret.user_id}")
    for chain, address in sorted(secret.addresses.items()):
        print(f"  {chain:<10} {address}")
    print()
    print("Seed phrase (shown once, store it offline):")
    print(f"  {secret.mnemonic}")
    if secret.warning:
        print()
        print(f"WARNING: {secret.warning}")


def _print_cycle(chain: str, result: CycleResult | BaseException) -> None:
    if isinstance(result, BaseException):
        print(f"{chain:<10} FAILED  {result}")
    elif result.skipped:
        print(f"{chain:<10} skipped (lease held elsewhere)")
    else:
        print(
            f"{chain:<10} events={result.events} pending={result.pending} completed={result.completed} "
            f"unknown_token={result.unknown_tokens} ignored={result.ignored} checkpoint={result.checkpoint}"
        )


async def _run_service(settings: Settings) -> None:
    service = CustodyService(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, service.request_stop)
    await service.run()


async def _dispatch(args: argparse.Namespace, settings: Settings) -> int:
    if args.command == "run":
        await _run_service(settings)
        return 0

    service = CustodyService(settings)
    await service.initialize()
    try:
        if args.command == "init-db":
            await service.db.init_schema_async()
            print("Schema created")
        else:
            await service.ensure_schema()

        if args.command == "scan-once":
            results = await service.scanner.run_once(args.chain)
            for chain, result in results.items():
                _print_cycle(chain, result)
            if any(isinstance(r, BaseException) for r in results.values()):
                return 1
        elif args.command == "create-wallet":
            _print_secret(await service.wallet_store.create_wallet(args.user_id))
        elif args.command == "reset-wallet":
            _print_secret(await service.wallet_store.reset_wallet(args.user_id))
        elif args.command == "addresses":
            for chain, address in sorted((await service.wallet_store.get_addresses(args.user_id)).items()):
                print(f"{chain:<10} {address}")
        elif args.command == "deposits":
            txs = await service.ledger.list_transactions(args.user_id, status=args.status, limit=args.limit)
            if not txs:
                print("No deposits found")
            for tx in txs:
                print(
                    f"{tx.created_at:%Y-%m-%d %H:%M:%S} {tx.chain:<10} {tx.status:<9} "
                    f"{tx.amount} {tx.token} user={tx.user_id} conf={tx.confirmations} tx={tx.tx_hash}"
                    + (f" error={tx.error}" if tx.error else "")
                )
        elif args.command == "balances":
            balances = await service.ledger.get_balances(args.user_id)
            if not balances:
                print("No balances")
            for token, amount in sorted(balances.items()):
                print(f"{token:<8} {amount}")
    finally:
        await service.close()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    if args.command == "generate-key":
        print(generate_key())
        return 0

    try:
        settings = get_settings()
        settings.validate_requirements(command=args.command)
    except (ValidationError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "config":
        print(json.dumps(settings.redacted_summary(), indent=2))
        return 0

    try:
        return asyncio.run(_dispatch(args, settings))
    except CustodyError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
