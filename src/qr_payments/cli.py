#!/usr/bin/env python3
"""Command-line interface for gateway administration.

Usage:
    qr-payments config show fastpay
    qr-payments config set fastpay secret_key s3cr3t
    qr-payments config from-env click_pass
    qr-payments config test payme_qr
    qr-payments status fastpay
    qr-payments transactions fastpay --status failed --start 2026-10-01
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timedelta
from typing import Any, Optional

from .admin import CredentialAdmin
from .database import DatabaseManager, TransactionFilters, TransactionRepository
from .exceptions import QRPaymentsError
from .gateways import GatewayKind

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

GATEWAY_CHOICES = [kind.value for kind in GatewayKind]


def parse_datetime(dt_string: str) -> datetime:
    """Parse ``YYYY-MM-DD`` or ``YYYY-MM-DDTHH:MM:SS``.

    Raises:
        ValueError: If the string cannot be parsed.
    """
    for fmt in ("%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d"):
        try:
            return datetime.strptime(dt_string, fmt)
        except ValueError:
            continue
    raise ValueError(
        f"Unable to parse datetime: {dt_string}. "
        f"Expected formats: YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS"
    )


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _config_command(admin: CredentialAdmin, args: argparse.Namespace) -> int:
    action = args.config_command
    if action == "show":
        _print({
            "config": await admin.list_config(),
            "validation": (await admin.store.validate()).to_dict(),
        })
        return 0
    if action == "set":
        encrypt = None if args.encrypt is None else args.encrypt == "yes"
        await admin.set_config(args.key, args.value, args.description, encrypt)
        logger.info(f"{args.gateway}.{args.key} updated")
        return 0
    if action == "reset":
        _print(await admin.reset_to_defaults())
        return 0
    if action == "validate":
        validation = await admin.validate()
        _print(validation.to_dict())
        return 0 if validation.is_valid else 1
    if action == "test":
        outcome = await admin.test_config()
        _print(outcome)
        return 0 if outcome["success"] else 1
    if action == "from-env":
        written = await admin.setup_from_env()
        _print({"written": written})
        return 0 if written else 1
    return 1


async def run_async(args: argparse.Namespace, database_url: Optional[str] = None) -> int:
    """Run a parsed command against the configured database.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    manager = DatabaseManager(database_url)
    await manager.initialize(create_tables=True)
    try:
        kind = GatewayKind(args.gateway)
        if args.command == "config":
            return await _config_command(CredentialAdmin(manager.session_factory, kind), args)

        if args.command == "status":
            _print(await CredentialAdmin(manager.session_factory, kind).status())
            return 0

        if args.command == "transactions":
            filters = TransactionFilters(
                gateway=kind.value,
                status=args.status,
                employee_id=args.employee,
                terminal_id=args.terminal,
                start_date=parse_datetime(args.start) if args.start else None,
                end_date=parse_datetime(args.end) if args.end else None,
                page=args.page,
                limit=args.limit,
            )
            if filters.end_date and args.end and "T" not in args.end:
                filters.end_date = filters.end_date + timedelta(days=1) - timedelta(seconds=1)
            async with manager.session() as session:
                items, total = await TransactionRepository(session).list(filters)
                _print({"total": total, "transactions": [t.to_dict() for t in items]})
            return 0
        return 1
    except QRPaymentsError as e:
        logger.error(f"{e.error_code}: {e.message}")
        return 2
    finally:
        await manager.shutdown()


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="qr-payments",
        description="Administer QR/OTP wallet gateway credentials and inspect transactions.",
    )
    parser.add_argument(
        "--database-url",
        help="Database URL (default: DATABASE_URL environment variable)",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    config_parser = subparsers.add_parser("config", help="Manage gateway credentials")
    config_sub = config_parser.add_subparsers(dest="config_command", help="Config actions")

    for name, help_text in (
        ("show", "List configuration with secrets masked"),
        ("reset", "Reset configuration to defaults"),
        ("validate", "Check required keys"),
        ("test", "Load credentials and sign a test header"),
        ("from-env", "Import {PREFIX}_{KEY} environment variables"),
    ):
        action_parser = config_sub.add_parser(name, help=help_text)
        action_parser.add_argument("gateway", choices=GATEWAY_CHOICES)

    set_parser = config_sub.add_parser("set", help="Set one configuration key")
    set_parser.add_argument("gateway", choices=GATEWAY_CHOICES)
    set_parser.add_argument("key")
    set_parser.add_argument("value")
    set_parser.add_argument("--description", "-d")
    set_parser.add_argument(
        "--encrypt",
        choices=["yes", "no"],
        help="Store encrypted (default: yes for secret keys)",
    )

    status_parser = subparsers.add_parser("status", help="Configuration and 24h statistics")
    status_parser.add_argument("gateway", choices=GATEWAY_CHOICES)

    tx_parser = subparsers.add_parser("transactions", help="List transactions")
    tx_parser.add_argument("gateway", choices=GATEWAY_CHOICES)
    tx_parser.add_argument("--status", choices=["pending", "processing", "success", "failed", "reversed"])
    tx_parser.add_argument("--employee")
    tx_parser.add_argument("--terminal")
    tx_parser.add_argument("--start", "-s", help="Start date/time (YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS)")
    tx_parser.add_argument("--end", "-e", help="End date/time (YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS)")
    tx_parser.add_argument("--page", type=int, default=1)
    tx_parser.add_argument("--limit", type=int, default=20)

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command or (parsed_args.command == "config" and not parsed_args.config_command):
        parser.print_help()
        return 1

    try:
        if parsed_args.command == "transactions":
            for value in (parsed_args.start, parsed_args.end):
                if value:
                    parse_datetime(value)
    except ValueError as e:
        logger.error(str(e))
        return 1

    return asyncio.run(run_async(parsed_args, parsed_args.database_url))


if __name__ == "__main__":
    sys.exit(main())
