"""Reconciler Command Line Interface.

Provides operational tools for:
- Schema creation
- Wallet balance queries
- Audit trail inspection
- Re-running a saved payload through reconciliation

Usage:
    python -m payment_reconciler.cli init-db
    python -m payment_reconciler.cli balance --user-id U
    python -m payment_reconciler.cli events --record-id R --limit 20
    python -m payment_reconciler.cli reconcile --file payload.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Callable, Coroutine

from sqlalchemy import select

from payment_reconciler.config import Settings, configure_logging, get_settings
from payment_reconciler.database import create_schema, create_session_factory, get_engine
from payment_reconciler.gateway import PayPalGateway
from payment_reconciler.models import PaymentEvent
from payment_reconciler.services import (
    LedgerService,
    NotificationDispatcher,
    ReconciliationService,
)


class ReconcilerCli:
    """Reconciler Command Line Interface."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m payment_reconciler.cli",
            description="Payment reconciler operational tools",
        )
        parser.add_argument(
            "--database-url",
            type=str,
            help="Database URL (default: $DATABASE_URL)",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # init-db command
        subparsers.add_parser(
            "init-db",
            help="Create all tables that do not exist yet",
        )

        # balance command
        balance = subparsers.add_parser(
            "balance",
            help="Query a user's wallet balance",
        )
        balance.add_argument(
            "--user-id",
            type=str,
            required=True,
            help="Wallet owner",
        )

        # events command
        events = subparsers.add_parser(
            "events",
            help="List audited inbound events, newest first",
        )
        events.add_argument(
            "--record-id",
            type=str,
            help="Only events resolved to this payment or deposit",
        )
        events.add_argument(
            "--limit",
            type=int,
            default=20,
            help="Maximum events to list",
        )

        # reconcile command
        reconcile = subparsers.add_parser(
            "reconcile",
            help="Run a saved webhook or action payload through reconciliation",
        )
        reconcile.add_argument(
            "--file",
            type=argparse.FileType("r"),
            required=True,
            help="JSON payload file ('-' for stdin)",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        settings = self.settings or get_settings()
        configure_logging(settings.log_level)
        database_url = parsed.database_url or settings.database_url

        # Dispatch to command handler
        handlers: dict[str, Callable[..., Coroutine[Any, Any, int]]] = {
            "init-db": self._cmd_init_db,
            "balance": self._cmd_balance,
            "events": self._cmd_events,
            "reconcile": self._cmd_reconcile,
        }

        handler = handlers.get(parsed.command)
        if handler:
            return asyncio.run(self._with_engine(handler, parsed, settings, database_url))

        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return 1

    async def _with_engine(
        self,
        handler: Callable[..., Coroutine[Any, Any, int]],
        args: argparse.Namespace,
        settings: Settings,
        database_url: str,
    ) -> int:
        engine = get_engine(database_url)
        try:
            return await handler(args, settings, engine)
        finally:
            await engine.dispose()

    async def _cmd_init_db(self, args: argparse.Namespace, settings: Settings, engine: Any) -> int:
        """Create the schema."""
        await create_schema(engine)
        print("Schema ready.")
        return 0

    async def _cmd_balance(self, args: argparse.Namespace, settings: Settings, engine: Any) -> int:
        """Print a wallet balance."""
        async with create_session_factory(engine)() as session:
            balance = await LedgerService(session).get_balance(args.user_id)
        print(f"User: {args.user_id}")
        print(f"  Balance: {balance:,.2f}")
        return 0

    async def _cmd_events(self, args: argparse.Namespace, settings: Settings, engine: Any) -> int:
        """Print audited events."""
        query = select(PaymentEvent).order_by(PaymentEvent.created_at.desc()).limit(args.limit)
        if args.record_id:
            query = query.where(PaymentEvent.record_id == args.record_id)

        async with create_session_factory(engine)() as session:
            rows = (await session.execute(query)).scalars().all()

        if not rows:
            print("No events.")
            return 0
        for row in rows:
            print(
                f"{row.created_at.isoformat() if row.created_at else '-'} | "
                f"{row.event_kind:<22} | {row.gateway_event_type or '-':<28} | "
                f"{row.outcome:<18} | {row.record_type or '-'} {row.record_id or ''}"
            )
        return 0

    async def _cmd_reconcile(self, args: argparse.Namespace, settings: Settings, engine: Any) -> int:
        """Reconcile one payload and print the response."""
        try:
            payload = json.load(args.file)
        except json.JSONDecodeError as e:
            print(f"Invalid JSON: {e}", file=sys.stderr)
            return 1

        session_factory = create_session_factory(engine)
        gateway_config = settings.gateway_config()
        service = ReconciliationService(
            session_factory,
            PayPalGateway(gateway_config),
            NotificationDispatcher(settings.notification_config(), session_factory),
            currency=gateway_config.currency,
            site_url=gateway_config.site_url,
        )
        result = await service.handle(payload)

        print(json.dumps({"status": result.status_code, "outcome": result.outcome.value, "body": result.body}, indent=2))
        return 0 if result.status_code < 500 else 2


def main() -> int:
    """CLI entry point."""
    return ReconcilerCli().run()


if __name__ == "__main__":
    sys.exit(main())
