#!/usr/bin/env python3
"""
allvideo admin CLI.

Talks to the database directly (ALLVIDEO_DATABASE_URL), so it works
without the API server running.
"""

import argparse
import asyncio
import sys
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from databases import Database
from rich.console import Console
from rich.table import Table

from api import api_keys, webhook_service
from api.database import create_database, create_tables
from api.errors import PipelineError
from api.health import get_worker_health
from api.intake import create_account
from api.job_queue import JobQueue
from api.reclaimer import reclaim_stale_jobs
from api.webhook_service import WebhookDispatcher
from config import Settings, configure_logging, load_settings

console = Console()


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def run_with_database(settings: Settings, func: Callable[[Database], Awaitable[None]]) -> None:
    """Connect, run ``func(database)``, disconnect."""

    async def runner():
        database = create_database(settings.database_url)
        await database.connect()
        try:
            await func(database)
        finally:
            await database.disconnect()

    asyncio.run(runner())


# =============================================================================
# Commands
# =============================================================================


def cmd_init_db(args, settings: Settings):
    create_tables(settings.database_url)
    console.print("[green]Database tables created.[/green]")


def cmd_account(args, settings: Settings):
    async def create(database: Database):
        account = await create_account(database, args.email, tier=args.tier, storage_limit_bytes=args.storage_limit)
        console.print("[green]Account created.[/green]")
        console.print(f"  ID: {account.id}")
        console.print(f"  Email: {account.email}")
        console.print(f"  Tier: {account.tier}")

    run_with_database(settings, create)


def cmd_key(args, settings: Settings):
    async def create(database: Database):
        permissions = {scope: True for scope in args.permissions}
        expires_at = None
        if args.expires_days:
            expires_at = datetime.now(timezone.utc) + timedelta(days=args.expires_days)
        plaintext, key = await api_keys.create_api_key(
            database,
            args.owner_id,
            args.name,
            permissions=permissions,
            rate_limit_per_minute=args.rate_limit,
            expires_at=expires_at,
        )
        console.print("[green]API key created.[/green]")
        console.print(f"  Key ID: {key.id}")
        console.print(f"  API Key: {plaintext}")
        console.print()
        console.print("[bold yellow]IMPORTANT: Save the API key - it will not be shown again![/bold yellow]")

    async def list_keys(database: Database):
        keys = await api_keys.list_api_keys(database, args.owner_id)
        if not keys:
            console.print("No API keys.")
            return
        table = Table(title="API keys")
        for column in ("ID", "Owner", "Name", "Prefix", "Permissions", "Limit/min", "Active", "Expires", "Last used"):
            table.add_column(column)
        for k in keys:
            scopes = ",".join(scope for scope, granted in k.permissions.items() if granted) or "-"
            table.add_row(
                k.id,
                k.owner_id,
                k.name,
                k.key_prefix,
                scopes,
                str(k.rate_limit_per_minute),
                "yes" if k.active else "no",
                _fmt_time(k.expires_at),
                _fmt_time(k.last_used_at),
            )
        console.print(table)

    async def revoke(database: Database):
        key = await api_keys.revoke_api_key(database, args.key_id)
        console.print(f"API key {key.id} ({key.key_prefix}...) has been revoked.")

    handlers = {"create": create, "list": list_keys, "revoke": revoke}
    run_with_database(settings, handlers[args.key_command])


def cmd_webhook(args, settings: Settings):
    async def create(database: Database):
        webhook = await webhook_service.create_webhook(database, args.owner_id, args.name, args.url, args.events)
        console.print("[green]Webhook created.[/green]")
        console.print(f"  ID: {webhook.id}")
        console.print(f"  Secret: {webhook.secret}")
        console.print()
        console.print("[bold yellow]IMPORTANT: Save the secret - it will not be shown again![/bold yellow]")

    async def list_hooks(database: Database):
        hooks = await webhook_service.list_webhooks(database, args.owner_id)
        if not hooks:
            console.print("No webhooks.")
            return
        table = Table(title="Webhooks")
        for column in ("ID", "Owner", "Name", "URL", "Events", "Active", "Failures", "Last triggered"):
            table.add_column(column)
        for w in hooks:
            table.add_row(
                w.id,
                w.owner_id,
                w.name,
                w.url,
                ", ".join(w.events),
                "yes" if w.active else "[red]no[/red]",
                str(w.failure_count),
                _fmt_time(w.last_triggered_at),
            )
        console.print(table)

    async def set_active(database: Database):
        active = args.webhook_command == "enable"
        webhook = await webhook_service.set_webhook_active(database, args.webhook_id, active)
        console.print(f"Webhook {webhook.id} {'enabled' if webhook.active else 'disabled'}.")

    handlers = {"create": create, "list": list_hooks, "enable": set_active, "disable": set_active}
    run_with_database(settings, handlers[args.webhook_command])


def cmd_reclaim_stale(args, settings: Settings):
    async def reclaim(database: Database):
        queue = JobQueue(database, settings.max_attempts, settings.stale_threshold_seconds)
        dispatcher = WebhookDispatcher(database, settings)
        outcomes = await reclaim_stale_jobs(database, queue, dispatcher, args.threshold)
        if not outcomes:
            console.print("No stale jobs.")
            return
        table = Table(title="Stale jobs")
        for column in ("Job", "Asset", "Previous worker", "Attempts", "Outcome"):
            table.add_column(column)
        for o in outcomes:
            table.add_row(
                o.job_id,
                o.media_asset_id,
                o.previous_worker_id or "-",
                str(o.attempt_count),
                "requeued" if o.requeued else "[red]failed[/red]",
            )
        console.print(table)

    run_with_database(settings, reclaim)


def cmd_health(args, settings: Settings):
    async def health(database: Database):
        queue = JobQueue(database, settings.max_attempts, settings.stale_threshold_seconds)
        report = await get_worker_health(queue)
        colour = {"healthy": "green", "degraded": "yellow"}.get(report.status, "red")
        console.print(f"Worker status: [{colour}]{report.status}[/{colour}]")
        console.print(f"  Pending jobs: {report.pending_jobs}")
        console.print(f"  Processing jobs: {report.processing_jobs}")
        console.print(f"  Active: {'yes' if report.is_active else 'no'}")
        console.print(f"  Last seen: {_fmt_time(report.last_seen)}")
        if report.error:
            console.print(f"  Error: {report.error}")

    run_with_database(settings, health)


def main():
    parser = argparse.ArgumentParser(prog="allvideo", description="allvideo admin CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # init-db
    init_parser = subparsers.add_parser("init-db", help="Create database tables (dev/test; use alembic in production)")
    init_parser.set_defaults(func=cmd_init_db)

    # account
    account_parser = subparsers.add_parser("account", help="Manage accounts")
    account_subparsers = account_parser.add_subparsers(dest="account_command", required=True)
    account_create = account_subparsers.add_parser("create", help="Create an account")
    account_create.add_argument("email", help="Account email")
    account_create.add_argument("-t", "--tier", default="free", help="Subscription tier (default: free)")
    account_create.add_argument("--storage-limit", type=positive_int, help="Storage limit in bytes")
    account_parser.set_defaults(func=cmd_account)

    # key
    key_parser = subparsers.add_parser("key", help="Manage API keys")
    key_subparsers = key_parser.add_subparsers(dest="key_command", required=True)
    key_create = key_subparsers.add_parser("create", help="Create an API key")
    key_create.add_argument("owner_id", help="Owning account ID")
    key_create.add_argument("-n", "--name", default="default", help="Key name")
    key_create.add_argument(
        "-p",
        "--permissions",
        nargs="+",
        choices=["read", "write", "delete"],
        default=["read"],
        help="Permission scopes (default: read)",
    )
    key_create.add_argument("--rate-limit", type=positive_int, default=60, help="Requests per minute (default: 60)")
    key_create.add_argument("--expires-days", type=positive_int, help="Expire the key after N days")
    key_list = key_subparsers.add_parser("list", help="List API keys")
    key_list.add_argument("--owner-id", help="Only keys of this account")
    key_revoke = key_subparsers.add_parser("revoke", help="Revoke an API key")
    key_revoke.add_argument("key_id", help="API key ID")
    key_parser.set_defaults(func=cmd_key)

    # webhook
    webhook_parser = subparsers.add_parser("webhook", help="Manage webhooks")
    webhook_subparsers = webhook_parser.add_subparsers(dest="webhook_command", required=True)
    webhook_create = webhook_subparsers.add_parser("create", help="Create a webhook")
    webhook_create.add_argument("owner_id", help="Owning account ID")
    webhook_create.add_argument("url", help="Delivery URL (http or https)")
    webhook_create.add_argument("-n", "--name", default="default", help="Webhook name")
    webhook_create.add_argument(
        "-e",
        "--events",
        nargs="+",
        default=["media.ready", "media.failed"],
        help="Event types (default: media.ready media.failed)",
    )
    webhook_list = webhook_subparsers.add_parser("list", help="List webhooks")
    webhook_list.add_argument("--owner-id", help="Only webhooks of this account")
    for action in ("enable", "disable"):
        toggle = webhook_subparsers.add_parser(action, help=f"{action.capitalize()} a webhook")
        toggle.add_argument("webhook_id", help="Webhook ID")
    webhook_parser.set_defaults(func=cmd_webhook)

    # reclaim-stale
    reclaim_parser = subparsers.add_parser("reclaim-stale", help="Requeue or fail jobs whose worker stopped responding")
    reclaim_parser.add_argument("--threshold", type=positive_int, help="Staleness threshold in seconds")
    reclaim_parser.set_defaults(func=cmd_reclaim_stale)

    # health
    health_parser = subparsers.add_parser("health", help="Show worker health")
    health_parser.set_defaults(func=cmd_health)

    args = parser.parse_args()
    settings = load_settings()
    configure_logging(settings)

    try:
        args.func(args, settings)
    except PipelineError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
