# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the bulk mail queue.

Usage:
    bulk-mail-queue serve --port 8000
    bulk-mail-queue provider
    bulk-mail-queue send recipients.csv --subject "Your Certificate" --body "Attached."
    bulk-mail-queue check-limit 203.0.113.7 --category email

Every command accepts ``--config`` pointing at an INI file; otherwise
``BMQ_CONFIG`` or ``config.ini`` is used, with ``BMQ_*`` environment
variables as fallbacks.

The ``send`` command reads a CSV with an ``email`` column (and optional
``name``, ``subject`` and ``html`` columns), queues one message per row and
shows live progress until the queue drains. It exits with status 1 when
any message failed permanently.
"""

from __future__ import annotations

import asyncio
import csv
import json
import sys
from pathlib import Path
from typing import Any, Optional

import click
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeRemainingColumn
from rich.table import Table

from .config_loader import Settings, load_settings
from .delivery_queue import DeliveryQueueManager
from .errors import BulkMailError
from .logger import configure_logging
from .models import BulkProgress, DeliveryStatus
from .providers import get_email_provider, provider_info
from .rate_limit import RateLimiter, build_key

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, indent=2, default=str))


def read_recipients(csv_path: Path) -> list[dict[str, str]]:
    """Read recipient rows from ``csv_path``.

    Column names are matched case-insensitively; rows without an email are
    skipped.

    Raises:
        click.BadParameter: If the file has no ``email`` column.
    """
    with csv_path.open(newline="", encoding="utf-8-sig") as fh:
        reader = csv.DictReader(fh)
        fields = {name.strip().lower(): name for name in (reader.fieldnames or [])}
        if "email" not in fields:
            raise click.BadParameter(f"{csv_path} has no 'email' column", param_hint="CSV")
        rows = []
        for row in reader:
            normalized = {key: (row.get(original) or "").strip() for key, original in fields.items()}
            if normalized["email"]:
                rows.append(normalized)
    return rows


def build_messages(
    rows: list[dict[str, str]],
    *,
    subject: str,
    body: str,
    html: bool,
    sender: str | None,
) -> list[dict[str, Any]]:
    """Turn CSV rows into queue payloads.

    ``{name}`` in the subject or body is replaced with the row's name.
    """
    messages = []
    for row in rows:
        name = row.get("name") or ""
        row_subject = (row.get("subject") or subject).replace("{name}", name)
        text = body.replace("{name}", name)
        message: dict[str, Any] = {"to": row["email"], "subject": row_subject}
        if sender:
            message["from"] = sender
        row_html = row.get("html")
        if row_html:
            message["html"] = row_html
            message["text"] = text
        elif html:
            message["html"] = text
        else:
            message["text"] = text
        messages.append(message)
    return messages


def _load(ctx: click.Context) -> Settings:
    try:
        return load_settings(ctx.obj.get("config"))
    except (FileNotFoundError, BulkMailError) as exc:
        print_error(str(exc))
        sys.exit(2)


@click.group()
@click.version_option(package_name="bulk-mail-queue")
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Path to config.ini (default: $BMQ_CONFIG or config.ini).")
@click.option("--log-level", default=None, help="Logging level (default: $BMQ_LOG_LEVEL or INFO).")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], log_level: Optional[str]) -> None:
    """bulk-mail-queue: rate-limited bulk email delivery."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = config_path
    configure_logging(log_level)


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default: from config).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default: from config).")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development.")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int], reload: bool) -> None:
    """Run the HTTP API with uvicorn."""
    import os

    import uvicorn

    settings = _load(ctx)
    host = host or settings.server.host
    port = port or settings.server.port
    if ctx.obj.get("config"):
        os.environ["BMQ_CONFIG"] = ctx.obj["config"]

    console.print("\n[bold cyan]Starting bulk mail queue[/bold cyan]")
    console.print(f"  Listen:  {host}:{port}")
    console.print(f"  Sender:  {settings.email.email_from}")
    console.print()

    uvicorn.run("bulk_mail_queue.server:app", host=host, port=port, reload=reload, log_level="info")


@main.command("provider")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def provider_cmd(ctx: click.Context, as_json: bool) -> None:
    """Show which delivery provider is configured."""
    info = provider_info(_load(ctx))
    if as_json:
        print_json(info)
        return

    table = Table(title="Email Provider")
    table.add_column("Name", style="cyan")
    table.add_column("Configured", justify="center")
    table.add_column("Rate limit", justify="right")
    rate = info.get("rate_limit")
    table.add_row(
        info["name"],
        "[green]yes[/green]" if info["configured"] else "[red]no[/red]",
        f"{rate['limit']}/{rate['window']}" if rate else "-",
    )
    console.print(table)


@main.command("send")
@click.argument("csv_path", metavar="CSV", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--subject", "-s", required=True, help="Subject line; {name} is replaced per row.")
@click.option("--body", "-b", required=True, help="Message body; {name} is replaced per row.")
@click.option("--html", "as_html", is_flag=True, help="Send the body as HTML.")
@click.option("--sender-name", default=None, help="Display name for the From header.")
@click.pass_context
def send(ctx: click.Context, csv_path: Path, subject: str, body: str, as_html: bool,
         sender_name: Optional[str]) -> None:
    """Queue one message per CSV row and wait for delivery."""
    settings = _load(ctx)
    rows = read_recipients(csv_path)
    if not rows:
        print_error(f"No recipients found in {csv_path}")
        sys.exit(1)

    sender = f"{sender_name} <{settings.email.email_from}>" if sender_name else None
    messages = build_messages(rows, subject=subject, body=body, html=as_html, sender=sender)

    try:
        provider = get_email_provider(settings)
    except BulkMailError as exc:
        print_error(str(exc))
        sys.exit(1)

    queue = run_async(_deliver(settings, provider, messages))

    failed = [item for item in queue.items if item.status is DeliveryStatus.FAILED]
    print_success(f"Sent {queue.processed} of {len(queue)} message(s) via {provider.name}")
    if failed:
        table = Table(title="Failed deliveries")
        table.add_column("Recipient", style="cyan")
        table.add_column("Attempts", justify="right")
        table.add_column("Error")
        for item in failed:
            table.add_row(item.to, str(item.attempts), item.last_error or "")
        err_console.print(table)
        sys.exit(1)


async def _deliver(settings: Settings, provider, messages: list[dict[str, Any]]) -> DeliveryQueueManager:
    queue = DeliveryQueueManager(
        provider,
        default_sender=settings.email.email_from,
        log_delivery_activity=settings.email.log_delivery_activity,
    )
    queue.add_items(messages)

    progress = Progress(
        TextColumn("[bold cyan]Sending"),
        BarColumn(),
        MofNCompleteColumn(),
        TextColumn("[red]{task.fields[failed]} failed"),
        TimeRemainingColumn(),
        console=console,
    )
    task_id = progress.add_task("send", total=len(messages), failed=0)

    def on_progress(snapshot: BulkProgress) -> None:
        progress.update(task_id, completed=snapshot.sent + snapshot.failed, failed=snapshot.failed)

    queue.progress.subscribe(on_progress)
    try:
        with progress:
            await queue.start()
            await queue.wait_until_idle()
    finally:
        await queue.close()
        await provider.close()
    return queue


@main.command("check-limit")
@click.argument("key")
@click.option("--category", "-k", default="api", show_default=True,
              help="Limiter category (api, upload, generate, zip, email).")
@click.option("--route", "-r", default="/bulk-email", show_default=True, help="Route part of the limiter key.")
@click.pass_context
def check_limit(ctx: click.Context, key: str, category: str, route: str) -> None:
    """Run one rate limiter check for KEY (a client IP) and print the headers."""
    settings = _load(ctx)
    limiter = RateLimiter(settings.rate_limit.window_seconds, settings.rate_limit.limits)
    limiter_key = build_key(category, route, user_id=None, ip=key)
    decision = limiter.rate_limit(limiter_key, category)

    table = Table(title=limiter_key)
    table.add_column("Header", style="cyan")
    table.add_column("Value", justify="right")
    for name, value in decision.headers().items():
        table.add_row(name, value)
    console.print(table)
    if decision.allowed:
        print_success("allowed")
    else:
        print_error("rate limited")
        sys.exit(1)


if __name__ == "__main__":
    main()
