# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for mail-dispatch.

Operator tooling around the dispatcher: push a message file through it,
drain or inspect the staging table, look at a recipient's rate usage,
generate thread markers and serve the HTTP API.

Usage:
    mail-dispatch send message.eml
    mail-dispatch send message.eml --now
    mail-dispatch drain --halt-on-error
    mail-dispatch staged list --json
    mail-dispatch rates user@example.com
    mail-dispatch marker 42 7 --new
    mail-dispatch config show
    mail-dispatch serve --port 8025

Every command reads the INI file given with ``--config`` (or ``MD_CONFIG``).
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config_loader import DEFAULT_CONFIG_FILE, load_server_options, load_settings
from .dispatcher import DispatchStatus, MessageDispatcher, create_dispatcher
from .errors import MailDispatchError
from .logger import configure_logging
from .message import parse_message
from .models import MailerSettings
from .thread_marker import ThreadMarkerBuilder

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {escape(message)}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {escape(message)}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _settings(ctx: click.Context) -> MailerSettings:
    try:
        return load_settings(ctx.obj["config"])
    except MailDispatchError as exc:
        print_error(str(exc))
        sys.exit(1)


@asynccontextmanager
async def open_dispatcher(settings: MailerSettings) -> AsyncIterator[MessageDispatcher]:
    """Started dispatcher that is closed on exit."""
    dispatcher = await create_dispatcher(settings)
    try:
        yield dispatcher
    finally:
        await dispatcher.aclose()


def _run(ctx: click.Context, coro_fn):
    """Run ``coro_fn(dispatcher)`` and turn dispatcher errors into exit code 1."""
    settings = _settings(ctx)

    async def _main():
        async with open_dispatcher(settings) as dispatcher:
            return await coro_fn(dispatcher)

    try:
        return run_async(_main())
    except MailDispatchError as exc:
        print_error(f"{exc} ({exc.code})")
        sys.exit(1)


@click.group()
@click.option(
    "--config",
    "config_path",
    envvar="MD_CONFIG",
    default=DEFAULT_CONFIG_FILE,
    show_default=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="INI configuration file.",
)
@click.option("--log-level", envvar="MD_LOG_LEVEL", default="WARNING", show_default=True, help="Logging level.")
@click.pass_context
def main(ctx: click.Context, config_path: Path, log_level: str) -> None:
    """mail-dispatch: transactional notification mail dispatcher."""
    configure_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config_path


# ============================================================================
# Sending
# ============================================================================

@main.command("send")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--now", "send_now", is_flag=True, help="Bypass staging and send immediately.")
@click.pass_context
def send(ctx: click.Context, file: Path, send_now: bool) -> None:
    """Send a message file.

    Without --now the message goes through a unit of work: it is staged
    inside a transaction and delivered when that transaction commits.
    """
    raw = file.read_text(encoding="utf-8")

    async def _send(dispatcher: MessageDispatcher):
        if send_now:
            result = await dispatcher.send(raw, send_now=True)
        else:
            async with dispatcher.persistence.transaction():
                result = await dispatcher.send(raw)
        return result, await dispatcher.persistence.count_staged()

    result, staged = _run(ctx, _send)

    if result.status is DispatchStatus.SUPPRESSED:
        console.print(f"[yellow]Suppressed[/yellow] ({result.reason})")
    elif result.status is DispatchStatus.SENT:
        print_success("Message sent.")
    elif result.reason == "staged":
        print_success(f"Message staged as #{result.staging_id} and processed on commit.")
        if staged:
            console.print(f"[yellow]{staged} message(s) still staged.[/yellow] Run 'mail-dispatch drain' to retry.")
    else:
        print_success(f"Message deferred ({result.reason}).")


@main.command("drain")
@click.option("--halt-on-error", is_flag=True, help="Stop at the first failing message.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def drain(ctx: click.Context, halt_on_error: bool, as_json: bool) -> None:
    """Send every staged message now."""

    async def _drain(dispatcher: MessageDispatcher):
        return await dispatcher.send_staged_mail(halt_on_error=halt_on_error)

    result = _run(ctx, _drain)

    if as_json:
        print_json({
            "sent": result.sent,
            "failed": [{"id": f.id, "error": str(f.error)} for f in result.failed],
            "remaining": result.remaining,
        })
    elif not (result.sent or result.failed or result.remaining):
        console.print("[dim]Nothing staged.[/dim]")
    else:
        console.print(f"  Sent:      {len(result.sent)}")
        console.print(f"  Failed:    {len(result.failed)}")
        console.print(f"  Remaining: {len(result.remaining)}")
        for failure in result.failed:
            err_console.print(f"  [red]#{failure.id}[/red] {escape(str(failure.error))}")

    if not result.ok:
        sys.exit(1)


# ============================================================================
# Inspection
# ============================================================================

@main.group("staged", invoke_without_command=True)
@click.pass_context
def staged(ctx: click.Context) -> None:
    """Inspect the staging table."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@staged.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def staged_list(ctx: click.Context, as_json: bool) -> None:
    """List staged messages in send order."""

    async def _list(dispatcher: MessageDispatcher):
        rows = []
        for record in await dispatcher.stager.staged():
            msg = parse_message(record.raw_message)
            rows.append({
                "id": record.id,
                "to": str(msg.get("To", "")),
                "subject": str(msg.get("Subject", "")),
                "message_id": str(msg.get("Message-ID", "")),
            })
        return rows

    rows = _run(ctx, _list)

    if as_json:
        print_json(rows)
        return

    if not rows:
        console.print("[dim]No staged messages.[/dim]")
        return

    table = Table(title="Staged messages")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("To")
    table.add_column("Subject")
    table.add_column("Message-ID", style="dim")
    for row in rows:
        table.add_row(str(row["id"]), row["to"] or "-", row["subject"] or "-", row["message_id"] or "-")
    console.print(table)


@main.command("rates")
@click.argument("recipient")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def rates(ctx: click.Context, recipient: str, as_json: bool) -> None:
    """Show recent sends recorded for RECIPIENT."""

    async def _usage(dispatcher: MessageDispatcher):
        return await dispatcher.rate_limiter.usage(recipient)

    usage = _run(ctx, _usage)
    settings = _settings(ctx)
    data = {
        "recipient": recipient,
        "minute": usage["minute"],
        "hour": usage["hour"],
        "limit_per_minute": settings.limit_per_minute,
        "limit_per_hour": settings.limit_per_hour,
    }

    if as_json:
        print_json(data)
        return

    def _limit(value: int) -> str:
        return str(value) if value else "unlimited"

    console.print(f"\n[bold]{recipient}[/bold]\n")
    console.print(f"  Last minute: {data['minute']} / {_limit(data['limit_per_minute'])}")
    console.print(f"  Last hour:   {data['hour']} / {_limit(data['limit_per_hour'])}")
    console.print()


@main.command("marker")
@click.argument("entity_id")
@click.argument("actor_id")
@click.option("--new/--reply", "is_new", default=False, help="First message of the thread, or a follow-up.")
@click.option("--prefix", default="bug", show_default=True, help="Leading token of the ids.")
@click.pass_context
def marker(ctx: click.Context, entity_id: str, actor_id: str, is_new: bool, prefix: str) -> None:
    """Print the threading headers for ENTITY_ID changed by ACTOR_ID."""
    settings = _settings(ctx)
    builder = ThreadMarkerBuilder(settings.url_base, prefix=prefix)
    click.echo(builder.build(entity_id, actor_id, is_new=is_new))


# ============================================================================
# Configuration and server
# ============================================================================

@main.group("config", invoke_without_command=True)
@click.pass_context
def config(ctx: click.Context) -> None:
    """Inspect the effective configuration."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@config.command("show")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_show(ctx: click.Context, as_json: bool) -> None:
    """Show settings after applying the file and MD_* variables."""
    settings = _settings(ctx)
    data = settings.model_dump(mode="json")
    if data.get("smtp_password"):
        data["smtp_password"] = "********"

    if as_json:
        print_json(data)
        return

    table = Table(title=f"Configuration ({ctx.obj['config']})")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


@main.command("serve")
@click.option("--host", default=None, help="Bind address (default from [server] or 127.0.0.1).")
@click.option("--port", type=int, default=None, help="Port (default from [server] or 8025).")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development.")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, reload: bool) -> None:
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    config_path = ctx.obj["config"]
    try:
        options = load_server_options(config_path)
    except MailDispatchError as exc:
        print_error(str(exc))
        sys.exit(1)
    _settings(ctx)

    os.environ["MD_CONFIG"] = str(config_path)
    host = host or options["host"]
    port = port or options["port"]
    console.print(f"[bold]Serving mail-dispatch on http://{host}:{port}[/bold]")
    uvicorn.run("mail_dispatch.server:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    main()
