"""Typer CLI for the inbox metadata sync engine."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from mailbox_sync.config.settings import AppSettings, load_settings
from mailbox_sync.errors import ConfigurationError, SyncError
from mailbox_sync.gmail.pagination import CursorPageNavigator
from mailbox_sync.models.state import AccountRow
from mailbox_sync.models.types import BackfillStats, SyncScope, SyncStats, SyncTrigger, TickStats
from mailbox_sync.sync.account import call_with_token
from mailbox_sync.sync.batch import BASE_QUERY
from mailbox_sync.sync.scheduler import incremental_since
from mailbox_sync.sync.runtime import SyncRuntime, build_runtime, open_store
from mailbox_sync.utils.logging import configure_logging

logger = logging.getLogger(__name__)

console = Console()

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="Incremental inbox metadata sync for connected Gmail accounts.",
)

ENV_FILE_OPTION = typer.Option(
    default=None,
    exists=True,
    dir_okay=False,
    help="Optional path to a .env file (in addition to environment variables).",
)


def load_app_settings(*, env_file: Path | None) -> AppSettings:
    """Load settings and configure logging for one CLI invocation.

    Args:
        env_file: Optional path to a .env file.

    Returns:
        Validated application settings.
    """
    settings = load_settings(env_file=env_file)
    configure_logging(settings=settings.logging)
    return settings


def _runtime_or_exit(settings: AppSettings) -> SyncRuntime:
    """Build the runtime, exiting with code 2 on configuration errors."""
    try:
        return build_runtime(settings)
    except ConfigurationError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from None


def _require_account(runtime: SyncRuntime, account_id: int) -> AccountRow:
    """Return the account or exit with code 1 if it does not exist."""
    account = runtime.db.get_account(account_id)
    if account is None:
        typer.echo(f"Unknown account id: {account_id}", err=True)
        raise typer.Exit(code=1)
    return account


def _fmt_dt(value: datetime | None) -> str:
    """Render an optional timestamp for tables."""
    return value.isoformat(timespec="seconds") if value is not None else "-"


def _backfill_state(account: AccountRow) -> str:
    """Render an account's history backfill progress."""
    if account.backfill_complete:
        return "done"
    return "in progress" if account.backfill_cursor else "pending"


def _print_sync_stats(email: str, stats: SyncStats) -> None:
    """Render one account's sync stats."""
    table = Table(title=f"Sync {email}", show_header=False)
    table.add_row("query", stats.query)
    table.add_row("processed", str(stats.processed))
    table.add_row("inserted", str(stats.inserted))
    table.add_row("updated", str(stats.updated))
    table.add_row("unchanged", str(stats.unchanged))
    table.add_row("skipped", str(stats.skipped))
    table.add_row("item errors", str(len(stats.item_errors)))
    table.add_row("latest received", _fmt_dt(stats.latest_received_at))
    table.add_row("phases", " -> ".join(p.value for p in stats.phases))
    table.add_row("elapsed", f"{stats.elapsed_ms} ms")
    console.print(table)
    for message in stats.item_errors:
        console.print(f"[yellow]item error[/yellow] {message}")


def _print_tick(stats: TickStats) -> None:
    """Render a tick summary with one row per account."""
    if stats.skipped_reason is not None:
        console.print(f"[yellow]Tick skipped:[/yellow] {stats.skipped_reason}")
        return

    table = Table(title=f"Tick ({stats.trigger.value}) in {stats.elapsed_ms} ms")
    table.add_column("account")
    table.add_column("ok")
    table.add_column("new", justify="right")
    table.add_column("updated", justify="right")
    table.add_column("error")
    for result in stats.results:
        table.add_row(
            result.email,
            "yes" if result.ok else "[red]no[/red]",
            str(result.stats.inserted) if result.stats else "-",
            str(result.stats.updated) if result.stats else "-",
            result.error or "",
        )
    console.print(table)
    console.print(
        f"{stats.accounts_succeeded}/{stats.accounts_attempted} accounts ok, "
        f"{stats.total_new_items} new items",
    )


def _print_backfill(stats: BackfillStats) -> None:
    """Render the result of one backfill pass."""
    if stats.skipped_reason is not None:
        console.print(f"[yellow]Backfill skipped:[/yellow] {stats.skipped_reason}")
        return
    if stats.error is not None:
        console.print(f"[red]Backfill failed:[/red] {stats.error}")
        return
    state = "complete" if stats.completed else "more to fetch"
    console.print(
        f"Backfill {stats.email}: {stats.processed} processed, {stats.new_items} new, {state} "
        f"({stats.elapsed_ms} ms)",
    )


@app.command("add-account")
def add_account_cmd(
    *,
    email: str = typer.Option(..., help="Mailbox address."),
    user_id: int = typer.Option(..., min=1, help="Owning user id."),
    access_token: str = typer.Option(..., help="Current OAuth access token."),
    refresh_token: str | None = typer.Option(default=None, help="OAuth refresh token."),
    expires_in: int | None = typer.Option(
        default=None,
        min=0,
        help="Seconds until the access token expires (unknown if omitted).",
    ),
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Register an account together with its OAuth tokens.

    Args:
        email: Mailbox address.
        user_id: Owning user id.
        access_token: Current access token.
        refresh_token: Refresh token used to renew the access token.
        expires_in: Seconds until ``access_token`` expires.
        env_file: Optional path to a .env file.
    """
    settings = load_app_settings(env_file=env_file)
    db = open_store(settings)
    try:
        account = db.add_account(user_id=user_id, email=email)
        expires_at = (
            datetime.now(tz=UTC) + timedelta(seconds=expires_in) if expires_in is not None else None
        )
        db.save_credential(
            account_id=account.id,
            access_token=access_token,
            expires_at=expires_at,
            refresh_token=refresh_token,
        )
    finally:
        db.close()
    typer.echo(f"Added account {account.id}: {account.email}")


@app.command("accounts")
def accounts_cmd(*, env_file: Path | None = ENV_FILE_OPTION) -> None:
    """List registered accounts and their last sync time.

    Args:
        env_file: Optional path to a .env file.
    """
    settings = load_app_settings(env_file=env_file)
    db = open_store(settings)
    try:
        table = Table(title="Accounts")
        table.add_column("id", justify="right")
        table.add_column("email")
        table.add_column("user", justify="right")
        table.add_column("active")
        table.add_column("last synced")
        table.add_column("backfill")
        table.add_column("messages", justify="right")
        for account in db.iter_accounts():
            table.add_row(
                str(account.id),
                account.email,
                str(account.user_id),
                "yes" if account.is_active else "no",
                _fmt_dt(account.last_synced_at),
                _backfill_state(account),
                str(db.count_messages(account.id)),
            )
    finally:
        db.close()
    console.print(table)


@app.command("sync")
def sync_cmd(
    *,
    account_id: int = typer.Option(..., help="Account to sync."),
    max_items: int = typer.Option(default=500, min=0, help="Maximum messages to fetch."),
    only_unread: bool = typer.Option(default=False, help="Only fetch unread messages."),
    full_sync: bool = typer.Option(
        default=False,
        help="Ignore the stored watermark and the default lookback window.",
    ),
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Sync one account now.

    Args:
        account_id: Account id.
        max_items: Item cap.
        only_unread: Whether to restrict to unread messages.
        full_sync: Whether to skip the incremental lower bound.
        env_file: Optional path to a .env file.
    """
    settings = load_app_settings(env_file=env_file)
    runtime = _runtime_or_exit(settings)
    try:
        account = _require_account(runtime, account_id)
        since = (
            None
            if full_sync
            else incremental_since(runtime.db, account_id, now=datetime.now(tz=UTC))
        )
        scope = SyncScope(
            max_items=max_items,
            only_unread=only_unread,
            since=since,
            full_sync=full_sync,
        )
        try:
            stats = asyncio.run(runtime.accounts.sync(account_id=account_id, scope=scope))
        except SyncError as exc:
            logger.error("Sync failed for %s: %s", account.email, exc)
            typer.echo(f"Sync failed: {exc}", err=True)
            raise typer.Exit(code=1) from None
        runtime.db.mark_account_synced(account_id=account_id)
    finally:
        runtime.close()
    _print_sync_stats(account.email, stats)


@app.command("tick")
def tick_cmd(*, env_file: Path | None = ENV_FILE_OPTION) -> None:
    """Run one scheduler tick now, regardless of the enabled flag.

    Args:
        env_file: Optional path to a .env file.
    """
    settings = load_app_settings(env_file=env_file)
    runtime = _runtime_or_exit(settings)
    try:
        stats = asyncio.run(runtime.scheduler.trigger())
    finally:
        runtime.close()
    _print_tick(stats)
    raise typer.Exit(code=1 if stats.accounts_failed else 0)


@app.command("backfill")
def backfill_cmd(*, env_file: Path | None = ENV_FILE_OPTION) -> None:
    """Fetch one more batch of older history for the next account that needs it.

    Args:
        env_file: Optional path to a .env file.
    """
    settings = load_app_settings(env_file=env_file)
    runtime = _runtime_or_exit(settings)
    try:
        stats = asyncio.run(runtime.scheduler.run_backfill_tick(trigger=SyncTrigger.manual))
    finally:
        runtime.close()
    _print_backfill(stats)
    raise typer.Exit(code=1 if stats.error else 0)


@app.command("run")
def run_cmd(
    *,
    max_ticks: int | None = typer.Option(
        default=None,
        min=1,
        help="Stop after this many ticks (runs until interrupted if omitted).",
    ),
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Run the periodic scheduler in the foreground.

    Args:
        max_ticks: Optional tick limit.
        env_file: Optional path to a .env file.
    """
    settings = load_app_settings(env_file=env_file)
    if not settings.scheduler.enabled:
        typer.echo("Scheduler is disabled. Set MBX_SCHEDULER__ENABLED=true.", err=True)
        raise typer.Exit(code=2)

    runtime = _runtime_or_exit(settings)
    try:
        asyncio.run(runtime.scheduler.run_forever(max_ticks=max_ticks))
    except KeyboardInterrupt:
        raise typer.Exit(code=130) from None
    finally:
        runtime.close()


@app.command("count")
def count_cmd(
    *,
    account_id: int = typer.Option(..., help="Account to query."),
    query: str = typer.Option(default=BASE_QUERY, help="Gmail search query."),
    page_cap: int | None = typer.Option(
        default=None,
        min=1,
        help="Maximum pages to walk (defaults to MBX_SYNC__COUNT_PAGE_CAP).",
    ),
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Count remote messages matching a query by walking the cursor chain.

    Args:
        account_id: Account id.
        query: Remote search query.
        page_cap: Page cap for the walk.
        env_file: Optional path to a .env file.
    """
    settings = load_app_settings(env_file=env_file)
    runtime = _runtime_or_exit(settings)
    try:
        _require_account(runtime, account_id)

        async def _count(token: str) -> tuple[int, bool]:
            navigator = CursorPageNavigator(client=runtime.client_factory(token))
            result = await navigator.count_all(
                query=query,
                page_cap=page_cap or settings.sync.count_page_cap,
                page_size=settings.sync.list_page_size,
            )
            return result.total, result.approximate

        try:
            total, approximate = asyncio.run(
                call_with_token(runtime.credentials, account_id, _count),
            )
        except SyncError as exc:
            typer.echo(f"Count failed: {exc}", err=True)
            raise typer.Exit(code=1) from None
    finally:
        runtime.close()

    if approximate:
        typer.echo(f"at least {total} (page cap reached)")
    else:
        typer.echo(str(total))


@app.command("page")
def page_cmd(
    *,
    account_id: int = typer.Option(..., help="Account to query."),
    page: int = typer.Option(default=1, min=1, help="1-based page number."),
    page_size: int = typer.Option(default=50, min=1, max=500, help="Items per page."),
    query: str = typer.Option(default=BASE_QUERY, help="Gmail search query."),
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Print the message ids of one remote page.

    Args:
        account_id: Account id.
        page: Page number.
        page_size: Items per page.
        query: Remote search query.
        env_file: Optional path to a .env file.
    """
    settings = load_app_settings(env_file=env_file)
    runtime = _runtime_or_exit(settings)
    try:
        _require_account(runtime, account_id)

        async def _page(token: str) -> tuple[list[str], bool, bool]:
            navigator = CursorPageNavigator(client=runtime.client_factory(token))
            result = await navigator.get_page(query=query, target_page=page, page_size=page_size)
            return result.items, result.has_previous_page, result.has_next_page

        try:
            items, has_prev, has_next = asyncio.run(
                call_with_token(runtime.credentials, account_id, _page),
            )
        except SyncError as exc:
            typer.echo(f"Page fetch failed: {exc}", err=True)
            raise typer.Exit(code=1) from None
    finally:
        runtime.close()

    for message_id in items:
        typer.echo(message_id)
    console.print(
        f"page {page}: {len(items)} items, previous={'yes' if has_prev else 'no'}, "
        f"next={'yes' if has_next else 'no'}",
        style="dim",
    )


@app.command("stats")
def stats_cmd(
    *,
    account_id: int = typer.Option(..., help="Account to summarize."),
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Show stored read/unread/attachment counts for an account.

    Args:
        account_id: Account id.
        env_file: Optional path to a .env file.
    """
    settings = load_app_settings(env_file=env_file)
    db = open_store(settings)
    try:
        account = db.get_account(account_id)
        if account is None:
            typer.echo(f"Unknown account id: {account_id}", err=True)
            raise typer.Exit(code=1)
        stats = db.account_stats(account_id)
    finally:
        db.close()

    table = Table(title=f"Stored metadata for {account.email}", show_header=False)
    table.add_row("total", str(stats.total))
    table.add_row("unread", str(stats.unread))
    table.add_row("read", str(stats.read))
    table.add_row("with attachments", str(stats.with_attachments))
    table.add_row("latest received", _fmt_dt(stats.latest_received_at))
    console.print(table)
