"""
CLI for switchboard.

Manage a registry of Cursor accounts and switch the installed IDE between
them.
"""

import asyncio
import json
import sys
import logging
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn

from switchboard.config import DB_PATH_ENV, DEFAULT_HOST, DEFAULT_PORT
from switchboard.errors import SwitchboardError


console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _fail(error: SwitchboardError):
    console.print(f"[red]Error:[/red] {error.message}")
    if error.hint:
        console.print(f"[dim]{error.hint}[/dim]")
    sys.exit(1)


def _run(coro):
    """Run a coroutine, turning switchboard errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except SwitchboardError as e:
        _fail(e)


def _get_db(ctx: click.Context):
    from switchboard.web.database import Database

    return Database(ctx.obj.get("db_path"))


def _resolve_account(db, ref: str) -> dict:
    """Find an account by id, unique id prefix, or email."""
    account = db.get_account(ref) or db.get_account_by_email(ref)
    if account:
        return account
    matches = [a for a in db.list_accounts() if a["id"].startswith(ref)]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        console.print(f"[red]Error:[/red] '{ref}' matches {len(matches)} accounts; use more characters")
    else:
        console.print(f"[red]Error:[/red] No account matches '{ref}'")
    sys.exit(1)


def _quota_text(profile: dict) -> str:
    quota = profile.get("quota") or {}
    if profile.get("is_unlimited"):
        return "unlimited"
    if quota.get("limit"):
        return f"{quota.get('used', 0)}/{quota['limit']}"
    return "-"


def _plan_text(profile: dict) -> str:
    plan = profile.get("plan_name") or "-"
    if profile.get("is_trial") and profile.get("trial_days_remaining") is not None:
        plan += f" ({profile['trial_days_remaining']}d left)"
    return plan


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option(
    "--db", "db_path", envvar=DB_PATH_ENV, type=click.Path(dir_okay=False),
    help="Registry database (default ~/.cursor-switchboard/switchboard.db)",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, db_path: Optional[str]):
    """Switchboard - multiple Cursor accounts, one IDE."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path


@main.command()
@click.argument("token")
@click.option("--name", "-n", help="Display name (defaults to the account email)")
@click.pass_context
def add(ctx: click.Context, token: str, name: Optional[str]):
    """Register an account from a session token or cookie."""
    from switchboard.accounts import add_account

    db = _get_db(ctx)
    account, created = _run(add_account(db, token, name))
    profile = account.get("profile") or {}
    if created:
        console.print(f"[green][OK][/green] Added {account.get('email') or account['id']}")
    else:
        console.print(f"[yellow]Already registered[/yellow] - refreshed {account.get('email') or account['id']}")
    console.print(f"  id: {account['id']}  plan: {_plan_text(profile)}  usage: {_quota_text(profile)}")


@main.command(name="list")
@click.pass_context
def list_accounts(ctx: click.Context):
    """List registered accounts."""
    db = _get_db(ctx)
    accounts = db.list_accounts()
    if not accounts:
        console.print("[yellow]No accounts registered[/yellow] - run 'switchboard add <token>'")
        return

    table = Table(title="Cursor Accounts", show_header=True)
    table.add_column("", width=1)
    table.add_column("ID", style="cyan")
    table.add_column("Email", style="magenta")
    table.add_column("Plan", style="green")
    table.add_column("Usage", justify="right")
    table.add_column("Refreshed", style="dim")
    table.add_column("Error", style="red")

    for account in accounts:
        profile = account.get("profile") or {}
        refreshed = account.get("last_refreshed_at") or ""
        table.add_row(
            "*" if account["is_active"] else "",
            account["id"][:8],
            account.get("email") or "?",
            _plan_text(profile),
            _quota_text(profile),
            refreshed[:16].replace("T", " "),
            (account.get("last_error") or "")[:40],
        )

    console.print(table)


@main.command()
@click.argument("account")
@click.pass_context
def show(ctx: click.Context, account: str):
    """Show one account's profile."""
    db = _get_db(ctx)
    row = _resolve_account(db, account)
    profile = row.get("profile") or {}
    lines = [
        f"ID: {row['id']}",
        f"Name: {row.get('display_name') or '-'}",
        f"Email: {row.get('email') or '-'}",
        f"Active: {'Yes' if row['is_active'] else 'No'}",
        f"Plan: {_plan_text(profile)}",
        f"Status: {profile.get('subscription_status') or '-'}",
        f"Usage: {_quota_text(profile)}",
        f"Billing cycle: {profile.get('billing_cycle_start') or '?'} .. {profile.get('billing_cycle_end') or '?'}",
        f"Last refreshed: {row.get('last_refreshed_at') or 'never'}",
    ]
    if row.get("last_error"):
        lines.append(f"Last error: {row['last_error']} ({row.get('last_error_at')})")
    console.print(Panel("\n".join(lines), title=row.get("display_name") or "Account"))


@main.command()
@click.argument("token")
def parse(token: str):
    """Decode a token locally and print its claims."""
    from switchboard.tokens import parse_token

    try:
        parsed = parse_token(token)
    except SwitchboardError as e:
        _fail(e)
    data = parsed.model_dump(mode="json", exclude={"long_lived_credential", "composite_cookie_token"})
    console.print_json(json.dumps(data))


@main.command()
@click.argument("token")
@click.option("--cookie", is_flag=True, help="Print a full Cookie header value")
def convert(token: str, cookie: bool):
    """Convert any token shape to the composite cookie form."""
    from switchboard import tokens

    try:
        composite = tokens.to_composite(token)
    except SwitchboardError as e:
        _fail(e)
    click.echo(tokens.cookie_header(composite) if cookie else composite)


@main.command()
@click.pass_context
def sync(ctx: click.Context):
    """Import the account Cursor is signed in with right now."""
    from switchboard.accounts import sync_local_account
    from switchboard.target.locator import resolve_state_db_path

    db = _get_db(ctx)
    db_path = resolve_state_db_path(db.load_settings())
    account, created = _run(sync_local_account(db, db_path))
    verb = "Imported" if created else "Updated"
    console.print(f"[green][OK][/green] {verb} {account.get('email') or account['id']} (now active)")
    if account.get("last_error"):
        console.print(f"[yellow]Profile lookup failed:[/yellow] {account['last_error']}")


@main.command()
@click.argument("account", required=False)
@click.option("--all", "all_", is_flag=True, help="Refresh every account")
@click.option("--batch-size", "-b", type=int, help="Concurrent refreshes per batch")
@click.pass_context
def refresh(ctx: click.Context, account: Optional[str], all_: bool, batch_size: Optional[int]):
    """Re-resolve plan and usage for one account or all of them."""
    from switchboard.accounts import refresh_account, refresh_all

    db = _get_db(ctx)
    if not all_ and not account:
        console.print("[red]Error:[/red] Give an ACCOUNT or --all")
        sys.exit(1)

    if all_:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Refreshing accounts...", total=None)
            summary = _run(refresh_all(db, batch_size=batch_size))
            progress.remove_task(task)
        console.print(
            f"[green]{summary['refreshed']} refreshed[/green], "
            f"[red]{summary['failed']} failed[/red]"
        )
        for result in summary["results"]:
            if not result["success"]:
                console.print(f"  [red][FAIL][/red] {result['account_id'][:8]}: {result['error']}")
        if summary["failed"]:
            sys.exit(1)
        return

    row = _resolve_account(db, account)
    ok = _run(refresh_account(db, row["id"]))
    if ok:
        console.print(f"[green][OK][/green] Refreshed {row.get('email') or row['id']}")
    else:
        console.print(f"[red][FAIL][/red] {db.get_account(row['id']).get('last_error')}")
        sys.exit(1)


@main.command()
@click.argument("account")
@click.option("--reset-identity/--no-reset-identity", default=None, help="Regenerate Cursor telemetry ids")
@click.option("--purge-history/--no-purge-history", default=None, help="Delete Cursor history first")
@click.option("--headed", is_flag=True, help="Show the consent browser window")
@click.pass_context
def switch(
    ctx: click.Context,
    account: str,
    reset_identity: Optional[bool],
    purge_history: Optional[bool],
    headed: bool,
):
    """Make ACCOUNT the signed-in Cursor account.

    Quits Cursor, rewrites its login, and starts it again.
    """
    from switchboard.switch import AppSession, SwitchOptions, SwitchOrchestrator, SwitchStep
    from switchboard.web.negotiator import CredentialNegotiator, PlaywrightSurface

    db = _get_db(ctx)
    row = _resolve_account(db, account)
    session = AppSession(db)

    options = SwitchOptions.from_settings(session.settings)
    if reset_identity is not None:
        options.reset_identity = reset_identity
    if purge_history is not None:
        options.purge_history = purge_history

    negotiator = CredentialNegotiator(lambda: PlaywrightSurface(headless=not headed))
    orchestrator = SwitchOrchestrator(session, negotiator=negotiator)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        console=console,
    ) as progress:
        task = progress.add_task(f"Switching to {row.get('email') or row['id']}...", total=100)

        def _on_progress(event):
            if event.step == SwitchStep.ERROR:
                return
            progress.update(task, completed=event.progress, description=event.message)

        session.subscribe(_on_progress)
        result = _run(orchestrator.switch_to(row["id"], options))

    console.print(f"[green][OK][/green] Cursor now signed in as {result.email or result.account_id}")
    if result.identity_reset:
        console.print("  telemetry identifiers reset")
    if options.purge_history:
        console.print(f"  {result.history_removed} history item(s) removed")


@main.command()
@click.argument("account")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def delete(ctx: click.Context, account: str, yes: bool):
    """Remove an account from the registry."""
    db = _get_db(ctx)
    row = _resolve_account(db, account)
    if not yes:
        if not click.confirm(f"Delete account {row.get('email') or row['id']}?"):
            console.print("Cancelled")
            return
    db.delete_account(row["id"])
    console.print(f"[green][OK][/green] Deleted {row.get('email') or row['id']}")


@main.command(name="purge-free")
@click.option("--plan", default="free", show_default=True, help="Plan tier to remove")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def purge_free(ctx: click.Context, plan: str, yes: bool):
    """Delete every account on the free plan."""
    from switchboard.accounts import account_plan_matches, delete_accounts_by_plan

    db = _get_db(ctx)
    doomed = [a for a in db.list_accounts() if account_plan_matches(a, plan)]
    if not doomed:
        console.print(f"[yellow]No accounts on plan '{plan}'[/yellow]")
        return
    if not yes:
        if not click.confirm(f"Delete {len(doomed)} account(s) on plan '{plan}'?"):
            console.print("Cancelled")
            return
    deleted = delete_accounts_by_plan(db, plan)
    console.print(f"[green][OK][/green] Deleted {deleted} account(s)")


@main.command(name="reset-identity")
@click.pass_context
def reset_identity_cmd(ctx: click.Context):
    """Regenerate Cursor's telemetry identifiers."""
    from switchboard.target import state_store
    from switchboard.target.locator import resolve_state_db_path

    db = _get_db(ctx)
    db_path = resolve_state_db_path(db.load_settings())
    try:
        ids = state_store.reset_identity(db_path)
    except SwitchboardError as e:
        _fail(e)
    console.print(f"[green][OK][/green] Wrote new identifiers to {state_store.storage_json_path(db_path)}")
    for key, value in ids.items():
        console.print(f"  {key} = {value}")


@main.command(name="clear-history")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def clear_history(ctx: click.Context, yes: bool):
    """Quit Cursor and delete its history and state store."""
    from switchboard.target import state_store
    from switchboard.target.locator import resolve_state_db_path
    from switchboard.target.process import ProcessController

    db = _get_db(ctx)
    db_path = resolve_state_db_path(db.load_settings())
    if not yes:
        if not click.confirm("Cursor will be closed and its history deleted. Continue?"):
            console.print("Cancelled")
            return
    asyncio.run(ProcessController().terminate())
    removed = state_store.purge_history(db_path)
    console.print(f"[green][OK][/green] Removed {len(removed)} item(s)")


@main.command()
@click.option("--db-path", "cursor_db_path", help="Cursor state.vscdb path ('' to auto-detect)")
@click.option("--app-path", "cursor_app_path", help="Cursor executable ('' to auto-detect)")
@click.option("--batch-size", "batch_refresh_size", type=int, help="Accounts refreshed concurrently")
@click.option("--reset-machine-id/--no-reset-machine-id", "switch_reset_machine_id", default=None)
@click.option("--clear-history/--no-clear-history", "switch_clear_history", default=None)
@click.pass_context
def settings(ctx: click.Context, **changes):
    """Show settings, or change the ones given as options."""
    from pydantic import ValidationError

    db = _get_db(ctx)
    changes = {k: v for k, v in changes.items() if v is not None}
    if changes:
        try:
            current = db.save_settings(**changes)
        except ValidationError as e:
            console.print(f"[red]Invalid setting:[/red] {e.errors()[0]['msg']}")
            sys.exit(1)
        console.print("[green][OK][/green] Settings saved")
    else:
        current = db.load_settings()

    table = Table(show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in current.model_dump().items():
        table.add_row(key, repr(value) if value == "" else str(value))
    console.print(table)


@main.command()
@click.pass_context
def scan(ctx: click.Context):
    """Show where Cursor was found on this machine."""
    from switchboard.target.locator import scan as scan_target

    db = _get_db(ctx)
    report = scan_target(db.load_settings())
    ok = "[green]yes[/green]"
    no = "[red]no[/red]"
    console.print(f"Platform:        {report['platform']}")
    console.print(f"State store:     {report['db_path']} ({ok if report['db_exists'] else no})")
    console.print(f"globalStorage:   {ok if report['global_storage_exists'] else no}")
    console.print(f"Executable:      {report['app_path'] or no}")


@main.command()
@click.option("--host", default=DEFAULT_HOST, show_default=True, help="Bind address")
@click.option("--port", "-p", default=DEFAULT_PORT, show_default=True, help="Port")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int):
    """Run the HTTP API and progress WebSocket."""
    import os

    import uvicorn

    if ctx.obj.get("db_path"):
        os.environ[DB_PATH_ENV] = ctx.obj["db_path"]
    os.environ["SWITCHBOARD_HOST"] = host
    os.environ["SWITCHBOARD_PORT"] = str(port)

    console.print(f"Serving on [bold]http://{host}:{port}/api[/bold]")
    uvicorn.run("switchboard.api.main:app", host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
