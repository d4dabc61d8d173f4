"""Command-line interface for mailsync.

Provides commands for configuration validation, folder and message sync,
body prefetch, PGP key setup, the offline mutation queue and the poller.

Usage:
    python -m mailsync validate-config
    python -m mailsync folders
    python -m mailsync list --folder INBOX --page 1
    python -m mailsync show <message-id>
    python -m mailsync watch
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

from mailsync.config import validate_config_file
from mailsync.core.errors import OperationCancelled
from mailsync.core.logging import configure_logging

if TYPE_CHECKING:
    from mailsync.config_schema import AppConfig
    from mailsync.db.store import MailStore
    from mailsync.engine.decrypt import PassphraseAnswer
    from mailsync.engine.keyring import Keyring
    from mailsync.engine.list_sync import ListSyncEngine, MailboxState
    from mailsync.engine.message_loader import MessageLoader
    from mailsync.engine.mutations import MutationQueue
    from mailsync.engine.session import MailSession
    from mailsync.remote.client import ApiClient

console = Console()


class ConsolePassphrasePrompt:
    """Asks for a key passphrase on the terminal. An empty answer cancels."""

    async def open(self, key_name: str) -> PassphraseAnswer | None:
        from mailsync.engine.decrypt import PassphraseAnswer

        passphrase = await asyncio.to_thread(
            Prompt.ask, f"Passphrase for PGP key [cyan]{key_name}[/cyan]", password=True
        )
        if not passphrase:
            raise OperationCancelled("passphrase_prompt_cancelled")
        return PassphraseAnswer(passphrase=passphrase, remember=True)


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    store: MailStore
    api_client: ApiClient
    session: MailSession
    keyring: Keyring
    loader: MessageLoader
    state: MailboxState
    list_engine: ListSyncEngine
    queue: MutationQueue


async def _init_cli_deps(account: str | None = None) -> CLIDeps:
    """Initialize shared CLI dependencies.

    Loads config, opens the cache database and wires the engines. Prints
    actionable error messages and calls sys.exit(1) on failure.
    """
    from mailsync.config import get_config
    from mailsync.core.errors import ConfigLoadError, ConfigValidationError, DatabaseError
    from mailsync.db.store import MailStore
    from mailsync.engine.decrypt import DecryptPipeline
    from mailsync.engine.keyring import Keyring
    from mailsync.engine.list_sync import ListSyncEngine, MailboxState
    from mailsync.engine.message_loader import MessageLoader
    from mailsync.engine.mutations import MutationQueue
    from mailsync.engine.session import MailSession
    from mailsync.remote.client import ApiClient
    from mailsync.remote.messages import MailApi
    from mailsync.remote.worker import InProcessWorker, WorkerClient

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Create config/config.yaml (see config/config.yaml.example) "
            "or set MAILSYNC_CONFIG_PATH."
        )
        sys.exit(1)
    if account:
        config = config.model_copy(update={"account": account})

    # 2. Open the cache database
    db_path = Path(config.storage.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = MailStore(db_path, quota_bytes=config.storage.quota_bytes)
    try:
        await store.initialize()
    except DatabaseError as e:
        console.print(f"[red]Database error:[/red] {e}\n\nCheck storage.db_path in config.")
        sys.exit(1)

    # 3. Remote collaborators and engines
    api_client = ApiClient.from_config(config.api)
    worker = WorkerClient.from_config(InProcessWorker(), config.worker)
    session = MailSession(config, store, MailApi(api_client), worker)
    keyring = Keyring(store, worker)
    decryptor = DecryptPipeline(session, keyring, prompt=ConsolePassphrasePrompt())
    state = MailboxState()

    return CLIDeps(
        config=config,
        store=store,
        api_client=api_client,
        session=session,
        keyring=keyring,
        loader=MessageLoader(session, decryptor),
        state=state,
        list_engine=ListSyncEngine(session, state),
        queue=MutationQueue(session),
    )


async def _close_cli_deps(deps: CLIDeps) -> None:
    await deps.session.drain()
    deps.session.dispose()
    await deps.api_client.aclose()
    await deps.store.checkpoint_wal()


def _run(coro_fn: Callable[..., Awaitable[None]], *args: Any) -> None:
    """Run an async command body with the CLI's exit-code conventions."""
    try:
        asyncio.run(coro_fn(*args))
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


account_option = click.option(
    "--account", "-a", default=None, help="Account to use (default: config account)"
)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """mailsync - offline-first mail cache and sync."""
    log_level = "DEBUG" if debug else "INFO"
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    if config_path:
        console.print(f"Validating config: [cyan]{config_path}[/cyan]")
    else:
        console.print("Validating config: [cyan]config/config.yaml[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


# =============================================================================
# Folders and messages
# =============================================================================


@cli.command("folders")
@account_option
@click.option("--force", is_flag=True, help="Ignore the short freshness window")
def folders(account: str | None, force: bool) -> None:
    """Load and print the folder list."""
    _run(_run_folders, account, force)


async def _run_folders(account: str | None, force: bool) -> None:
    deps = await _init_cli_deps(account)
    try:
        result = await deps.list_engine.load_folders(force=force)
        if deps.state.error.get():
            console.print(f"[yellow]Warning:[/yellow] {deps.state.error.get()}")

        table = Table(title=f"Folders ({deps.session.current_account})")
        table.add_column("Folder")
        table.add_column("Unread", justify="right")
        table.add_column("Total", justify="right")
        table.add_column("Counts", style="dim")
        for folder in result:
            table.add_row(
                "  " * folder.level + (folder.name or folder.path),
                str(folder.unread_count),
                str(folder.total_count) if folder.total_count else "-",
                folder.count_source,
            )
        console.print(table)
    finally:
        await _close_cli_deps(deps)


@cli.command("list")
@account_option
@click.option("--folder", "-f", default="INBOX", help="Folder path")
@click.option("--page", "-p", default=1, type=int, help="Page number")
@click.option(
    "--sort",
    type=click.Choice(["newest", "oldest", "subject", "sender"]),
    default="newest",
)
@click.option("--unread", is_flag=True, help="Only unread messages")
@click.option("--query", "-q", default="", help="Search text")
def list_messages(
    account: str | None, folder: str, page: int, sort: str, unread: bool, query: str
) -> None:
    """Sync one folder page and print it."""
    _run(_run_list, account, folder, page, sort, unread, query)


async def _run_list(
    account: str | None, folder: str, page: int, sort: str, unread: bool, query: str
) -> None:
    deps = await _init_cli_deps(account)
    state = deps.state
    try:
        state.selected_folder.set(folder)
        state.page.set(page)
        state.sort_order.set(sort)
        state.unread_only.set(unread)
        state.query.set(query)

        status = await deps.list_engine.load_messages()
        if state.error.get():
            console.print(f"[yellow]Showing cached messages:[/yellow] {state.error.get()}")

        table = Table(title=f"{folder} page {page} ({status.value})")
        table.add_column("", width=1)
        table.add_column("Date", style="dim")
        table.add_column("From")
        table.add_column("Subject")
        table.add_column("ID", style="dim")
        for message in state.messages.get():
            marker = "[bold]•[/bold]" if message.is_unread else ""
            date = message.date.strftime("%Y-%m-%d %H:%M") if message.date else ""
            table.add_row(marker, date, message.sender[:30], message.subject[:60], message.id)
        console.print(table)
        if state.has_next_page.get():
            console.print(f"[dim]More messages: --page {page + 1}[/dim]")
    finally:
        await _close_cli_deps(deps)


@cli.command("show")
@account_option
@click.argument("message_id")
@click.option("--folder", "-f", default="INBOX", help="Folder of the message")
@click.option("--no-prompt", is_flag=True, help="Never ask for PGP passphrases")
def show(account: str | None, message_id: str, folder: str, no_prompt: bool) -> None:
    """Load one message body and print its text."""
    _run(_run_show, account, message_id, folder, no_prompt)


async def _run_show(account: str | None, message_id: str, folder: str, no_prompt: bool) -> None:
    from mailsync.db.store import Message
    from mailsync.engine.message_loader import DetailCallbacks, DetailStatus
    from mailsync.sanitize import extract_text_content

    deps = await _init_cli_deps(account)
    try:
        account_name = deps.session.current_account
        message = await deps.store.get_message(account_name, message_id) or Message(
            id=message_id, account=account_name, folder=folder
        )

        bodies: list[str] = []
        errors: list[Exception] = []
        attachments: list[Any] = []
        callbacks = DetailCallbacks(
            on_body=bodies.append,
            on_attachments=attachments.extend,
            on_error=errors.append,
            allow_pgp_prompt=not no_prompt,
        )
        status = await deps.loader.load_detail(message, callbacks)

        if message.subject:
            console.print(f"[bold]{message.subject}[/bold]")
        if message.sender:
            console.print(f"[dim]From:[/dim] {message.sender}")
        if bodies:
            console.print()
            console.print(extract_text_content(bodies[-1]))
        for attachment in attachments:
            console.print(f"[dim]Attachment:[/dim] {attachment.name} ({attachment.content_type})")
        for error in errors:
            console.print(f"[red]Error:[/red] {error}")
        console.print(f"\n[dim]status={status.value}[/dim]")
        if status in (DetailStatus.ERROR, DetailStatus.INVALID):
            sys.exit(1)
    finally:
        await _close_cli_deps(deps)


@cli.command("prefetch")
@account_option
@click.option("--folder", "-f", default="INBOX", help="Folder to warm")
@click.option("--limit", default=None, type=int, help="Maximum bodies to fetch")
@click.option("--concurrency", default=None, type=int, help="Parallel fetches")
def prefetch(
    account: str | None, folder: str, limit: int | None, concurrency: int | None
) -> None:
    """Warm the body cache for the first page of a folder."""
    _run(_run_prefetch, account, folder, limit, concurrency)


async def _run_prefetch(
    account: str | None, folder: str, limit: int | None, concurrency: int | None
) -> None:
    from mailsync.engine.prefetch import PrefetchScheduler

    deps = await _init_cli_deps(account)
    try:
        deps.state.selected_folder.set(folder)
        await deps.list_engine.load_messages()
        scheduler = PrefetchScheduler(deps.session, deps.loader)
        started = await scheduler.prefetch_bodies(
            deps.state.messages.get(), limit=limit, concurrency=concurrency, folder=folder
        )
        console.print(f"Prefetched [cyan]{started}[/cyan] message bodies from {folder}")
    finally:
        await _close_cli_deps(deps)


# =============================================================================
# PGP keys and mutation queue
# =============================================================================


@cli.command("add-key")
@account_option
@click.argument("name")
@click.argument("key_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def add_key(account: str | None, name: str, key_file: Path) -> None:
    """Store an armored PGP private key for an account."""
    _run(_run_add_key, account, name, key_file)


async def _run_add_key(account: str | None, name: str, key_file: Path) -> None:
    value = key_file.read_text(encoding="utf-8")
    if "PRIVATE KEY BLOCK" not in value:
        console.print("[red]Error:[/red] File does not contain an armored private key block.")
        sys.exit(1)

    deps = await _init_cli_deps(account)
    try:
        await deps.keyring.add_key(deps.session.current_account, name, value)
        deps.session.clear_pgp_key_cache()
        invalidated = await deps.loader.invalidate_pgp_cached_bodies(deps.session.current_account)
        console.print(f"[green]✓[/green] Stored key [cyan]{name}[/cyan]")
        if invalidated:
            console.print(f"[dim]Dropped {invalidated} cached encrypted bodies[/dim]")
    finally:
        await _close_cli_deps(deps)


@cli.command("queue")
@account_option
@click.option("--process", "process_queue", is_flag=True, help="Replay due mutations now")
@click.option("--clear", is_flag=True, help="Drop completed and failed entries")
def queue(account: str | None, process_queue: bool, clear: bool) -> None:
    """Show the offline mutation queue, or process it."""
    _run(_run_queue, account, process_queue, clear)


async def _run_queue(account: str | None, process_queue: bool, clear: bool) -> None:
    deps = await _init_cli_deps(account)
    try:
        if clear:
            await deps.queue.clear_completed()
        if process_queue:
            completed = await deps.queue.process()
            console.print(f"Replayed [cyan]{completed}[/cyan] mutations")

        entries = await deps.queue.read()
        table = Table(title=f"Mutation queue ({deps.session.current_account})")
        table.add_column("ID", style="dim")
        table.add_column("Type")
        table.add_column("Message")
        table.add_column("Status")
        table.add_column("Retries", justify="right")
        table.add_column("Last error", style="red")
        for entry in entries:
            table.add_row(
                entry.id,
                entry.type,
                str(entry.payload.get("messageId", "")),
                entry.status,
                str(entry.retry_count),
                entry.last_error or "",
            )
        console.print(table)
    finally:
        await _close_cli_deps(deps)


@cli.command("sign-out")
@account_option
@click.confirmation_option(prompt="Delete every cached message, key and queued change?")
def sign_out(account: str | None) -> None:
    """Forget an account: cached mail, folders, keys and queued mutations."""
    _run(_run_sign_out, account)


async def _run_sign_out(account: str | None) -> None:
    deps = await _init_cli_deps(account)
    try:
        signed_out = deps.session.current_account
        deleted = await deps.session.sign_out(signed_out)
        console.print(f"[green]✓[/green] Signed out [cyan]{signed_out}[/cyan]")
        console.print(f"[dim]Deleted {deleted} cached records[/dim]")
    finally:
        await _close_cli_deps(deps)


@cli.command("watch")
@account_option
def watch(account: str | None) -> None:
    """Refresh the inbox and replay queued mutations until interrupted."""
    _run(_run_watch, account)


async def _run_watch(account: str | None) -> None:
    import signal

    from mailsync.engine.poller import InboxPoller

    deps = await _init_cli_deps(account)
    poller = InboxPoller(deps.session, deps.list_engine, deps.queue)
    try:
        await deps.list_engine.load_folders()
        deps.state.selected_folder.set(deps.config.poller.folder)
        await poller.tick()
        poller.start()

        console.print(
            f"Polling {deps.config.poller.folder} every "
            f"{deps.config.poller.interval_minutes} minutes. Press Ctrl+C to stop."
        )

        # Wait until interrupted
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, stop_event.set)
        loop.add_signal_handler(signal.SIGTERM, stop_event.set)
        await stop_event.wait()
    finally:
        poller.destroy()
        await _close_cli_deps(deps)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
