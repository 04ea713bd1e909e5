"""CLI interface for recordcache."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeVar

import typer
from pydantic import SecretStr
from rich.console import Console
from rich.table import Table

from recordcache.config import ensure_dirs, get_base_dir, load_config, save_config

app = typer.Typer(
    name="recordcache",
    help="Local cache of a Discogs collection with incremental refresh.",
    add_completion=False,
)
console = Console()

T = TypeVar("T")


def main() -> None:
    """Entry point that wraps ``app()`` with a clean KeyboardInterrupt handler."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("Interrupted.")
        raise SystemExit(130) from None


# ---------------------------------------------------------------------------
# Engine helper
# ---------------------------------------------------------------------------


def _resolve_username(username: str | None) -> str:
    name = username or load_config().discogs.username
    if not name:
        console.print(
            "[red]No username given.[/red]  Pass one or run "
            "[bold]recordcache config set discogs.username <name>[/bold].",
        )
        raise typer.Exit(1)
    return name


def run_with_cache(action: Callable[..., Awaitable[T]]) -> T:
    """Open the cache from the saved config, run *action(cache)*, close everything."""
    from recordcache.logging import setup_logging
    from recordcache.service import open_cache

    cfg = load_config()
    ensure_dirs()
    setup_logging(cfg.daemon.log_level, cfg.log_dir)

    async def _run() -> T:
        async with open_cache(cfg) as cache:
            return await action(cache)

    return asyncio.run(_run())


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def _human_time(epoch_ms: int | None) -> str:
    """Convert an epoch-ms timestamp to a relative time string."""
    if not epoch_ms:
        return "—"
    diff = datetime.now(UTC).timestamp() - epoch_ms / 1000
    if diff < 0:
        return datetime.fromtimestamp(epoch_ms / 1000, tz=UTC).isoformat()
    if diff < 60:
        return f"{int(diff)}s ago"
    if diff < 3600:
        return f"{int(diff / 60)} min ago"
    if diff < 86400:
        return f"{int(diff / 3600)}h {int((diff % 3600) / 60)}m ago"
    return f"{int(diff / 86400)}d ago"


def _print_items(items: list, title: str) -> None:
    table = Table(title=title, show_lines=False)
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Artist")
    table.add_column("Title", style="bold")
    table.add_column("Year", justify="right")
    table.add_column("Added", style="dim")
    for item in items:
        table.add_row(
            str(item.id),
            item.release.artist,
            item.release.title,
            str(item.release.year or ""),
            item.date_added[:10],
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind"),
    port: int = typer.Option(0, "--port", "-p", help="Port (default: daemon.api_port from config)"),
) -> None:
    """Serve the HTTP API and keep the configured user's cache refreshed."""
    from recordcache.logging import setup_logging
    from recordcache.service import serve as run_server

    cfg = load_config()
    ensure_dirs()
    setup_logging(cfg.daemon.log_level, cfg.log_dir, console=True)
    console.print(f"[green]Serving[/green] on http://{host}:{port or cfg.daemon.api_port}")
    asyncio.run(run_server(cfg, host=host, port=port or None))


@app.command()
def page(
    username: str = typer.Argument(None, help="Discogs username (default: discogs.username)"),
    number: int = typer.Option(1, "--page", "-n", help="Page number"),
    force: bool = typer.Option(False, "--force", help="Ignore the cache and refetch"),
) -> None:
    """Show one page of the collection (cached for 24 hours)."""
    name = _resolve_username(username)
    result = run_with_cache(lambda cache: cache.fetch_page(name, number, force_reload=force))
    if not result.success:
        console.print(f"[red]Error:[/red] {result.error}")
        raise typer.Exit(1)
    pages = result.pagination.pages if result.pagination else "?"
    _print_items(result.data, f"{name} — page {number}/{pages}")
    console.print(f"[dim]Fetched {_human_time(result.timestamp)}[/dim]")


@app.command()
def preload(
    username: str = typer.Argument(None, help="Discogs username (default: discogs.username)"),
    force: bool = typer.Option(False, "--force", help="Refetch every page even if fresh"),
) -> None:
    """Cache every page of the collection (one request per second)."""
    name = _resolve_username(username)
    with console.status(f"Preloading {name}'s collection..."):
        progress = run_with_cache(lambda cache: cache.preload_all(name, force=force))
    if progress is None:
        console.print("[yellow]A preload is already running for this user.[/yellow]")
        return
    color = "green" if progress.status == "completed" else "red"
    console.print(
        f"[{color}]{progress.status}[/{color}]  "
        f"{len(progress.completed_pages)}/{progress.total_pages} pages cached",
    )
    if progress.failed_pages:
        console.print(f"[yellow]Failed pages:[/yellow] {', '.join(map(str, progress.failed_pages))}")
    if progress.error:
        console.print(f"[red]Error:[/red] {progress.error}")
        raise typer.Exit(1)


@app.command()
def check(username: str = typer.Argument(None, help="Discogs username (default: discogs.username)")) -> None:
    """Count items added on Discogs since the cache was fetched."""
    name = _resolve_username(username)
    result = run_with_cache(lambda cache: cache.check_for_new_items(name))
    if not result.success:
        console.print(f"[red]Error:[/red] {result.error}")
        raise typer.Exit(1)
    console.print(f"  new items:     [bold]{result.new_items_count}[/bold]")
    console.print(f"  cache fetched: {result.latest_cache_date}")
    console.print(f"  newest remote: {result.latest_remote_date}")
    if result.ordering_violated:
        console.print("[yellow]Discogs returned items out of order; the count may be approximate.[/yellow]")


@app.command()
def update(username: str = typer.Argument(None, help="Discogs username (default: discogs.username)")) -> None:
    """Merge newly added items into the cached pages."""
    name = _resolve_username(username)
    result = run_with_cache(lambda cache: cache.update_cache_with_new_items(name))
    if not result.success:
        console.print(f"[red]Error:[/red] {result.error}")
        raise typer.Exit(1)
    console.print(
        f"[green]Added {result.new_items_added} items[/green] "
        f"({result.pages_written} pages written, {result.pages_removed} removed)",
    )


@app.command()
def search(
    query: str = typer.Argument(help="Text to match against artist and title"),
    username: str = typer.Option(None, "--user", "-u", help="Discogs username (default: discogs.username)"),
    number: int = typer.Option(1, "--page", "-n", help="Result page"),
    per_page: int = typer.Option(50, "--per-page", help="Results per page"),
) -> None:
    """Search the cached collection."""
    from recordcache.sync.search import CacheSearch

    name = _resolve_username(username)
    result = run_with_cache(
        lambda cache: CacheSearch(cache).search_from_cache(name, query, number, per_page)
    )
    if not result.items:
        console.print(f"[dim]No cached items match {query!r}.[/dim]")
        return
    _print_items(result.items, f"{result.total} matches — page {result.page}/{result.total_pages}")


@app.command()
def progress(username: str = typer.Argument(None, help="Discogs username (default: discogs.username)")) -> None:
    """Show the state of the last preload."""
    name = _resolve_username(username)
    result = run_with_cache(lambda cache: cache.get_progress(name))
    if result is None:
        console.print("[dim]No preload recorded.[/dim]")
        return
    colors = {"loading": "blue", "completed": "green", "failed": "red"}
    color = colors.get(result.status, "white")
    console.print(f"  [bold]Status:[/bold]  [{color}]{result.status}[/{color}]")
    console.print(f"  [bold]Pages:[/bold]   {len(result.completed_pages)}/{result.total_pages}")
    console.print(f"  [bold]Started:[/bold] {_human_time(result.start_time)}")
    console.print(f"  [bold]Ended:[/bold]   {_human_time(result.end_time)}")
    if result.failed_pages:
        console.print(f"  [bold]Failed:[/bold]  {', '.join(map(str, result.failed_pages))}")
    if result.error:
        console.print(f"  [red]Error: {result.error}[/red]")


@app.command()
def clear(
    username: str = typer.Argument(None, help="Only clear this user's pages"),
    all_users: bool = typer.Option(False, "--all", help="Clear cached pages of every user"),
) -> None:
    """Delete cached collection pages (progress records are kept)."""
    if not username and not all_users:
        username = _resolve_username(None)
    target = None if all_users else username
    result = run_with_cache(lambda cache: cache.clear_cache(target))
    if not result.success:
        console.print(f"[red]Error:[/red] {result.error}")
        raise typer.Exit(1)
    console.print(f"[green]Deleted {result.deleted} cached pages.[/green]")


@app.command()
def logs(
    tail_lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show"),
    sync: bool = typer.Option(False, "--sync", help="Show sync.log (JSON) instead of recordcache.log"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow log output (like tail -f)"),
) -> None:
    """Show recent log output (supports --sync for the JSON cache log, --follow for live tail)."""
    filename = "sync.log" if sync else "recordcache.log"
    log_file = get_base_dir() / "logs" / filename
    if not log_file.exists():
        console.print(f"[yellow]Log file not found:[/yellow] {log_file}")
        raise typer.Exit(1)

    if follow:
        _follow_log(log_file, tail_lines)
        return

    with open(log_file, encoding="utf-8") as fh:
        last_lines = deque(fh, maxlen=tail_lines)

    if not last_lines:
        console.print("[dim]Log file is empty.[/dim]")
        return

    for line in last_lines:
        _print_log_line(line)


def _log_line_style(line: str) -> str | None:
    """Return a Rich style string based on the log level found in *line*.

    Matches structlog formats only:
    - ConsoleRenderer: ``[error    ]``
    - JSONRenderer: ``"level": "error"``
    """
    lower = line.lower()
    if "[error" in lower or "[critical" in lower or '"level": "error"' in lower or '"level": "critical"' in lower:
        return "red"
    if "[warning" in lower or '"level": "warning"' in lower:
        return "yellow"
    if "[debug" in lower or '"level": "debug"' in lower:
        return "dim"
    return None


def _print_log_line(line: str) -> None:
    line = line.rstrip("\n")
    if not line:
        return
    console.print(line, style=_log_line_style(line), highlight=False, markup=False)


def _follow_log(log_file: Path, initial_lines: int = 10) -> None:
    """Follow a log file, printing new lines as they appear (like ``tail -f``)."""
    import time

    with open(log_file, encoding="utf-8") as fh:
        last = deque(fh, maxlen=initial_lines)
    for line in last:
        _print_log_line(line)

    with open(log_file, encoding="utf-8") as fh:
        fh.seek(0, 2)  # seek to end
        try:
            while True:
                line = fh.readline()
                if line:
                    _print_log_line(line)
                else:
                    time.sleep(0.5)
        except KeyboardInterrupt:
            pass


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


def _mask(secret: SecretStr) -> str:
    """Return '***' if the secret is non-empty, else '(not set)'."""
    return "[bold]***[/bold]" if secret.get_secret_value() else "[dim](not set)[/dim]"


config_app = typer.Typer(name="config", help="View and modify configuration.", add_completion=False)
app.add_typer(config_app)


@config_app.command(name="show")
def config_show() -> None:
    """Show current configuration (secrets are masked)."""
    cfg = load_config()

    console.print("\n[bold]Current Configuration[/bold]\n")

    console.print("[bold cyan]\\[daemon][/bold cyan]")
    console.print(f"  api_port  = {cfg.daemon.api_port}")
    console.print(f"  log_level = {cfg.daemon.log_level}")

    console.print("\n[bold cyan]\\[discogs][/bold cyan]")
    console.print(f"  username        = {cfg.discogs.username or '[dim](not set)[/dim]'}")
    console.print(f"  token           = {_mask(cfg.discogs.token)}")
    console.print(f"  user_agent      = {cfg.discogs.user_agent}")
    console.print(f"  base_url        = {cfg.discogs.base_url}")
    console.print(f"  timeout_seconds = {cfg.discogs.timeout_seconds}")

    console.print("\n[bold cyan]\\[cache][/bold cyan]")
    for key, value in cfg.cache.model_dump().items():
        console.print(f"  {key} = {value}")

    console.print("\n[bold cyan]\\[sync][/bold cyan]")
    console.print(f"  interval_minutes = {cfg.sync.interval_minutes}")
    console.print(f"  auto_refresh     = {cfg.sync.auto_refresh}")
    console.print()


@config_app.command(name="set")
def config_set(
    key: str = typer.Argument(help="Dotted key, e.g. cache.page_size"),
    value: str = typer.Argument(help="New value"),
) -> None:
    """Set a configuration value (e.g. recordcache config set discogs.username alice)."""

    parts = key.split(".", maxsplit=1)
    if len(parts) != 2:
        console.print("[red]Key must be in section.field format (e.g. discogs.username).[/red]")
        raise typer.Exit(1)

    section_name, field_name = parts

    cfg = load_config()
    section_map = {
        "daemon": cfg.daemon,
        "discogs": cfg.discogs,
        "cache": cfg.cache,
        "sync": cfg.sync,
    }

    if section_name not in section_map:
        console.print(f"[red]Unknown section:[/red] {section_name}")
        console.print(f"[dim]Valid sections: {', '.join(section_map)}[/dim]")
        raise typer.Exit(1)

    section_model = section_map[section_name]
    fields = type(section_model).model_fields
    if field_name not in fields:
        console.print(f"[red]Unknown field:[/red] {section_name}.{field_name}")
        console.print(f"[dim]Valid fields: {', '.join(fields)}[/dim]")
        raise typer.Exit(1)

    try:
        coerced = _coerce_value(value, fields[field_name].annotation)
        section_data = section_model.model_dump(mode="python")
        section_data[field_name] = coerced
        new_section = type(section_model)(**section_data)
    except (ValueError, TypeError) as exc:
        console.print(f"[red]Invalid value:[/red] {exc}")
        raise typer.Exit(1) from exc

    setattr(cfg, section_name, new_section)
    save_config(cfg)

    display_val = "***" if isinstance(coerced, SecretStr) else coerced
    console.print(f"[green]Set[/green] {key} = {display_val}")


def _coerce_value(raw: str, field_type: type) -> object:
    """Coerce a string value to the expected field type."""
    if field_type is SecretStr:
        return SecretStr(raw)

    if field_type is bool:
        if raw.lower() in ("true", "1", "yes"):
            return True
        if raw.lower() in ("false", "0", "no"):
            return False
        msg = f"Cannot convert '{raw}' to bool (use true/false)"
        raise ValueError(msg)

    if field_type is int:
        return int(raw)

    if field_type is float:
        return float(raw)

    return raw
