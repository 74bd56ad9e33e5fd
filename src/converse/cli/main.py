"""
CLI for the converse cache service.

Commands:
    converse serve - Run the HTTP service
    converse config - Show current configuration
    converse version - Print version
    converse keys KIND ARGS... - Print a cache key and its TTL
    converse inspect - List cached keys grouped by namespace
    converse invalidate TYPE --field k=v - Dispatch an invalidation event
"""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import fields
from typing import Annotated, Any, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from converse import __version__
from converse.cache.factory import create_cache_service
from converse.cache.invalidation import EVENT_CLASSES, EventType, InvalidationDispatcher
from converse.cache.keys import CacheKeys, namespace_of, ttl_for_key
from converse.config import Settings, clear_settings_cache, get_settings
from converse.exceptions import InvalidEventError
from converse.logging import setup_logging

app = typer.Typer(
    name="converse",
    help="Converse - read-through cache service for a realtime chat backend",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)

KEY_KINDS = sorted(
    name for name, value in vars(CacheKeys).items() if isinstance(value, staticmethod)
)


def _load_settings() -> Settings:
    """Load settings or exit with a readable error."""
    load_dotenv()
    clear_settings_cache()
    try:
        return get_settings()
    except ValueError as e:
        error_console.print("[red]Configuration is invalid or incomplete.[/red]")
        error_console.print(str(e))
        error_console.print()
        error_console.print("Required environment variables:")
        error_console.print("  - BACKEND_URL")
        error_console.print("  - REDIS_URL (or CACHE_BACKEND=sqlite|memory)")
        raise typer.Exit(1) from e


def _coerce_fields(event_type: EventType, pairs: list[str]) -> dict[str, Any]:
    """Turn k=v pairs into a webhook body using the event's field kinds."""
    kinds = {f.metadata["wire"]: f.metadata["kind"] for f in fields(EVENT_CLASSES[event_type])}
    body: dict[str, Any] = {"type": event_type.value}
    for pair in pairs:
        name, sep, raw = pair.partition("=")
        if not sep:
            raise typer.BadParameter(f"Expected k=v, got {pair!r}", param_hint="--field")
        kind = kinds.get(name)
        if kind == "ids":
            body[name] = [part for part in raw.split(",") if part]
        elif kind == "flag":
            body[name] = raw.lower() in ("1", "true", "yes")
        else:
            body[name] = raw
    return body


@app.command()
def serve(
    host: Annotated[Optional[str], typer.Option("--host", help="Bind host")] = None,
    port: Annotated[Optional[int], typer.Option("--port", "-p", help="Bind port")] = None,
    reload: Annotated[bool, typer.Option("--reload", help="Reload on code changes")] = False,
) -> None:
    """Run the HTTP service with uvicorn."""
    import uvicorn

    from converse.api.app import create_app

    settings = _load_settings()
    setup_logging(log_level=settings.LOG_LEVEL, log_file=settings.LOG_FILE)

    if reload:
        uvicorn.run(
            "converse.api.app:create_app",
            factory=True,
            host=host or settings.HOST,
            port=port or settings.PORT,
            reload=True,
        )
        return

    uvicorn.run(create_app(settings), host=host or settings.HOST, port=port or settings.PORT)


@app.command()
def config() -> None:
    """Show current configuration.

    Displays all configuration values with secrets redacted.
    """
    console.print()
    console.print("[bold]Converse Configuration[/bold]")
    console.print()

    settings = _load_settings()

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in settings.redacted_display().items():
        display_value = str(value) if value is not None else "[dim]not set[/dim]"
        table.add_row(key, display_value)

    console.print(table)
    console.print()


@app.command()
def version() -> None:
    """Print the version number."""
    console.print(f"converse version {__version__}")


@app.command()
def keys(
    kind: Annotated[str, typer.Argument(help="Key kind, e.g. presence or messages")],
    args: Annotated[Optional[list[str]], typer.Argument(help="Key arguments")] = None,
) -> None:
    """Print the cache key for a domain concept and its TTL."""
    if kind not in KEY_KINDS:
        error_console.print(f"[red]Unknown key kind:[/red] {kind}")
        error_console.print(f"Available: {', '.join(KEY_KINDS)}")
        raise typer.Exit(1)

    values: list[Any] = list(args or [])
    if kind == "presence_batch":
        values = [values]

    try:
        if kind == "messages" and len(values) > 1:
            values[1] = int(values[1])
        result = getattr(CacheKeys, kind)(*values)
    except (TypeError, ValueError) as e:
        error_console.print(f"[red]Invalid arguments:[/red] {e}")
        raise typer.Exit(1) from e

    for key in result if isinstance(result, list) else [result]:
        ttl = ttl_for_key(key)
        console.print(f"{key}  [dim]ttl={ttl}[/dim]")


@app.command()
def inspect(
    pattern: Annotated[str, typer.Argument(help="Glob pattern")] = "*",
    show_keys: Annotated[bool, typer.Option("--keys", "-k", help="List every key")] = False,
) -> None:
    """List cached keys grouped by namespace."""
    settings = _load_settings()

    async def scan() -> list[str]:
        cache = await create_cache_service(settings)
        try:
            return await cache.scan(pattern)
        finally:
            await cache.close()

    found = asyncio.run(scan())

    counts: Counter[str] = Counter()
    for key in found:
        try:
            counts[namespace_of(key).value] += 1
        except ValueError:
            counts["(unknown)"] += 1

    table = Table(title=f"Cached keys matching {pattern!r}", show_header=True)
    table.add_column("Namespace", style="cyan")
    table.add_column("Keys", justify="right", style="green")
    for namespace, count in sorted(counts.items()):
        table.add_row(namespace, str(count))
    console.print(table)

    if show_keys:
        for key in sorted(found):
            console.print(key)


@app.command()
def invalidate(
    event_type: Annotated[str, typer.Argument(help="Event type, e.g. message.sent")],
    field: Annotated[
        Optional[list[str]],
        typer.Option("--field", "-f", help="Event field as k=v (lists comma-separated)"),
    ] = None,
) -> None:
    """Dispatch an invalidation event against the configured cache store."""
    try:
        kind = EventType(event_type)
    except ValueError as e:
        error_console.print(f"[red]Unknown event type:[/red] {event_type}")
        raise typer.Exit(1) from e

    body = _coerce_fields(kind, field or [])
    settings = _load_settings()

    async def run() -> Any:
        cache = await create_cache_service(settings)
        try:
            return await InvalidationDispatcher(cache).dispatch_body(body)
        finally:
            await cache.close()

    try:
        result = asyncio.run(run())
    except InvalidEventError as e:
        error_console.print(f"[red]Invalid event:[/red] {e}")
        raise typer.Exit(1) from e

    console.print(
        f"[bold]{result.label}[/bold]: deleted {result.deleted}, "
        f"failed {result.failed}, attempted {len(result.attempted)}"
    )
    if result.failed:
        raise typer.Exit(2)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
