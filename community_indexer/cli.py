#!/usr/bin/env python3
"""
Community Firehose Indexer

Subscribes to Jetstream for the mlcommons.community.* collections and mirrors
communities, posts and votes into PostgreSQL.

Usage:
    community-indexer run
    community-indexer run --cursor 1725911162329308
    community-indexer init-db
    community-indexer cursor
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from .config import Settings, configure_logging, WRITE_FAILURE_POLICIES
from .cursor import PostgresCursorStore, make_cursor_store
from .database import DatabasePool
from .engine import SyncEngine, SyncHalted
from .router import EventRouter
from .stream import StreamClient, ReconnectExhausted

console = Console()
logger = logging.getLogger(__name__)


def print_summary(metrics) -> None:
    console.print("\n" + "=" * 60)
    console.print("[bold green]Indexer stopped[/bold green]")
    console.print("=" * 60)

    elapsed = metrics['elapsed_seconds']
    rate = metrics['events_processed'] / elapsed if elapsed > 0 else 0

    table = Table(show_header=False, box=None)
    table.add_row("Frames Received:", f"[cyan]{metrics['frames_received']:,}[/cyan]")
    table.add_row("Envelopes Delivered:", f"[cyan]{metrics['envelopes_delivered']:,}[/cyan]")
    table.add_row("Events Processed:", f"[green]{metrics['events_processed']:,}[/green]")
    table.add_row("Errors:", f"[red]{metrics['errors']:,}[/red]")
    table.add_row("Abandoned:", f"[yellow]{metrics['abandoned']:,}[/yellow]")
    table.add_row("Duration:", f"[blue]{elapsed:.1f}s[/blue]")
    table.add_row("Average Rate:", f"[magenta]{rate:,.2f} events/sec[/magenta]")
    table.add_row("Final Cursor:", f"[bold]{metrics['cursor']}[/bold]")

    console.print(table)
    console.print("=" * 60 + "\n")


async def run_indexer(settings: Settings, start_cursor: Optional[int] = None) -> int:
    """Run the sync engine until a signal or a fatal error; returns an exit code"""
    db_pool = DatabasePool(settings.database_url, settings.db_pool_size)
    await db_pool.connect()

    cursor_store = make_cursor_store(settings, db_pool)
    client = StreamClient(
        url=settings.jetstream_url,
        base_delay=settings.reconnect_base_delay,
        max_delay=settings.reconnect_max_delay,
        max_attempts=settings.reconnect_max_attempts,
        resume_inclusive=settings.resume_inclusive,
    )
    engine = SyncEngine(
        client,
        db_pool,
        EventRouter.default(),
        cursor_store=cursor_store,
        queue_size=settings.queue_size,
        checkpoint_interval=settings.checkpoint_interval,
        on_write_failure=settings.on_write_failure,
    )

    loop = asyncio.get_running_loop()

    stop_tasks = []

    def signal_handler(signum):
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        stop_tasks.append(loop.create_task(engine.stop()))

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, signal_handler, signum)

    exit_code = 0
    try:
        if start_cursor is None:
            start_cursor = await cursor_store.load()
            if start_cursor is not None:
                logger.info(f"Resuming from saved cursor: {start_cursor}")
            else:
                logger.info("No saved cursor found, starting from current position")

        final_cursor = await engine.run(start_cursor)
        logger.info(f"Final cursor: {final_cursor}")
    except ReconnectExhausted as e:
        logger.error(f"Fatal: {e}. Last handled cursor: {engine.cursor}")
        exit_code = 1
    except SyncHalted as e:
        logger.error(f"Fatal: {e}. Last handled cursor: {engine.cursor}")
        exit_code = 1
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)
        await cursor_store.close()
        await db_pool.close()

    print_summary(engine.get_metrics())
    return exit_code


@click.group()
def main():
    """Community firehose indexer"""


@main.command()
@click.option('--cursor', 'start_cursor', type=int, default=None, help='Start from this cursor instead of the saved one')
@click.option('--database-url', envvar='DATABASE_URL', help='PostgreSQL connection URL')
@click.option('--jetstream-url', envvar='JETSTREAM_URL', default=None, help='Jetstream subscribe endpoint')
@click.option('--on-write-failure', envvar='ON_WRITE_FAILURE', type=click.Choice(WRITE_FAILURE_POLICIES), default=None,
              help='skip: log and advance past a failed envelope; halt: stop without advancing')
@click.option('--log-level', envvar='LOG_LEVEL', default=None, help='Logging level')
def run(start_cursor, database_url, jetstream_url, on_write_failure, log_level):
    """
    Mirror communities, posts and votes from the firehose.

    Examples:
        # Resume from the saved cursor
        community-indexer run

        # Replay from a specific point in time (microseconds)
        community-indexer run --cursor 1725911162329308
    """
    settings = Settings.from_env()
    if database_url:
        settings.database_url = database_url
    if jetstream_url:
        settings.jetstream_url = jetstream_url
    if on_write_failure:
        settings.on_write_failure = on_write_failure
    if log_level:
        settings.log_level = log_level.upper()

    try:
        settings.validate()
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(2)

    configure_logging(settings.log_level)

    console.print("\n[bold cyan]Community Firehose Indexer[/bold cyan]")
    console.print("=" * 60)
    console.print(f"Jetstream URL:      {settings.jetstream_url}")
    console.print(f"Database Pool:      {settings.db_pool_size} connections")
    console.print(f"Write failures:     {settings.on_write_failure}")
    console.print(f"Max reconnects:     {settings.reconnect_max_attempts}")
    console.print("=" * 60 + "\n")

    exit_code = asyncio.run(run_indexer(settings, start_cursor))
    sys.exit(exit_code)


@main.command('init-db')
@click.option('--database-url', envvar='DATABASE_URL', help='PostgreSQL connection URL')
def init_db(database_url):
    """Create the mirror tables if they do not exist."""
    settings = Settings.from_env()
    if database_url:
        settings.database_url = database_url
    configure_logging(settings.log_level)

    async def _init():
        db_pool = DatabasePool(settings.database_url, pool_size=2)
        await db_pool.connect(verify_schema=False)
        try:
            await db_pool.init_schema()
        finally:
            await db_pool.close()

    asyncio.run(_init())
    console.print("✓ Mirror schema ready", style="green")


@main.command('cursor')
@click.option('--database-url', envvar='DATABASE_URL', help='PostgreSQL connection URL')
def show_cursor(database_url):
    """Print the persisted cursor."""
    settings = Settings.from_env()
    if database_url:
        settings.database_url = database_url
    configure_logging(settings.log_level)

    async def _load():
        db_pool = DatabasePool(settings.database_url, pool_size=2)
        cursor_store = make_cursor_store(settings, db_pool)
        try:
            if isinstance(cursor_store, PostgresCursorStore):
                await db_pool.connect()
            return await cursor_store.load()
        finally:
            await cursor_store.close()
            await db_pool.close()

    cursor = asyncio.run(_load())
    if cursor is None:
        console.print("[yellow]No saved cursor[/yellow]")
    else:
        console.print(str(cursor))


if __name__ == '__main__':
    main()
