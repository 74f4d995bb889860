"""CLI entry-point for the forum harvester."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import (
    BrowserConfig,
    DatabaseConfig,
    GuardianConfig,
    HarvesterConfig,
    S3Config,
    SiteConfig,
)
from .db import Database
from .errors import HarvesterError, MemoryExhaustion, PartitionMisconfiguration
from .orchestrator import ThreadState
from .partition import owner_of
from .worker import Worker, seed_dry_run_store

console = Console()


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
    )
    # Suppress noisy libraries
    for name in ("httpx", "httpcore", "boto3", "botocore", "urllib3", "s3transfer", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)


def _print_stats(stats: dict[str, Any], title: str = "Harvest Summary") -> None:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="bold")
    table.add_column("Count", justify="right")
    for key, val in stats.items():
        table.add_row(key.replace("_", " ").capitalize(), str(val))
    console.print(table)


@click.group()
@click.option("--db-host", envvar="DB_HOST", default="localhost", help="PostgreSQL host")
@click.option("--db-port", envvar="DB_PORT", default=5432, type=int, help="PostgreSQL port")
@click.option("--db-name", envvar="DB_NAME", default="forumharvest", help="PostgreSQL database name")
@click.option("--db-user", envvar="DB_USER", default="forumharvest", help="PostgreSQL user")
@click.option("--db-password", envvar="DB_PASSWORD", default="forumharvest", help="PostgreSQL password")
@click.option("--s3-endpoint", envvar="S3_ENDPOINT", default="http://localhost:9000", help="MinIO/S3 endpoint URL")
@click.option("--s3-access-key", envvar="S3_ACCESS_KEY", default="minioadmin", help="S3 access key")
@click.option("--s3-secret-key", envvar="S3_SECRET_KEY", default="minioadmin", help="S3 secret key")
@click.option("--s3-bucket", envvar="S3_BUCKET", default="forumharvest", help="S3 bucket name")
@click.option("--site-url", envvar="FORUM_SITE_URL", default="https://forum.example.com", help="Forum base URL")
@click.option("--forum-path", envvar="FORUM_PATH", default="/forums/general.1/", help="Path of the forum listing")
@click.option("--worker-index", envvar="NODE_INDEX", default=0, type=int, help="This worker's index")
@click.option("--worker-count", envvar="NODE_COUNT", default=1, type=int, help="Total number of workers")
@click.option("--headless/--headed", default=True, help="Run the browser without a window")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, **kwargs: Any) -> None:
    """Forum Harvester – mirror forum threads and their media.

    Walks the threads this worker owns page by page, stores posts in
    PostgreSQL and relocates images and videos to MinIO/S3.
    """
    _setup_logging(bool(kwargs.pop("verbose")))
    ctx.ensure_object(dict)
    s3_env = S3Config.from_env()
    site_env = SiteConfig.from_env()
    ctx.obj["db_cfg"] = DatabaseConfig(
        host=kwargs["db_host"],
        port=kwargs["db_port"],
        dbname=kwargs["db_name"],
        user=kwargs["db_user"],
        password=kwargs["db_password"],
    )
    ctx.obj["s3_cfg"] = S3Config(
        endpoint=kwargs["s3_endpoint"],
        region=s3_env.region,
        access_key=kwargs["s3_access_key"],
        secret_key=kwargs["s3_secret_key"],
        bucket=kwargs["s3_bucket"],
        use_ssl=s3_env.use_ssl,
        verify_tls=s3_env.verify_tls,
        create_bucket=s3_env.create_bucket,
        public_base_url=s3_env.public_base_url,
    )
    ctx.obj["site_cfg"] = SiteConfig(
        site_url=kwargs["site_url"],
        forum_path=kwargs["forum_path"],
        username=site_env.username,
        password=site_env.password,
        cookies_path=site_env.cookies_path,
    )
    ctx.obj["browser_cfg"] = BrowserConfig(headless=kwargs["headless"])
    ctx.obj["worker_index"] = kwargs["worker_index"]
    ctx.obj["worker_count"] = kwargs["worker_count"]


def _make_config(ctx: click.Context, *, media: bool = True, dry_run: bool = False) -> HarvesterConfig:
    try:
        return HarvesterConfig(
            db=ctx.obj["db_cfg"],
            s3=ctx.obj["s3_cfg"],
            site=ctx.obj["site_cfg"],
            browser=ctx.obj["browser_cfg"],
            guardian=GuardianConfig.from_env(),
            worker_index=ctx.obj["worker_index"],
            worker_count=ctx.obj["worker_count"],
            download_media=media,
            dry_run=dry_run,
        )
    except PartitionMisconfiguration as exc:
        raise click.UsageError(str(exc)) from exc


def _run(coro_factory: Callable[[], Awaitable[Any]]) -> Any:
    """Run a coroutine, turning harvester errors into exit codes."""
    try:
        return asyncio.run(coro_factory())
    except MemoryExhaustion as exc:
        console.print(f"[red]✗[/red] Memory exhausted, host restart requested: {exc}")
        sys.exit(3)
    except HarvesterError as exc:
        console.print(f"[red]✗[/red] {exc}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        sys.exit(130)


# ─── Commands ────────────────────────────────────────────────────


@cli.command(name="init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the forum tables if they do not exist."""
    try:
        with Database(ctx.obj["db_cfg"]) as db:
            db.ensure_schema()
    except HarvesterError as exc:
        console.print(f"[red]✗[/red] {exc}")
        sys.exit(1)
    console.print("[green]✓[/green] Schema ready")


@cli.command()
@click.option("--full", is_flag=True, help="Walk every listing page instead of stopping when caught up")
@click.option("--max-pages", default=0, type=int, help="Max listing pages to read (0 = all)")
@click.option("--dry-run", is_flag=True, help="Read the listing without writing to the DB")
@click.pass_context
def discover(ctx: click.Context, full: bool, max_pages: int, dry_run: bool) -> None:
    """Record thread activity from the forum listing.

    Example: forumharvest discover --max-pages 5
    """
    cfg = _make_config(ctx, media=False, dry_run=dry_run)

    async def go() -> None:
        async with Worker(cfg) as w:
            count = await w.discover(full=full, max_pages=max_pages)
            console.print(f"[green]✓[/green] Recorded {count} thread(s)")
            _print_stats(w.scanner.stats, "Discovery Summary")

    _run(go)


@cli.command()
@click.option("--limit", default=0, type=int, help="Max threads per pass (0 = all)")
@click.option("--watch", default=0.0, type=float, help="Repeat passes, idling this many seconds between them")
@click.option("--no-media", is_flag=True, help="Skip media ingestion")
@click.option("--dry-run", is_flag=True, help="Crawl without writing to the DB or storage")
@click.pass_context
def run(ctx: click.Context, limit: int, watch: float, no_media: bool, dry_run: bool) -> None:
    """Sync the threads this worker owns.

    Example: forumharvest --worker-index 1 --worker-count 4 run --limit 10
    """
    cfg = _make_config(ctx, media=not no_media, dry_run=dry_run)

    async def go() -> None:
        store = seed_dry_run_store(cfg) if cfg.dry_run else None
        async with Worker(cfg, store=store) as w:
            try:
                if watch > 0:
                    await w.watch(watch, limit)
                else:
                    outcomes = await w.run_pass(limit)
                    console.print(f"[green]✓[/green] {cfg.partition}: {len(outcomes)} thread(s) processed")
            finally:
                _print_stats(w.stats)

    _run(go)


@cli.command()
@click.argument("thread_id", type=int)
@click.option("--no-media", is_flag=True, help="Skip media ingestion")
@click.option("--dry-run", is_flag=True, help="Crawl without writing to the DB or storage")
@click.pass_context
def thread(ctx: click.Context, thread_id: int, no_media: bool, dry_run: bool) -> None:
    """Sync a single thread, regardless of partition.

    Example: forumharvest thread 3654511
    """
    cfg = _make_config(ctx, media=not no_media, dry_run=dry_run)

    async def go() -> None:
        store = seed_dry_run_store(cfg, thread_id) if cfg.dry_run else None
        async with Worker(cfg, store=store) as w:
            outcome = await w.sync_thread(thread_id)
            if outcome.state is ThreadState.COMPLETED:
                console.print(f"[green]✓[/green] Thread {thread_id} synced through page {outcome.last_page}")
            else:
                console.print(f"[red]✗[/red] Thread {thread_id} stopped at page {outcome.last_page or outcome.start_page}")
            _print_stats(w.stats)
            if outcome.state is not ThreadState.COMPLETED:
                sys.exit(1)

    _run(go)


@cli.command()
@click.option("--limit", default=20, type=int, help="Number of threads to show (0 = all)")
@click.pass_context
def pending(ctx: click.Context, limit: int) -> None:
    """List the threads this worker would sync next."""
    cfg = _make_config(ctx)
    try:
        with Database(cfg.db) as db:
            threads = db.find_threads_needing_sync(cfg.partition.owns)
    except HarvesterError as exc:
        console.print(f"[red]✗[/red] {exc}")
        sys.exit(1)

    table = Table(title=f"Pending threads ({cfg.partition})", show_header=True, header_style="bold cyan")
    table.add_column("ID", style="bold", justify="right")
    table.add_column("Title", max_width=40)
    table.add_column("Last activity")
    table.add_column("Page", justify="right")
    table.add_column("Synced through")
    shown = threads[:limit] if limit > 0 else threads
    for t in shown:
        table.add_row(
            str(t.thread_id),
            t.title[:40],
            t.last_activity_at.isoformat() if t.last_activity_at else "",
            str(t.last_synced_page or ""),
            t.synced_through_at.isoformat() if t.synced_through_at else "",
        )
    console.print(table)
    console.print(f"{len(threads)} thread(s) pending")


@cli.command()
@click.argument("thread_id", type=int)
@click.pass_context
def owner(ctx: click.Context, thread_id: int) -> None:
    """Show which worker owns a thread."""
    cfg = _make_config(ctx)
    index = owner_of(thread_id, cfg.worker_count)
    mine = " (this worker)" if cfg.partition.owns(thread_id) else ""
    console.print(f"Thread {thread_id} → worker {index}/{cfg.worker_count}{mine}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
