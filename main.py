"""
Email Profile Crawler command line interface
Runs the crawler, optionally with the monitoring API, and inspects an existing work queue
"""
# -*- coding: utf-8 -*-
import asyncio
import contextlib
import os
import sys
from typing import Optional

import typer
import uvicorn
from loguru import logger

from api_service import create_app
from config import Settings, get_settings, reload_settings
from coordinator import RunCoordinator
from credential_pool import CredentialPoolManager
from database import StoreError, WorkQueueStore
from file_store import AccountStore, CredentialCache, FileManager
from lookup_client import LookupClient
from provisioning_client import ProvisioningClient

# CLI Application
app = typer.Typer(help="Email Profile Crawler - bulk profile lookups with credential rotation")


class MonitorServer(uvicorn.Server):
    """uvicorn server that leaves SIGINT/SIGTERM to the run coordinator"""

    def install_signal_handlers(self):
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def setup_logging(settings: Optional[Settings] = None):
    """Console logging plus rotating file sinks when enabled"""
    settings = settings or get_settings()
    logger.remove()  # Remove default handler

    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    )

    logger.add(
        sys.stdout,
        level=settings.log_level,
        format=log_format,
        colorize=True,
        backtrace=False,
        diagnose=False
    )

    if settings.log_file_enabled:
        os.makedirs(settings.log_file_path, exist_ok=True)

        logger.add(
            f"{settings.log_file_path}/crawler.log",
            level=settings.log_level,
            format=log_format,
            rotation=settings.log_rotation,
            retention=settings.log_retention,
            compression="gz",
            colorize=False
        )

        logger.add(
            f"{settings.log_file_path}/errors.log",
            level="ERROR",
            format=log_format,
            rotation=settings.log_rotation,
            retention="90 days",
            compression="gz",
            colorize=False
        )

    logger.info(f"Logging configured (level: {settings.log_level})")


def _load_settings(**overrides) -> Settings:
    """Settings from the environment with CLI options applied on top"""
    overrides = {k: v for k, v in overrides.items() if v is not None}
    try:
        return reload_settings(**overrides)
    except ValueError as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(1)


def _print_report(report):
    s = report.stats
    typer.echo(f"Finished: {report.shutdown_reason} after {report.duration_seconds:.1f}s "
               f"({report.dispatch_rounds} rounds)")
    typer.echo(f"Success: {s.success} (with data {s.has_result}, without data {s.no_result})")
    typer.echo(f"Failed: {s.failed}")
    typer.echo(f"Pending: {s.pending}")


@app.command()
def run(
    identifiers_file: Optional[str] = typer.Option(None, "--emails", "-e", help="Identifier list file"),
    credentials_file: Optional[str] = typer.Option(None, "--tokens", "-t", help="Credential cache file"),
    accounts_file: Optional[str] = typer.Option(None, "--accounts", "-a", help="Raw account file"),
    results_file: Optional[str] = typer.Option(None, "--output", "-o", help="Result file"),
    max_concurrency: Optional[int] = typer.Option(None, "--max-concurrent", "-c", help="Number of lookup workers"),
    min_tokens: Optional[int] = typer.Option(None, "--min-tokens", help="Valid credentials required per round"),
    retry_rounds: Optional[int] = typer.Option(None, "--retry-rounds", help="Maximum retry rounds"),
    resume: bool = typer.Option(False, "--resume", help="Keep the existing work queue and add new identifiers"),
):
    """Import identifiers and crawl until done, out of credentials or interrupted"""
    settings = _load_settings(
        identifiers_file=identifiers_file,
        credentials_file=credentials_file,
        accounts_file=accounts_file,
        results_file=results_file,
        max_concurrency=max_concurrency,
        min_tokens=min_tokens,
        retry_rounds=retry_rounds,
    )
    setup_logging(settings)

    async def run_crawler():
        coordinator = RunCoordinator(settings)
        return await coordinator.run(fresh=not resume, install_signals=True)

    try:
        report = asyncio.run(run_crawler())
    except Exception as e:
        logger.error(f"Crawler run failed: {e}")
        raise typer.Exit(1)

    _print_report(report)
    if report.shutdown_reason == "store_error":
        raise typer.Exit(1)


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port for the monitoring API"),
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Host for the monitoring API"),
    resume: bool = typer.Option(False, "--resume", help="Keep the existing work queue and add new identifiers"),
):
    """Run the crawler together with the monitoring API"""
    settings = _load_settings(api_port=port, api_host=host)
    setup_logging(settings)

    async def run_service():
        coordinator = RunCoordinator(settings)
        config = uvicorn.Config(
            create_app(coordinator),
            host=settings.api_host,
            port=settings.api_port,
            log_level="info",
            access_log=False
        )
        server = MonitorServer(config)

        logger.info(f"Starting monitoring API on {settings.api_host}:{settings.api_port}")
        server_task = asyncio.create_task(server.serve())
        try:
            return await coordinator.run(fresh=not resume, install_signals=True)
        finally:
            server.should_exit = True
            await asyncio.gather(server_task, return_exceptions=True)
            logger.info("Service shutdown complete")

    try:
        report = asyncio.run(run_service())
    except Exception as e:
        logger.error(f"Service failed: {e}")
        raise typer.Exit(1)

    _print_report(report)


@app.command()
def stats(
    database_path: Optional[str] = typer.Option(None, "--db", help="Work queue database"),
):
    """Show statistics of an existing work queue"""
    settings = _load_settings(database_path=database_path)

    async def run():
        store = WorkQueueStore(settings.database_path)
        try:
            return await store.stats(), await store.info()
        finally:
            await store.close()

    if not os.path.exists(settings.database_path):
        typer.echo(f"Database not found: {settings.database_path}", err=True)
        raise typer.Exit(1)

    try:
        run_stats, info = asyncio.run(run())
    except StoreError as e:
        typer.echo(f"Failed to read stats: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Database: {info['db_path']} ({info.get('db_file_size', 0)} bytes)")
    typer.echo(f"Total: {run_stats.total}")
    typer.echo(f"Pending: {run_stats.pending}")
    typer.echo(f"Success: {run_stats.success}")
    typer.echo(f"Failed: {run_stats.failed}")
    typer.echo(f"With data: {run_stats.has_result}")
    typer.echo(f"Without data: {run_stats.no_result}")


@app.command()
def export_pending(
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Hand-off file (defaults to the identifier file)"),
    database_path: Optional[str] = typer.Option(None, "--db", help="Work queue database"),
):
    """Write the pending identifiers of an existing work queue to the hand-off file"""
    settings = _load_settings(database_path=database_path, handoff_file=output)

    if not os.path.exists(settings.database_path):
        typer.echo(f"Database not found: {settings.database_path}", err=True)
        raise typer.Exit(1)

    async def run():
        store = WorkQueueStore(settings.database_path)
        try:
            return await store.export_pending(settings.handoff_path)
        finally:
            await store.close()

    try:
        count = asyncio.run(run())
    except StoreError as e:
        typer.echo(f"Export failed: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Exported {count} pending identifiers to {settings.handoff_path}")


@app.command()
def check_tokens(
    credentials_file: Optional[str] = typer.Option(None, "--tokens", "-t", help="Credential cache file"),
    prune: bool = typer.Option(True, "--prune/--no-prune", help="Remove rejected credentials from the cache"),
):
    """Validate the cached credentials against the lookup API"""
    settings = _load_settings(credentials_file=credentials_file)

    async def run():
        file_manager = FileManager()
        lookup = LookupClient(settings)
        provisioner = ProvisioningClient(settings)
        cache = CredentialCache(settings.credentials_file, file_manager)
        pool = CredentialPoolManager(
            lookup, provisioner, cache,
            AccountStore(settings.accounts_file, file_manager),
            settings=settings,
        )
        try:
            cached = cache.load()
            valid, rejected = await pool.probe_all(cached)
            if prune and rejected:
                cache.remove(rejected)
            return len(cached), len(valid), len(rejected)
        finally:
            await lookup.close()
            await provisioner.close()

    total, valid, rejected = asyncio.run(run())
    typer.echo(f"Credentials: {total} cached, {valid} valid, {rejected} rejected")
    if total and not valid:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
