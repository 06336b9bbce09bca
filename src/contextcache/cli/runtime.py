"""Shared plumbing for CLI commands: config, database, service lifecycle."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

import typer
from rich.console import Console

from contextcache.build.service import ContextService
from contextcache.cli.errors import (
    err_build_in_progress,
    err_config,
    err_document_too_large,
    err_invalid_key,
    err_unknown_category,
    err_unknown_documents,
    err_upstream,
)
from contextcache.config import ConfigError, load_config
from contextcache.db.connection import Database
from contextcache.db.schema import initialize
from contextcache.errors import (
    BuildInProgressError,
    ContextCacheError,
    ContextOverflowError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from contextcache.sources import DirectoryDocumentSource

console = Console()

T = TypeVar("T")


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@contextmanager
def open_service(db: Path | None, docs: Path) -> Iterator[ContextService]:
    """Load config, open the cache database and yield a ContextService."""
    try:
        cfg = load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc

    db_path = db if db is not None else Path(cfg.cache.db_path)
    conn = Database(db_path).connect()
    initialize(conn)
    try:
        yield ContextService.from_config(cfg, DirectoryDocumentSource(docs), conn)
    finally:
        conn.close()


def run(service: ContextService, action: Callable[[ContextService], Awaitable[T]]) -> T:
    """Run *action* on a fresh event loop, mapping domain errors to exit code 1."""

    async def _main() -> T:
        try:
            return await action(service)
        finally:
            await service.aclose()

    try:
        return asyncio.run(_main())
    except ContextCacheError as exc:
        console.print(_render_error(service, exc))
        raise typer.Exit(1) from exc


def _render_error(service: ContextService, exc: ContextCacheError) -> str:
    if isinstance(exc, BuildInProgressError):
        return err_build_in_progress(exc.key.project, exc.key.document_type)
    if isinstance(exc, ValidationError):
        if "model category" in str(exc):
            known = sorted(service.config.get_model_categories())
            return err_unknown_category(str(exc), known)
        return err_invalid_key(str(exc))
    if isinstance(exc, NotFoundError):
        return err_unknown_documents(str(exc))
    if isinstance(exc, ContextOverflowError):
        return err_document_too_large(str(exc))
    if isinstance(exc, UpstreamError):
        return err_upstream(str(exc))
    return f"[red]Error:[/] {exc}"
