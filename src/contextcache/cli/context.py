"""contextcache build / context / status / clear / cleanup commands.

Usage:
  contextcache build acme proposals --docs documents/
  contextcache context acme proposals --print
  contextcache status acme proposals
  contextcache clear acme proposals
  contextcache cleanup --max-age-hours 24
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.panel import Panel
from rich.table import Table

from contextcache.build.service import ContextService
from contextcache.cli.errors import err_build_failed, err_no_db
from contextcache.cli.runtime import console, open_service, run
from contextcache.errors import BuildInProgressError
from contextcache.models import BuildStatus, CacheStatus, ContextBundle

_DEFAULT_DOCS = Path("documents")

ProjectArg = Annotated[str, typer.Argument(help="Project name.")]
DocTypeArg = Annotated[str, typer.Argument(help="Document type, e.g. proposals.")]
DbOpt = Annotated[
    Path | None,
    typer.Option("--db", help="Cache database path (default: cache.db_path from config)."),
]
DocsOpt = Annotated[
    Path,
    typer.Option("--docs", help="Root of <project>/<document-type>/ document folders."),
]


def build_cmd(
    project: ProjectArg,
    document_type: DocTypeArg,
    db: DbOpt = None,
    docs: DocsOpt = _DEFAULT_DOCS,
) -> None:
    """Build the context bundle now and wait for it to finish."""

    async def _build(service: ContextService) -> BuildStatus:
        await service.trigger_build(project, document_type, immediate=True)
        return await service.wait_for_build(project, document_type)

    with open_service(db, docs) as service:
        status = run(service, _build)
        if status.status is CacheStatus.FAILED:
            console.print(err_build_failed(status.failure_reason))
            raise typer.Exit(1)
        _print_status(project, document_type, status)


def context_cmd(
    project: ProjectArg,
    document_type: DocTypeArg,
    db: DbOpt = None,
    docs: DocsOpt = _DEFAULT_DOCS,
    rebuild: Annotated[
        bool, typer.Option("--rebuild", help="Force a rebuild even if the cache is fresh.")
    ] = False,
    print_text: Annotated[
        bool, typer.Option("--print", help="Print the bundle text instead of a summary.")
    ] = False,
) -> None:
    """Show the cached context, building it first when it is missing or outdated."""

    async def _context(service: ContextService) -> tuple[CacheStatus, ContextBundle | None, str | None]:
        result = await service.get_context(project, document_type, force_rebuild=rebuild)
        if result.status in (CacheStatus.READY, CacheStatus.FAILED):
            return result.status, result.bundle, result.failure_reason
        # A CLI process does not outlive the debounce window: build in-process.
        try:
            await service.trigger_build(project, document_type, immediate=True)
        except BuildInProgressError:
            pass
        status = await service.wait_for_build(project, document_type)
        result = await service.get_context(project, document_type)
        return status.status, result.bundle, status.failure_reason

    with open_service(db, docs) as service:
        status, bundle, reason = run(service, _context)

    if status is CacheStatus.FAILED or bundle is None:
        console.print(err_build_failed(reason))
        raise typer.Exit(1)
    if print_text:
        typer.echo(bundle.text)
        return
    _print_bundle(bundle)


def status_cmd(
    project: ProjectArg,
    document_type: DocTypeArg,
    db: DbOpt = None,
    docs: DocsOpt = _DEFAULT_DOCS,
) -> None:
    """Show the cache status of one project/document type."""
    if db is not None and not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)

    with open_service(db, docs) as service:
        status = run(service, lambda s: s.get_build_status(project, document_type))
    _print_status(project, document_type, status)


def clear_cmd(
    project: ProjectArg,
    document_type: DocTypeArg,
    db: DbOpt = None,
    docs: DocsOpt = _DEFAULT_DOCS,
) -> None:
    """Invalidate the cached bundle; the next context request rebuilds it."""
    with open_service(db, docs) as service:
        run(service, lambda s: s.clear_cache(project, document_type))
    console.print(f"[green]✓[/] Cleared context cache for {project}/{document_type}")


def cleanup_cmd(
    db: DbOpt = None,
    max_age_hours: Annotated[
        float | None,
        typer.Option("--max-age-hours", help="Purge entries older than this (default from config)."),
    ] = None,
) -> None:
    """Purge cache entries older than the age threshold."""

    async def _cleanup(service: ContextService) -> int:
        return service.cleanup(max_age_hours)

    with open_service(db, _DEFAULT_DOCS) as service:
        purged = run(service, _cleanup)
    console.print(f"[green]✓[/] Purged {purged} cache entr{'y' if purged == 1 else 'ies'}")


# ---------------------------------------------------------------------------
# Renderers
# ---------------------------------------------------------------------------


_STATUS_STYLE = {
    CacheStatus.READY: "green",
    CacheStatus.BUILDING: "cyan",
    CacheStatus.PENDING: "cyan",
    CacheStatus.FAILED: "red",
    CacheStatus.INVALIDATED: "yellow",
    CacheStatus.NONE: "dim",
}


def _print_status(project: str, document_type: str, status: BuildStatus) -> None:
    style = _STATUS_STYLE[status.status]
    lines = [f"Status:    [{style}]{status.status.value}[/]"]
    if status.total_tokens is not None:
        lines.append(f"Tokens:    [bold]{status.total_tokens:,}[/]")
    if status.document_count is not None:
        lines.append(f"Documents: {status.document_count}")
    if status.age_seconds is not None:
        lines.append(f"Age:       [dim]{_format_age(status.age_seconds)}[/]")
    if status.failure_reason:
        lines.append(f"Reason:    {status.failure_reason}")
    console.print(
        Panel("\n".join(lines), title=f"[bold]{project}/{document_type}[/]", expand=False)
    )


def _print_bundle(bundle: ContextBundle) -> None:
    table = Table(show_header=True, box=None, padding=(0, 1))
    table.add_column("#", style="dim", justify="right")
    table.add_column("Document")
    table.add_column("Score", justify="right")
    table.add_column("Tokens", justify="right")
    for i, chunk in enumerate(bundle.chunks, start=1):
        table.add_row(str(i), chunk.document_id, f"{chunk.score:.2f}", f"{chunk.tokens:,}")

    title = f"[bold]{bundle.project}/{bundle.document_type}[/] [dim]({bundle.total_tokens:,} tokens)[/]"
    console.print(Panel(table, title=title, expand=False))
    if bundle.is_override:
        console.print(
            f"[yellow]manual selection[/] of {len(bundle.included_ids)}/"
            f"{bundle.original_document_count} documents"
        )
    if bundle.excluded_ids:
        console.print(f"[dim]Excluded: {', '.join(bundle.excluded_ids)}[/]")


def _format_age(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3_600:
        return f"{seconds / 60:.0f}m"
    return f"{seconds / 3_600:.1f}h"
