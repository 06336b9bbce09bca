"""contextcache overflow / select / stats commands.

Shows whether a corpus fits a model category's context budget, lets the
operator persist a manual (or the recommended) document selection, and
summarises recorded overflow events.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.panel import Panel
from rich.table import Table

from contextcache.build.service import ContextService
from contextcache.cli.context import DbOpt, DocsOpt, DocTypeArg, ProjectArg, _DEFAULT_DOCS
from contextcache.cli.errors import warn_overflow
from contextcache.cli.runtime import console, open_service, run
from contextcache.models import ContextBundle, OverflowReport

ModelOpt = Annotated[
    str | None,
    typer.Option(
        "--model",
        "-m",
        help="Model category (small/medium/large) or provider/model name.",
    ),
]


def overflow_cmd(
    project: ProjectArg,
    document_type: DocTypeArg,
    model: ModelOpt = None,
    db: DbOpt = None,
    docs: DocsOpt = _DEFAULT_DOCS,
) -> None:
    """Report whether the documents fit the context budget and what to cut."""
    with open_service(db, docs) as service:
        report = run(service, lambda s: s.check_overflow(project, document_type, model))
    _print_report(report)
    if report.will_overflow:
        console.print(warn_overflow(report.current_tokens, report.max_context_tokens))


def select_cmd(
    project: ProjectArg,
    document_type: DocTypeArg,
    ids: Annotated[
        list[str] | None,
        typer.Option("--id", help="Document id to keep (repeatable)."),
    ] = None,
    recommended: Annotated[
        bool,
        typer.Option("--recommended", help="Keep the recommended documents from the overflow report."),
    ] = False,
    model: ModelOpt = None,
    db: DbOpt = None,
    docs: DocsOpt = _DEFAULT_DOCS,
) -> None:
    """Persist a manual document selection as the cached context."""
    if not ids and not recommended:
        console.print("[red]Error:[/] Nothing selected.\n  Pass --id <document-id> or --recommended.")
        raise typer.Exit(1)

    async def _select(service: ContextService) -> ContextBundle:
        selected = list(ids or [])
        if recommended:
            report = await service.check_overflow(project, document_type, model)
            selected.extend(i for i in report.included_ids if i not in selected)
        return await service.apply_selection(project, document_type, selected, model)

    with open_service(db, docs) as service:
        bundle = run(service, _select)

    console.print(
        f"[green]✓[/] Saved selection for {project}/{document_type}: "
        f"{len(bundle.included_ids)}/{bundle.original_document_count} documents, "
        f"{bundle.total_tokens:,} tokens (was {bundle.original_token_count:,})"
    )


def stats_cmd(
    project: Annotated[
        str | None, typer.Option("--project", "-p", help="Limit to one project.")
    ] = None,
    days: Annotated[int, typer.Option("--days", help="Look-back window in days.")] = 30,
    db: DbOpt = None,
) -> None:
    """Summarise recorded overflow events."""

    async def _stats(service: ContextService):
        return service.get_overflow_statistics(project, days)

    with open_service(db, Path(".")) as service:
        stats = run(service, _stats)

    lines = [
        f"Overflow events:  [bold]{stats.total_events}[/]",
        f"Average overflow: {stats.average_overflow:,.0f} tokens",
    ]
    for doc_type, count in stats.most_common_document_types:
        lines.append(f"  {doc_type}: {count}")
    scope = stats.project or "all projects"
    console.print(
        Panel("\n".join(lines), title=f"[bold]Overflow[/] [dim]({scope}, {days}d)[/]", expand=False)
    )


def _print_report(report: OverflowReport) -> None:
    style = "red" if report.will_overflow else ("yellow" if report.warning else "green")
    header = (
        f"[{style}]{report.current_tokens:,}[/] / {report.max_context_tokens:,} tokens "
        f"({report.context_percent:g}% of {report.token_limit:,}, {report.model_category})"
    )

    table = Table(show_header=True, box=None, padding=(0, 1))
    table.add_column("#", style="dim", justify="right")
    table.add_column("Document")
    table.add_column("Score", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("")
    for doc in report.documents:
        mark = "[green]✓[/]" if doc.recommended else f"[yellow]✗ {doc.reason}[/]"
        table.add_row(str(doc.rank), doc.id, f"{doc.score:.2f}", f"{doc.tokens:,}", mark)

    console.print(header)
    console.print(Panel(table, title="[bold]Documents[/]", expand=False))
    console.print(f"[{style}]{report.message}[/]")
