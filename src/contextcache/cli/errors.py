"""contextcache rich error messages with actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from contextcache.cli.errors import err_no_db
    console.print(err_no_db(".contextcache.db"))
    raise typer.Exit(1)
"""

from __future__ import annotations


def err_no_db(db_path: str = ".contextcache.db") -> str:
    """No cache database found."""
    return (
        f"[red]Error:[/] No cache database found at '{db_path}'.\n"
        "  Run:  contextcache build <project> <document-type>"
    )


def err_invalid_key(message: str) -> str:
    """Project or document type missing / malformed."""
    return (
        f"[red]Error:[/] {message}.\n"
        "  Usage:  contextcache <command> <project> <document-type>"
    )


def err_unknown_category(message: str, known: list[str]) -> str:
    """Model category is neither configured nor a resolvable model name."""
    known_list = ", ".join(known) if known else "(none)"
    return (
        f"[red]Error:[/] {message}\n"
        f"  Configured categories: {known_list}\n"
        "  Pass one of them with --model, or a provider/model name such as openai/gpt-4o."
    )


def err_build_in_progress(project: str, document_type: str) -> str:
    """The request collided with a running build."""
    return (
        f"[yellow]Build already running[/] for {project}/{document_type}.\n"
        f"  Run:  contextcache status {project} {document_type}  to follow it."
    )


def err_build_failed(reason: str | None) -> str:
    """Build finished in FAILED."""
    return (
        f"[red]Error:[/] Context build failed: {reason or 'unknown reason'}\n"
        "  Fix the cause, then run the build again."
    )


def err_upstream(message: str) -> str:
    """Document source or configuration could not be read."""
    return (
        f"[red]Error:[/] {message}\n"
        "  Check the --docs directory and contextcache.yaml, then retry."
    )


def err_unknown_documents(message: str) -> str:
    """Selection names documents that do not exist."""
    return (
        f"[red]Error:[/] {message}\n"
        "  Run:  contextcache overflow <project> <document-type>  to list document ids."
    )


def err_document_too_large(message: str) -> str:
    """A selected document cannot fit the context budget on its own."""
    return (
        f"[red]Error:[/] {message}\n"
        "  Deselect it, or choose a larger model category with --model."
    )


def err_config(message: str) -> str:
    """Invalid configuration file."""
    return f"[red]Error:[/] Invalid configuration.\n  {message}"


def warn_overflow(current: int, maximum: int) -> str:
    """Shown when the corpus does not fit the budget."""
    return (
        f"[yellow]⚠[/] Corpus needs {current:,} tokens; the budget is {maximum:,}.\n"
        "  Apply the recommended selection with:\n"
        "    contextcache select <project> <document-type> --recommended"
    )
