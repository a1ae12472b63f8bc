"""
LexFlow CLI - Capture queue commands.

Capture legal text, curate it into a document, submit it to the
configured endpoint and manage failed submissions.
"""

import asyncio
import json
import sys
from collections.abc import Coroutine
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from lexflow.core.config.loader import load_config
from lexflow.core.curation.curator import CurationOverrides
from lexflow.core.delivery.classifier import ClassifiedError, Severity
from lexflow.core.delivery.client import SubmissionOutcome
from lexflow.core.errors import LexflowError
from lexflow.core.queue.models import CaptureItem, CapturePayload, CaptureStatus
from lexflow.core.services.queue import QueueService

console = Console()
T = TypeVar("T")

STATUS_STYLES = {
    CaptureStatus.QUEUED: "cyan",
    CaptureStatus.EDITING: "yellow",
    CaptureStatus.READY: "blue",
    CaptureStatus.SUBMITTED: "green",
    CaptureStatus.ERROR: "red",
    CaptureStatus.DELETED: "dim",
}


def _run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine from Typer's sync CLI context."""
    return asyncio.run(coro)


def _get_service(ctx: typer.Context) -> QueueService:
    obj = ctx.obj or {}
    config = obj.get("config") or load_config()
    service = QueueService.from_config(config, transport=obj.get("transport"))
    if service.degraded:
        console.print(
            "[yellow]Warning:[/yellow] capture database unavailable; "
            "using a temporary in-memory queue"
        )
    return service


def _fail(ctx: typer.Context, error: Exception) -> None:
    """Print a LexFlow error and exit with status 1."""
    if (ctx.obj or {}).get("debug"):
        console.print_exception()
    console.print(f"[red]Error:[/red] {escape(str(error))}")
    raise typer.Exit(1)


def _format_ms(ms: int | None) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def _status_text(status: CaptureStatus) -> str:
    return f"[{STATUS_STYLES[status]}]{status.value}[/{STATUS_STYLES[status]}]"


def _print_error(error: ClassifiedError) -> None:
    color = "red" if error.severity == Severity.HIGH else "yellow"
    console.print(f"[{color}]{error.kind.value}:[/{color}] {escape(error.message)}")
    if error.suggestion:
        console.print(f"  [dim]{escape(error.suggestion)}[/dim]")


def _print_outcome(outcome: SubmissionOutcome) -> None:
    if outcome.success:
        console.print(f"[green]✓[/green] {escape(outcome.message)}")
        if outcome.result is not None and outcome.result.reference_url:
            console.print(f"  {outcome.result.reference_url}")
        return
    if outcome.error is not None:
        _print_error(outcome.error)
    console.print(f"  Status: {_status_text(outcome.item.status)}")


def capture(
    ctx: typer.Context,
    text: str | None = typer.Argument(
        None,
        help="Text to capture (or read from stdin if not provided)",
    ),
    source_url: str = typer.Option("", "--url", "-u", help="Page the text came from"),
    source_title: str = typer.Option("", "--title", "-t", help="Title of the source page"),
    language: str = typer.Option("", "--language", "-l", help="Language tag (e.g. pt-BR)"),
    jurisdiction: str = typer.Option(
        "", "--jurisdiction", "-j", help="Jurisdiction hint (e.g. BR/RS)"
    ),
) -> None:
    """
    Add captured legal text to the queue.

    Examples:
        lexflow capture "Art. 5º Todos são iguais perante a lei..." --url https://www.planalto.gov.br/...
        pbpaste | lexflow capture --title "Constituição" --jurisdiction BR/Federal
    """
    if text is None:
        if sys.stdin.isatty():
            console.print("[red]Error:[/red] No text provided. Pass it as argument or via stdin.")
            raise typer.Exit(1)
        text = sys.stdin.read()

    try:
        payload = CapturePayload(
            raw_text=text,
            source_url=source_url,
            source_title=source_title,
            language=language,
            jurisdiction_hint=jurisdiction,
        )
    except ValidationError:
        console.print("[red]Error:[/red] Captured text must not be empty.")
        raise typer.Exit(1)

    service = _get_service(ctx)
    try:
        item = _run_async(service.capture(payload))
    except LexflowError as e:
        _fail(ctx, e)
        return

    console.print(f"[green]✓[/green] Captured {item.id} ({len(item.raw_text)} chars)")
    if service.degraded:
        console.print("[yellow]  Not persisted: the queue is running in memory.[/yellow]")


def list_items(
    ctx: typer.Context,
    status: CaptureStatus | None = typer.Option(
        None,
        "--status",
        "-s",
        case_sensitive=False,
        help="Only show captures with this status",
    ),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """
    List captures, newest first.

    Examples:
        lexflow list
        lexflow list --status error
        lexflow list --json
    """
    service = _get_service(ctx)
    try:
        items = _run_async(service.list(status))
    except LexflowError as e:
        _fail(ctx, e)
        return

    if json_output:
        console.print_json(json.dumps([item.model_dump(mode="json") for item in items]))
        return

    if not items:
        console.print("[yellow]No captures found.[/yellow]")
        console.print('\nAdd one with: [bold]lexflow capture "Art. 1º ..."[/bold]')
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Captured", style="dim")
    table.add_column("Title")
    table.add_column("Jurisdiction")
    table.add_column("Chars", justify="right")

    for item in items:
        table.add_row(
            item.id,
            _status_text(item.status),
            _format_ms(item.created_at),
            escape(item.source_title or item.raw_text[:40].replace("\n", " ")),
            escape(item.jurisdiction or "-"),
            str(len(item.raw_text)),
        )

    console.print(table)
    console.print(f"\n[dim]{len(items)} capture(s)[/dim]")


def show(
    ctx: typer.Context,
    item_id: str = typer.Argument(..., help="Capture ID"),
    document: bool = typer.Option(
        False, "--document", "-d", help="Print the curated document instead of the raw text"
    ),
) -> None:
    """Show one capture."""
    service = _get_service(ctx)
    try:
        item = _run_async(service.get(item_id))
    except LexflowError as e:
        _fail(ctx, e)
        return

    if document:
        if not item.curated_document:
            console.print(f"[yellow]{item.id} has not been curated yet.[/yellow]")
            raise typer.Exit(1)
        console.print(escape(item.curated_document), highlight=False, soft_wrap=True)
        return

    console.print(f"[bold]{item.id}[/bold]  {_status_text(item.status)}")
    console.print(f"  Captured:     {_format_ms(item.created_at)}")
    console.print(f"  Source:       {escape(item.source_url or '-')}")
    console.print(f"  Title:        {escape(item.source_title or '-')}")
    console.print(f"  Jurisdiction: {escape(item.jurisdiction or '-')}")
    console.print(f"  Language:     {escape(item.language or '-')}")
    if item.submitted_at:
        console.print(f"  Submitted:    {_format_ms(item.submitted_at)}")
    if item.status == CaptureStatus.ERROR and item.submission_result:
        _print_error(ClassifiedError.model_validate(item.submission_result))
    console.print()
    console.print(escape(item.raw_text), highlight=False, soft_wrap=True)


def curate_item(
    ctx: typer.Context,
    item_id: str = typer.Argument(..., help="Capture ID"),
    title: str | None = typer.Option(None, "--title", "-t", help="Document title"),
    jurisdiction: str | None = typer.Option(None, "--jurisdiction", "-j", help="Jurisdiction"),
    language: str | None = typer.Option(None, "--language", "-l", help="Language tag"),
    source_url: str | None = typer.Option(None, "--url", "-u", help="Override source URL"),
    version_date: str | None = typer.Option(
        None, "--version-date", help="Version date of the text (YYYY-MM-DD, default today)"
    ),
) -> None:
    """
    Curate a capture into a document and mark it ready for submission.

    Examples:
        lexflow curate cap-a7x3m2q9 --title "Art 5" --jurisdiction BR/Federal
    """
    try:
        overrides = CurationOverrides(
            title=title,
            jurisdiction=jurisdiction,
            language=language,
            source_url=source_url,
            version_date=version_date,
        )
    except ValidationError:
        console.print(f"[red]Error:[/red] Invalid version date '{version_date}' (use YYYY-MM-DD)")
        raise typer.Exit(1)

    service = _get_service(ctx)
    try:
        item = _run_async(service.curate(item_id, overrides))
    except LexflowError as e:
        _fail(ctx, e)
        return

    console.print(f"[green]✓[/green] {item.id} is {_status_text(item.status)}")


def edit(
    ctx: typer.Context,
    item_id: str = typer.Argument(..., help="Capture ID"),
    text: str = typer.Argument(..., help="Replacement text"),
) -> None:
    """Replace the captured text of a capture that has not been submitted."""
    service = _get_service(ctx)
    try:
        item = _run_async(service.edit_text(item_id, text))
    except ValueError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)
    except LexflowError as e:
        _fail(ctx, e)
        return

    console.print(f"[green]✓[/green] Updated {item.id} ({_status_text(item.status)})")


async def _submit_and_wait(
    service: QueueService, item_id: str, manual: bool, wait: bool, auto_retry: bool
) -> tuple[SubmissionOutcome, CaptureItem]:
    try:
        if manual:
            outcome = await service.retry(item_id)
        else:
            outcome = await service.submit(item_id, auto_retry=auto_retry)
        if wait:
            await service.wait_for_retries()
        return outcome, await service.get(item_id)
    finally:
        await service.close()


def _report_submission(outcome: SubmissionOutcome, final: CaptureItem) -> None:
    _print_outcome(outcome)
    if not outcome.success and final.status != outcome.item.status:
        console.print(f"  After retries: {_status_text(final.status)}")
    if final.status == CaptureStatus.ERROR:
        console.print(f"  Retry manually with: [bold]lexflow retry {final.id}[/bold]")
        raise typer.Exit(1)
    if not outcome.success and final.status != CaptureStatus.SUBMITTED:
        raise typer.Exit(1)


def submit(
    ctx: typer.Context,
    item_id: str = typer.Argument(..., help="Capture ID"),
    wait: bool = typer.Option(
        True, "--wait/--no-wait", help="Wait for automatic retries before exiting"
    ),
    no_retry: bool = typer.Option(False, "--no-retry", help="Disable automatic retries"),
) -> None:
    """
    Submit a ready capture to the configured endpoint.

    Transient failures are retried automatically with exponential backoff;
    the command waits for them unless --no-wait is given.
    """
    service = _get_service(ctx)
    try:
        outcome, final = _run_async(
            _submit_and_wait(service, item_id, manual=False, wait=wait, auto_retry=not no_retry)
        )
    except LexflowError as e:
        _fail(ctx, e)
        return
    _report_submission(outcome, final)


def retry(
    ctx: typer.Context,
    item_id: str = typer.Argument(..., help="Capture ID"),
    wait: bool = typer.Option(
        True, "--wait/--no-wait", help="Wait for automatic retries before exiting"
    ),
) -> None:
    """Retry a failed submission now, regardless of earlier automatic attempts."""
    service = _get_service(ctx)
    try:
        outcome, final = _run_async(
            _submit_and_wait(service, item_id, manual=True, wait=wait, auto_retry=True)
        )
    except LexflowError as e:
        _fail(ctx, e)
        return
    _report_submission(outcome, final)


def delete(
    ctx: typer.Context,
    item_id: str = typer.Argument(..., help="Capture ID"),
) -> None:
    """Mark a capture as deleted. Use 'lexflow clear' to purge deleted captures."""
    service = _get_service(ctx)
    try:
        item = _run_async(service.delete(item_id))
    except LexflowError as e:
        _fail(ctx, e)
        return
    console.print(f"[green]✓[/green] Deleted {item.id}")


def clear(
    ctx: typer.Context,
    deleted_only: bool = typer.Option(
        False, "--deleted-only", help="Only purge captures marked as deleted"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Permanently remove captures from the queue."""
    scope = "deleted captures" if deleted_only else "ALL captures"
    if not yes and not typer.confirm(f"Permanently remove {scope}?"):
        console.print("[dim]Aborted.[/dim]")
        raise typer.Exit(0)

    service = _get_service(ctx)
    status = CaptureStatus.DELETED if deleted_only else None
    try:
        removed = _run_async(service.clear(status))
    except LexflowError as e:
        _fail(ctx, e)
        return
    console.print(f"[green]✓[/green] Removed {removed} capture(s)")


def export_items(
    ctx: typer.Context,
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Output file path (default: stdout)",
    ),
) -> None:
    """
    Export every capture as a JSON backup.

    Examples:
        lexflow export --output lexflow-backup.json
        lexflow export > lexflow-backup.json
    """
    service = _get_service(ctx)
    try:
        backup = _run_async(service.export_items())
    except LexflowError as e:
        _fail(ctx, e)
        return

    json_str = json.dumps(backup.model_dump(mode="json"), indent=2, ensure_ascii=False)
    if output is None:
        sys.stdout.write(json_str)
        sys.stdout.write("\n")
        return

    output.write_text(json_str + "\n", encoding="utf-8")
    console.print(f"[green]✓[/green] Exported {len(backup.captures)} capture(s) to {output}")


def import_items(
    ctx: typer.Context,
    backup_file: Path = typer.Argument(..., help="Backup written by 'lexflow export'"),
) -> None:
    """
    Restore captures from a JSON backup.

    Ids and statuses are kept; captures already in the queue are skipped.
    """
    try:
        text = backup_file.read_text(encoding="utf-8")
    except OSError as e:
        _fail(ctx, e)
        return

    service = _get_service(ctx)
    try:
        summary = _run_async(service.import_items(text))
    except (LexflowError, ValueError) as e:
        _fail(ctx, e)
        return

    console.print(f"[green]✓[/green] Imported {summary.imported} capture(s)")
    if summary.skipped:
        console.print(
            f"[yellow]Skipped {len(summary.skipped)} existing capture(s):[/yellow] "
            + ", ".join(summary.skipped)
        )


def errors(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show captures whose last submission failed, with the classified error."""
    service = _get_service(ctx)
    try:
        items = _run_async(service.list(CaptureStatus.ERROR))
    except LexflowError as e:
        _fail(ctx, e)
        return

    failed = [
        (item, ClassifiedError.model_validate(item.submission_result))
        for item in items
        if item.submission_result
    ]

    if json_output:
        data = [{"id": item.id, **error.model_dump(mode="json")} for item, error in failed]
        console.print_json(json.dumps(data))
        return

    if not failed:
        console.print("[green]No failed submissions.[/green]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Kind")
    table.add_column("Severity")
    table.add_column("Retryable")
    table.add_column("Message")
    table.add_column("Suggestion", style="dim")

    kinds: dict[str, int] = {}
    for item, error in failed:
        kinds[error.kind.value] = kinds.get(error.kind.value, 0) + 1
        table.add_row(
            item.id,
            error.kind.value,
            error.severity.value,
            "yes" if error.retryable else "no",
            escape(error.message),
            escape(error.suggestion),
        )

    console.print(table)
    summary = ", ".join(f"{kind}: {count}" for kind, count in sorted(kinds.items()))
    console.print(f"\n[dim]{len(failed)} failed ({summary})[/dim]")
