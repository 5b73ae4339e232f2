"""CLI for running messages through the pipeline and reviewing proposals."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence

import typer
from rich.console import Console
from rich.table import Table

from sidecar.errors import ConfigurationError, ProposalError, SidecarError
from sidecar.extraction.models import SourceInfo
from sidecar.pipeline.extraction_pipeline import ExtractionPipeline
from sidecar.storage.base import GraphStore
from sidecar.storage.neo4j_manager import Neo4jManager
from sidecar.storage.schemas import Proposal, ProposalStatus
from sidecar.utils.config import Config, load_config
from sidecar.utils.log_config import setup_logging
from sidecar.workflow.workflow_engine import WorkflowEngine

app = typer.Typer(help="Extract project entities from messages and review proposals.")

console = Console(color_system=None, force_terminal=False, width=120)


def create_store(config: Config) -> GraphStore:
    manager = Neo4jManager(config.database)
    manager.connect()
    return manager


def create_pipeline(config: Config, store: GraphStore) -> ExtractionPipeline:
    return ExtractionPipeline(config, store)


def _load(config_path: Path) -> Config:
    return load_config(config_path)


def _close(store: GraphStore) -> None:
    close = getattr(store, "close", None)
    if callable(close):
        close()


def _render_proposal_table(proposals: Sequence[Proposal], *, title: str) -> None:
    table = Table(title=title)
    table.add_column("ID", style="magenta")
    table.add_column("Type")
    table.add_column("Title", style="cyan")
    table.add_column("Conf")
    table.add_column("Status")
    table.add_column("Approver")
    table.add_column("Source")

    for proposal in proposals:
        table.add_row(
            proposal.id,
            proposal.entity_type,
            str(proposal.proposed_data.get("title", "")),
            f"{proposal.confidence:.2f}",
            proposal.status.value,
            proposal.requires_approval_from or "-",
            proposal.source_type,
        )

    console.print(table)


@app.command("process")
def process(
    message: str = typer.Argument(..., help="Message text to analyze."),
    project: str = typer.Option(..., help="Project id."),
    user: str = typer.Option(..., help="Submitting user id."),
    source: str = typer.Option("chat", help="Source type (chat/email/commit/meeting)."),
    platform: Optional[str] = typer.Option(None, help="Source platform (slack, teams, ...)."),
    provider: Optional[str] = typer.Option(None, help="Override the configured provider."),
    config: Path = typer.Option(Path("config/config.yaml"), help="Path to config file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """Run one message through extraction and governance."""
    cfg = _load(config)
    setup_logging(cfg.logging, verbose=verbose)
    store = create_store(cfg)
    try:
        pipeline = create_pipeline(cfg, store)
        pipeline.builder.validate_provider(provider or pipeline.builder.resolve_default_provider())
        result = pipeline.process_message(
            project, user, message, SourceInfo(type=source, platform=platform), provider
        )
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=2)
    except SidecarError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    finally:
        _close(store)

    if not result.success:
        console.print(f"[red]Extraction failed ({result.error_type}): {result.error}[/red]")
        raise typer.Exit(code=1)

    console.print(
        f"Provider: {result.provider} ({result.model})"
        + (" (fallback)" if result.fallback_used else "")
    )
    console.print(
        f"Context quality: {result.context_quality:.2f}  "
        f"Entities: {result.entities_found} valid, {result.entities_rejected} rejected  "
        f"Cost: ${result.estimated_cost:.6f}"
    )

    processing = result.processing
    if processing is None or not processing.results:
        console.print("No entities extracted.")
        return

    table = Table(title="Entity Results")
    table.add_column("Type")
    table.add_column("Title", style="cyan")
    table.add_column("Action")
    table.add_column("Detail")
    for item in processing.results:
        detail = item.entity_id or item.proposal_id or item.error or ""
        if item.reason:
            detail = f"{detail} {item.reason}".strip()
        table.add_row(item.entity.get("type", ""), item.entity.get("title", ""), item.action, detail)
    console.print(table)

    summary = processing.summary
    console.print(
        f"Summary: auto_created={summary.auto_created}, "
        f"proposals={summary.proposals}, skipped={summary.skipped}"
    )


@app.command("proposals")
def proposals(
    project: str = typer.Option(..., help="Project id."),
    role: Optional[str] = typer.Option(None, help="Only proposals this role may approve."),
    status: str = typer.Option("pending", help="Filter by status (pending/approved/rejected/all)."),
    limit: int = typer.Option(20, help="Max rows to display.", min=1),
    config: Path = typer.Option(Path("config/config.yaml"), help="Path to config file."),
) -> None:
    """List proposals for a project."""
    cfg = _load(config)
    store = create_store(cfg)
    try:
        status_filter = None if status == "all" else ProposalStatus(status)
        rows: List[Proposal] = store.list_proposals(
            project, status=status_filter, role_id=role, limit=limit
        )
    except ValueError:
        console.print(f"[red]Invalid status: {status}[/red]")
        raise typer.Exit(code=1)
    finally:
        _close(store)

    if not rows:
        console.print("No proposals found.")
        return
    _render_proposal_table(rows, title=f"Proposals ({status})")


@app.command("approve")
def approve(
    proposal_id: str = typer.Argument(..., help="Proposal id."),
    reviewer: str = typer.Option(..., help="Reviewer user id."),
    notes: Optional[str] = typer.Option(None, help="Review notes."),
    config: Path = typer.Option(Path("config/config.yaml"), help="Path to config file."),
) -> None:
    """Approve a pending proposal and create its entity."""
    cfg = _load(config)
    store = create_store(cfg)
    try:
        result = WorkflowEngine(store, cfg).approve_proposal(proposal_id, reviewer, notes)
    except ProposalError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    finally:
        _close(store)

    console.print(
        f"[green]Approved {result.proposal_id}: entity {result.entity_id} "
        f"(evidence {result.evidence_id}).[/green]"
    )


@app.command("reject")
def reject(
    proposal_id: str = typer.Argument(..., help="Proposal id."),
    reviewer: str = typer.Option(..., help="Reviewer user id."),
    notes: Optional[str] = typer.Option(None, help="Rejection reason."),
    config: Path = typer.Option(Path("config/config.yaml"), help="Path to config file."),
) -> None:
    """Reject a pending proposal."""
    cfg = _load(config)
    store = create_store(cfg)
    try:
        WorkflowEngine(store, cfg).reject_proposal(proposal_id, reviewer, notes)
    except ProposalError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    finally:
        _close(store)

    console.print(f"[yellow]Rejected {proposal_id}.[/yellow]")


@app.command("stats")
def stats(
    project: str = typer.Option(..., help="Project id."),
    config: Path = typer.Option(Path("config/config.yaml"), help="Path to config file."),
) -> None:
    """Show proposal counts by status."""
    cfg = _load(config)
    store = create_store(cfg)
    try:
        totals = store.get_proposal_stats(project)
    finally:
        _close(store)

    console.print("[bold]Proposal Stats[/bold]")
    console.print(
        f"Totals: total={totals.total}, pending={totals.pending}, "
        f"approved={totals.approved}, rejected={totals.rejected}"
    )
    if totals.avg_confidence is not None:
        console.print(f"Average confidence: {totals.avg_confidence:.2f}")


def run() -> None:
    """Entrypoint for Typer."""
    app()


if __name__ == "__main__":
    run()
