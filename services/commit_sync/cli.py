#!/usr/bin/env python3
"""
Commit Sync CLI Tool

Command line interface for registering repositories, running syncs and
maintaining fork links. Every command runs the service in-process against the
configured database.
"""

import asyncio
import json
import logging
import sys
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from config.settings import Settings, export_config, get_settings
from shared.models import BatchResult, BatchStatus, SyncOptions, SyncOutcome
from services.commit_sync import __version__
from services.commit_sync.main import CommitSyncService

# Initialize Rich console for output
console = Console()

STATUS_STYLES = {
    BatchStatus.SUCCESS: "green",
    BatchStatus.FAILED: "red",
    BatchStatus.MISSING: "yellow",
}


def configure_logging(config: Settings):
    logging.basicConfig(
        level=getattr(logging, config.monitoring.log_level),
        format=config.monitoring.log_format,
    )


def run_service(action):
    """Run ``action(service)`` inside an initialized service, exiting 1 on failure."""
    async def run():
        async with CommitSyncService() as service:
            return await action(service)

    try:
        return asyncio.run(run())
    except Exception as e:
        console.print(f"[red]❌ Error: {str(e)}[/red]")
        sys.exit(1)


def display_outcome(title: str, outcome: SyncOutcome):
    """Display one sync outcome."""
    if outcome.parent_outcome is not None:
        display_outcome("⬆️ Parent Sync", outcome.parent_outcome)

    watermark = outcome.watermark.isoformat() if outcome.watermark else "not advanced"
    content = f"""
    🆔 Repository ID: {outcome.repository_id}
    📥 Processed: {outcome.commits_processed}
    ✅ Created: {outcome.commits_created}
    🔁 Duplicates: {outcome.commits_skipped_duplicate}
    🤖 Bots skipped: {outcome.commits_skipped_bots}
    👤 Authors created: {outcome.authors_created}
    🕒 Watermark: {watermark}
    """
    if outcome.marked_missing:
        content += "    ⚠️ Repository marked as missing\n"

    style = "green" if outcome.completed and not outcome.errors else "yellow"
    console.print(Panel(content, title=Text(title, style=f"bold {style}"), border_style=style))

    if outcome.errors:
        table = Table(title="⚠️ Errors", show_header=False)
        table.add_column("Error", style="red")
        for error in outcome.errors[:20]:
            table.add_row(error)
        if len(outcome.errors) > 20:
            table.add_row(f"... and {len(outcome.errors) - 20} more")
        console.print(table)


def display_batch(result: BatchResult):
    """Display a batch sync report."""
    table = Table(title="📋 Batch Sync", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="cyan", width=6)
    table.add_column("Repository", style="white")
    table.add_column("Status")
    table.add_column("Commits", justify="right")
    table.add_column("Authors", justify="right")
    table.add_column("Error", style="dim")

    for entry in result.results:
        style = STATUS_STYLES[entry.status]
        table.add_row(
            str(entry.repository_id),
            entry.full_name,
            f"[{style}]{entry.status.value}[/{style}]",
            str(entry.commits_created),
            str(entry.authors_created),
            entry.error or "",
        )
    console.print(table)
    console.print(
        f"Processed {result.total_processed}: {result.successful} successful, "
        f"{result.failed} failed, {result.marked_missing} missing; "
        f"{result.total_commits_created} commits and {result.total_authors_created} authors created"
    )


@click.group()
@click.version_option(version=__version__)
def cli():
    """Commit Sync CLI - Import GitHub commit history."""
    configure_logging(get_settings())


@cli.command("init-db")
@click.option("--drop", is_flag=True, help="Drop existing tables first")
def init_db(drop: bool):
    """Create the database tables."""
    async def action(service: CommitSyncService):
        if drop:
            await service.db.drop_tables()
        await service.db.create_tables()

    run_service(action)
    console.print("[green]✅ Database tables created[/green]")


@cli.command()
@click.argument("repository")
def add(repository: str):
    """Track a repository given as owner/name or GitHub URL."""
    repo = run_service(lambda service: service.register_repository(repository))

    content = f"""
    🆔 ID: {repo.id}
    🔗 Name: {repo.full_name}
    🌿 Default branch: {repo.default_branch}
    🍴 Fork: {'yes, of ' + str(repo.parent_full_name) if repo.is_fork else 'no'}
    🔗 Parent linked: {'yes' if repo.parent_repository_id else 'no'}
    """
    console.print(Panel(content, title="📝 Repository Registered", border_style="green"))


@cli.command()
@click.argument("repository")
@click.option("--full", "full_sync", is_flag=True, help="Ignore the watermark and fetch all history")
@click.option("--batch-size", type=int, default=None, help="Commits processed per chunk")
@click.option("--timeout", type=float, default=None, help="Stop paging after this many seconds")
def sync(repository: str, full_sync: bool, batch_size: Optional[int], timeout: Optional[float]):
    """Sync commits of one repository (ID or owner/name)."""
    async def action(service: CommitSyncService):
        repo = await service.find_repository(repository)
        if repo is None:
            raise click.ClickException(f"Repository {repository} is not tracked")
        options = SyncOptions(
            full_sync=full_sync,
            page_batch_size=batch_size or service.config.sync.page_batch_size,
            timeout=timeout,
        )
        return repo, await service.sync(repo.id, options)

    repo, outcome = run_service(action)
    display_outcome(f"🔄 {repo.full_name}", outcome)


@cli.command("sync-all")
@click.option("--older-than", default="24h", show_default=True, help='"24h", "7d" or "never"')
@click.option("--include-missing", is_flag=True, help="Also sync repositories marked missing")
@click.option("--concurrency", type=int, default=None, help="Parallel repository syncs")
def sync_all(older_than: str, include_missing: bool, concurrency: Optional[int]):
    """Sync every repository not synced recently."""
    result = run_service(
        lambda service: service.sync_batch(older_than, not include_missing, concurrency)
    )
    display_batch(result)


@cli.command("link-forks")
@click.option("--dry-run", is_flag=True, help="Show what would be linked without making changes")
def link_forks(dry_run: bool):
    """Link forks to parents that are tracked but not yet linked."""
    report = run_service(lambda service: service.link_unlinked_forks(dry_run=dry_run))

    if report.total == 0:
        console.print("[green]✅ No unlinked forks found[/green]")
        return

    table = Table(title="🔗 Fork Links" + (" (dry run)" if dry_run else ""), header_style="bold magenta")
    table.add_column("Fork", style="cyan")
    table.add_column("Parent", style="white")
    table.add_column("Result")
    for fork, parent in report.linked:
        table.add_row(fork, parent, "[green]would link[/green]" if dry_run else "[green]linked[/green]")
    for fork, parent in report.not_found:
        table.add_row(fork, parent, "[yellow]parent not tracked[/yellow]")
    console.print(table)


@cli.command("reconcile-forks")
@click.confirmation_option(prompt="Delete fork commits that are already stored under the parent?")
def reconcile_forks():
    """Remove fork commits duplicated under the linked parent."""
    report = run_service(lambda service: service.reconcile_fork_attribution())

    table = Table(title="🔧 Fork Attribution", header_style="bold magenta")
    table.add_column("Fork", style="cyan")
    table.add_column("Removed", justify="right")
    for fork, removed in report.removed.items():
        table.add_row(fork, str(removed))
    console.print(table)
    console.print(f"Checked {report.forks_checked} forks, removed {report.total_removed} commits")


@cli.command("check-renames")
@click.argument("repository", required=False)
def check_renames(repository: Optional[str]):
    """Detect renamed repositories by GitHub ID (all tracked repositories by default)."""
    async def action(service: CommitSyncService):
        if repository is None:
            repos = await service.stores.repositories.list_all()
        else:
            repo = await service.find_repository(repository)
            if repo is None:
                raise click.ClickException(f"Repository {repository} is not tracked")
            repos = [repo]
        return [(repo, await service.engine.renames.check(repo)) for repo in repos]

    results = run_service(action)

    table = Table(title="📝 Rename Check", header_style="bold magenta")
    table.add_column("Repository", style="cyan")
    table.add_column("Result")
    for repo, check in results:
        if check.renamed:
            result = f"[yellow]renamed to {check.new_full_name}[/yellow]"
        elif check.exists is False:
            result = "[red]not found[/red]"
        elif check.exists is None:
            result = "[dim]unknown[/dim]"
        else:
            result = "[green]unchanged[/green]"
        table.add_row(repo.full_name, result)
    console.print(table)


@cli.command("mark-missing")
@click.argument("repository_id", type=int)
def mark_missing(repository_id: int):
    """Flag a repository as missing on GitHub."""
    run_service(lambda service: service.mark_missing(repository_id))
    console.print(f"[yellow]Repository {repository_id} marked as missing[/yellow]")


@cli.command("mark-found")
@click.argument("repository_id", type=int)
def mark_found(repository_id: int):
    """Clear the missing flag of a repository."""
    run_service(lambda service: service.mark_found(repository_id))
    console.print(f"[green]Repository {repository_id} marked as found[/green]")


@cli.command("show-config")
def show_config():
    """Show the effective configuration (without secrets)."""
    console.print(Panel(json.dumps(export_config(get_settings()), indent=2), title="⚙️ Configuration"))


if __name__ == "__main__":
    cli()
