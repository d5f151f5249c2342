"""
Version Ledger Audit Tool — independent replay of template histories.

Connects directly to the registry store and, for each template, replays
every stored diff from the empty state, recomputing snapshot hashes and
version numbers to confirm that no version row has been altered.

Usage:
    python -m workspace_registry.ledger.audit
    python -m workspace_registry.ledger.audit --template-id 3 --verbose
    python -m workspace_registry.ledger.audit --database-url postgresql+psycopg2://...
"""

from __future__ import annotations

import argparse
import sys
import time

from rich.console import Console
from rich.table import Table
from sqlalchemy import select

from workspace_registry.config import settings
from workspace_registry.ledger.service import VersionLedger
from workspace_registry.store.database import Database
from workspace_registry.store.models import TemplateDB

console = Console()


def _render_history(ledger: VersionLedger, template_id: int) -> None:
    table = Table(show_lines=True)
    table.add_column("Seq", style="cyan", width=5)
    table.add_column("Version", style="green", width=10)
    table.add_column("Change", width=24)
    table.add_column("Hash (first 16)", style="dim", width=18)
    table.add_column("Applied", width=8)
    table.add_column("Rollback", width=9)
    table.add_column("Created", width=20)

    for version in reversed(list(ledger.iter_history(template_id))):
        patch = version.diff_from_previous
        change = (
            f"+{len(patch.added_schemas)}/-{len(patch.removed_schemas)} schemas "
            f"+{len(patch.added_sections)}/-{len(patch.removed_sections)} sec"
        )
        if version.rollback_of is not None:
            change += f" (restores #{version.rollback_of})"
        table.add_row(
            str(version.sequence),
            version.version,
            change,
            version.snapshot_hash[:16] + "...",
            "yes" if version.applied else "-",
            "ok" if version.rollbackable else "[red]gated[/red]",
            str(version.created_at)[:19],
        )
    console.print(table)


def run_audit(database_url: str, template_id: int | None = None, verbose: bool = False) -> bool:
    """
    Verify the history of one template, or of every template.

    Returns:
        True if every audited history is valid, False otherwise.
    """
    console.print("\n[bold blue]═══ Template Version Ledger Audit ═══[/bold blue]\n")

    db = Database(database_url)
    ledger = VersionLedger(db)

    if template_id is not None:
        template_ids = [template_id]
    else:
        with db.session() as session:
            template_ids = list(
                session.execute(select(TemplateDB.id).order_by(TemplateDB.id)).scalars()
            )

    console.print(f"  Templates to audit: [bold]{len(template_ids)}[/bold]")
    if not template_ids:
        console.print("[yellow]⚠ No templates found, nothing to verify[/yellow]")
        db.dispose()
        return True

    all_valid = True
    start_time = time.time()
    for tid in template_ids:
        console.print(f"  Template {tid}: replaying history...", end=" ")
        is_valid, verified, message = ledger.verify_history(tid)
        if is_valid:
            console.print(f"[bold green]✓ VALID[/bold green] ({verified} versions)")
        else:
            all_valid = False
            console.print("[bold red]✗ INVALID[/bold red]")
            console.print(f"    Failure at version index: {verified}")
            console.print(f"    Reason: {message}")
        if verbose:
            _render_history(ledger, tid)

    console.print(f"  Verification time: {time.time() - start_time:.3f}s")
    console.print("\n[bold blue]═══ Audit Complete ═══[/bold blue]\n")
    db.dispose()
    return all_valid


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Workspace registry template version ledger auditor"
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy connection string (defaults to .env settings)",
    )
    parser.add_argument(
        "--template-id",
        type=int,
        default=None,
        help="Audit only this template (default: all templates)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show the version table of each audited template",
    )
    args = parser.parse_args()

    db_url = args.database_url or settings.database_url_sync
    is_valid = run_audit(db_url, template_id=args.template_id, verbose=args.verbose)
    sys.exit(0 if is_valid else 1)


if __name__ == "__main__":
    main()
