"""
Preflight checks run before sync to catch common misconfigurations early.
"""

import logging
import sqlite3
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

logger = logging.getLogger(__name__)


def run_preflight_checks(access_token: str | None, db_path: Path, console: Console) -> bool:
    """Return True if sync may proceed; print issues and return False otherwise.

    Connectivity is not checked here: the engine refuses to start while
    offline and the CLI reports that separately.
    """
    issues: list[tuple[str, str, str]] = []  # (label, detail, hint)

    # 1. Access token configured
    if not access_token:
        logger.error("No Microsoft Graph access token configured")
        issues.append(
            (
                "Access token",
                "not configured",
                "Set access_token in the config file or export GRAPH_ACCESS_TOKEN",
            )
        )

    # 2. State DB parent dir writable + DB writable if it exists
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Cannot create state DB directory {db_path.parent}: {e}")
        issues.append(
            (
                "State database",
                f"{db_path}: {e}",
                f"Check permissions on {db_path.parent}",
            )
        )
    else:
        if db_path.exists():
            try:
                conn = sqlite3.connect(db_path)
                try:
                    conn.execute("SELECT 1")
                    # BEGIN IMMEDIATE takes the write lock and needs a journal
                    # file next to the DB.
                    conn.execute("BEGIN IMMEDIATE")
                    conn.execute("ROLLBACK")
                finally:
                    conn.close()
            except sqlite3.Error as e:
                logger.error(f"State DB not readable/writable ({db_path}): {e}")
                issues.append(
                    (
                        "State database",
                        f"{db_path}: {e}",
                        f"Check permissions on {db_path.parent} "
                        f"(journal files must be creatable alongside the DB)",
                    )
                )

    if issues:
        _print_issues(issues, console)
        return False

    return True


def _print_issues(issues: list[tuple[str, str, str]], console: Console) -> None:
    body = Text()
    for i, (label, detail, hint) in enumerate(issues):
        if i:
            body.append("\n")
        body.append(f"  ✗  {label}: ", style="bold red")
        body.append(detail, style="bold red")
        body.append(f"\n       → {hint}", style="yellow")

    console.print(Panel(body, title="[bold red]Preflight checks failed[/bold red]"))
