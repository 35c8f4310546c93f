"""Prepare a GitHub repository for Ralph (``ralph --init``)."""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

sys.path.insert(0, str(Path(__file__).resolve().parent))

from issue_source import ANALYZE_LABEL, CLAIMED_LABEL, STORY_LABEL, IssueSource, IssueSourceError

log = logging.getLogger(__name__)
console = Console()

# (name, description, color)
LABELS: tuple[tuple[str, str, str], ...] = (
    (STORY_LABEL, "User story for Ralph autonomous agent", "5319E7"),
    (CLAIMED_LABEL, "Issue is currently being worked on by Ralph", "FBCA04"),
    (ANALYZE_LABEL, "Issue needs analysis and conversion to user story format", "D93F0B"),
)

_LABEL_MEANING = {
    STORY_LABEL: "ready to implement",
    ANALYZE_LABEL: "need refinement",
    CLAIMED_LABEL: "currently being worked on",
}


def _quiet(cmd: list[str], cwd: Path | None = None) -> bool:
    try:
        proc = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=60)
    except (OSError, subprocess.TimeoutExpired):
        return False
    return proc.returncode == 0


def gh_installed() -> bool:
    return shutil.which("gh") is not None


def gh_authenticated(repo_path: Path | None = None) -> bool:
    return _quiet(["gh", "auth", "status"], cwd=repo_path)


def in_git_repo(repo_path: Path) -> bool:
    return _quiet(["git", "rev-parse", "--git-dir"], cwd=repo_path)


def run_init(repo_path: str | Path = ".") -> int:
    """Check prerequisites, create missing labels and show open issue counts."""
    repo = Path(repo_path).resolve()
    console.rule("[bold]Ralph Repository Initialization")

    checks = (
        (gh_installed, "GitHub CLI installed", "GitHub CLI (gh) not installed"),
        (lambda: gh_authenticated(repo), "GitHub CLI authenticated", "GitHub CLI not authenticated - run: gh auth login"),
        (lambda: in_git_repo(repo), "Git repository detected", "Not in a git repository"),
    )
    for check, ok_msg, fail_msg in checks:
        if not check():
            console.print(f"[red][x] {fail_msg}[/red]")
            return 1
        console.print(f"[green][✓] {ok_msg}[/green]")

    source = IssueSource(repo_path=repo)
    console.print("\nSetting up labels...")
    for name, description, color in LABELS:
        try:
            created = source.ensure_label(name, description, color)
        except IssueSourceError as exc:
            log.error("Could not set up label %s: %s", name, exc)
            console.print(f"[red][x] Failed to create label: {name}[/red]")
            return 1
        if created:
            console.print(f"[green][✓] Created label: {name}[/green]")
        else:
            console.print(f"[yellow][~] Label exists: {name}[/yellow]")

    table = Table(title="Current issue status")
    table.add_column("Label", style="cyan", no_wrap=True)
    table.add_column("Open", justify="right")
    table.add_column("Meaning")
    for name in (STORY_LABEL, ANALYZE_LABEL, CLAIMED_LABEL):
        try:
            count = str(source.count_open(name))
        except IssueSourceError as exc:
            log.warning("Could not count %s issues: %s", name, exc)
            count = "?"
        table.add_row(name, count, _LABEL_MEANING[name])
    console.print()
    console.print(table)
    console.rule("[bold]Initialization Complete!")
    return 0
