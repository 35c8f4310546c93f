"""GitHub Issues as the shared work tracker, driven through the ``gh`` CLI.

Every worker process talks to the same repository.  The only shared state
between workers is what lives on the issues themselves:

* the label set (``ralph-analyze`` / ``ralph-story`` select the pool,
  ``ralph-in-progress`` marks an item as believed-owned), and
* the append-only comment log, whose server-side ``createdAt`` timestamps
  are what the claim protocol orders on.

Nothing here is atomic.  ``gh issue edit --add-label`` from two machines at
once simply leaves the label on the issue; see :mod:`claims` for how
ownership is actually decided.
"""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

log = logging.getLogger(__name__)

ANALYZE_LABEL = "ralph-analyze"
STORY_LABEL = "ralph-story"
CLAIMED_LABEL = "ralph-in-progress"

_LIST_LIMIT = 200


class IssueSourceError(RuntimeError):
    """Raised when a ``gh`` command fails or times out."""


@dataclass(frozen=True)
class WorkItem:
    """Snapshot of one open issue, valid only until the next fetch."""

    number: int
    title: str
    body: str
    labels: frozenset[str]
    created_at: datetime | None = None

    @property
    def is_claimed(self) -> bool:
        return CLAIMED_LABEL in self.labels


@dataclass(frozen=True)
class Comment:
    body: str
    created_at: datetime
    author: str = ""


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse GitHub's ``2024-05-01T12:00:00Z`` timestamps into aware datetimes."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        log.warning("Unparseable timestamp from gh: %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _issue_to_item(issue: dict) -> WorkItem:
    labels = issue.get("labels") or []
    return WorkItem(
        number=int(issue["number"]),
        title=issue.get("title") or "",
        body=issue.get("body") or "",
        labels=frozenset(lbl.get("name", "") for lbl in labels),
        created_at=parse_timestamp(issue.get("createdAt")),
    )


def _to_comment(raw: dict) -> Comment | None:
    created = parse_timestamp(raw.get("createdAt"))
    if created is None:
        return None
    author = raw.get("author") or {}
    return Comment(
        body=raw.get("body") or "",
        created_at=created,
        author=author.get("login", "") if isinstance(author, dict) else str(author),
    )


# ---------------------------------------------------------------------------
# IssueSource
# ---------------------------------------------------------------------------

class IssueSource:
    """Read and mutate issues of the repository checked out at *repo_path*.

    Parameters
    ----------
    repo_path:
        Path to the local git repository (used as cwd for ``gh`` calls).
    timeout:
        Per-command timeout in seconds.
    """

    def __init__(self, repo_path: str | Path = ".", timeout: int = 60) -> None:
        self.repo_path = Path(repo_path).resolve()
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_items(self, label: str) -> list[WorkItem]:
        """Open issues carrying *label*, in the order ``gh`` returns them."""
        result = self._gh([
            "issue", "list",
            "--label", label,
            "--state", "open",
            "--limit", str(_LIST_LIMIT),
            "--json", "number,title,body,labels,createdAt",
        ])
        try:
            issues = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise IssueSourceError(f"gh issue list returned invalid JSON: {exc}") from exc
        return [_issue_to_item(iss) for iss in issues]

    def get_comments(self, number: int, limit: int = 10) -> list[Comment]:
        """Return the *limit* most recent comments on issue *number*, oldest first."""
        result = self._gh(["issue", "view", str(number), "--json", "comments"])
        try:
            raw = json.loads(result.stdout or "{}").get("comments") or []
        except (json.JSONDecodeError, AttributeError) as exc:
            raise IssueSourceError(f"gh issue view returned invalid JSON: {exc}") from exc
        comments = [c for c in (_to_comment(r) for r in raw) if c is not None]
        comments.sort(key=lambda c: c.created_at)
        return comments[-limit:] if limit > 0 else comments

    def count_open(self, label: str) -> int:
        return len(self.list_items(label))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_label(self, number: int, label: str) -> None:
        self._gh(["issue", "edit", str(number), "--add-label", label], timeout=120)

    def remove_label(self, number: int, label: str) -> None:
        self._gh(["issue", "edit", str(number), "--remove-label", label], timeout=120)

    def post_comment(self, number: int, body: str) -> None:
        self._gh(["issue", "comment", str(number), "--body", body], timeout=120)

    def ensure_label(self, name: str, description: str, color: str) -> bool:
        """Create *name* if the repository lacks it.  Returns True if created."""
        existing = self._gh(["label", "list", "--json", "name", "--limit", "200"])
        try:
            names = {lbl["name"] for lbl in json.loads(existing.stdout or "[]")}
        except (json.JSONDecodeError, KeyError, TypeError):
            names = set()
        if name in names:
            return False
        self._gh([
            "label", "create", name,
            "--description", description,
            "--color", color,
        ], timeout=120)
        log.info("Created label '%s'", name)
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _gh(self, args: list[str], timeout: int | None = None) -> subprocess.CompletedProcess:
        """Run a ``gh`` subcommand, raising on non-zero exit."""
        cmd = ["gh"] + args
        timeout = timeout or self.timeout
        try:
            result = subprocess.run(
                cmd,
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise IssueSourceError(
                f"gh command timed out after {timeout}s: {' '.join(cmd)}"
            ) from exc
        except OSError as exc:
            raise IssueSourceError(f"could not run gh: {exc}") from exc
        if result.returncode != 0:
            raise IssueSourceError(
                f"gh command failed ({result.returncode}): "
                f"{' '.join(cmd)}\n{(result.stderr or '').strip()}"
            )
        return result
