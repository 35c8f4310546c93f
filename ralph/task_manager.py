"""Pick candidate work items and load the local story file."""

from __future__ import annotations

import enum
import logging
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path

import yaml

sys.path.insert(0, str(Path(__file__).resolve().parent))

from issue_source import ANALYZE_LABEL, STORY_LABEL, WorkItem

log = logging.getLogger(__name__)

UNKNOWN_PRIORITY = 99

# Dropdown values of the user-story issue form, highest priority first.
PRIORITY_MARKERS: tuple[tuple[int, str], ...] = (
    (1, "1 - Critical"),
    (2, "2 - High"),
    (3, "3 - Medium"),
    (4, "4 - Low"),
    (5, "5 - Nice"),
)
PRIORITY_NAMES = {
    1: "Critical",
    2: "High",
    3: "Medium",
    4: "Low",
    5: "Nice to have",
}

_PRIORITY_PATTERNS = tuple(
    (level, re.compile(re.escape(marker), re.IGNORECASE)) for level, marker in PRIORITY_MARKERS
)


class Pool(enum.Enum):
    """Where a work item sits.  ANALYSIS is always drained before EXECUTION."""

    ANALYSIS = ANALYZE_LABEL
    EXECUTION = STORY_LABEL

    @property
    def label(self) -> str:
        return self.value

    @property
    def issue_type(self) -> str:
        return "analyze" if self is Pool.ANALYSIS else "story"


POOL_ORDER: tuple[Pool, ...] = (Pool.ANALYSIS, Pool.EXECUTION)


def parse_priority(body: str) -> int:
    """Map an issue body to 1 (Critical) .. 5 (Nice to have), or 99 if unmarked."""
    for level, pattern in _PRIORITY_PATTERNS:
        if pattern.search(body or ""):
            return level
    return UNKNOWN_PRIORITY


def priority_name(level: int) -> str:
    return PRIORITY_NAMES.get(level, "Unknown")


def select_candidates(source, pool: Pool) -> list[WorkItem]:
    """Fetch *pool* fresh from the tracker and return the claimable items in order.

    Never cached: claim state changes under us between calls, and acting on a
    stale snapshot means racing for items somebody already owns.
    """
    items = [item for item in source.list_items(pool.label) if not item.is_claimed]
    if pool is Pool.EXECUTION:
        # sorted() is stable, so ties keep the tracker's order.
        items = sorted(items, key=lambda item: parse_priority(item.body))
    return items


def has_available_work(source) -> bool:
    """Cheap existence check across both pools; no claiming."""
    for pool in POOL_ORDER:
        if any(not item.is_claimed for item in source.list_items(pool.label)):
            return True
    return False


# ---------------------------------------------------------------------------
# Local story file (--source prd)
# ---------------------------------------------------------------------------


class StoryFileError(ValueError):
    """Raised when the local story file is malformed."""


@dataclass
class Story:
    id: str
    title: str
    priority: int = UNKNOWN_PRIORITY
    passes: bool = False


@dataclass
class StoryFile:
    path: Path
    branch_name: str = ""
    stories: list[Story] = field(default_factory=list)

    @property
    def pending(self) -> list[Story]:
        return sorted((s for s in self.stories if not s.passes), key=lambda s: s.priority)

    def has_pending(self) -> bool:
        return bool(self.pending)


def load_stories(path: str | Path) -> StoryFile:
    """Read a ``prd.json``-style story file (JSON or YAML).

    The file must have a top-level ``userStories`` list; each story needs an
    ``id`` and a ``title``.  Optional: ``priority`` (default 99) and
    ``passes`` (default false).

    Raises StoryFileError if the structure is wrong or story IDs repeat.
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise StoryFileError(f"Could not parse {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise StoryFileError(f"{path} must contain a mapping at the top level")
    raw_stories = data.get("userStories")
    if not isinstance(raw_stories, list):
        raise StoryFileError(f"No 'userStories' list found in {path}")

    stories: list[Story] = []
    seen_ids: set[str] = set()
    for entry in raw_stories:
        try:
            story_id = str(entry["id"])
            title = str(entry["title"])
            priority = int(entry.get("priority", UNKNOWN_PRIORITY))
        except (KeyError, TypeError, ValueError) as exc:
            raise StoryFileError(f"Invalid story entry in {path}: {exc!r}") from exc
        if story_id in seen_ids:
            raise StoryFileError(f"Duplicate story ID: {story_id}")
        seen_ids.add(story_id)
        stories.append(Story(
            id=story_id,
            title=title,
            priority=priority,
            passes=bool(entry.get("passes", False)),
        ))

    return StoryFile(path=path, branch_name=str(data.get("branchName") or ""), stories=stories)
