"""Shared fixtures: an in-memory stand-in for the GitHub issue tracker."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from issue_source import Comment, IssueSourceError, WorkItem


class FakeTracker:
    """Labels and comment logs kept in memory, with a controllable clock.

    Every posted comment gets the next clock tick as its ``created_at``
    unless a timestamp was queued with :meth:`queue_timestamp`, which lets a
    test make a later post look earlier (server-side clock skew).
    """

    def __init__(self) -> None:
        self.clock = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        self.order: list[int] = []
        self.titles: dict[int, str] = {}
        self.bodies: dict[int, str] = {}
        self.labels: dict[int, set[str]] = {}
        self.comments: dict[int, list[Comment]] = {}
        self.calls: list[tuple] = []
        self._queued: list[datetime] = []
        self.fail_add_label = False
        self.fail_remove_label = False
        self.fail_post = False
        self.fail_read = False
        self.fail_list = False

    def add_issue(self, number: int, title: str = "", body: str = "", labels=()) -> None:
        self.order.append(number)
        self.titles[number] = title or f"Issue {number}"
        self.bodies[number] = body
        self.labels[number] = set(labels)
        self.comments[number] = []

    def tick(self, seconds: int = 1) -> datetime:
        self.clock += timedelta(seconds=seconds)
        return self.clock

    def queue_timestamp(self, when: datetime) -> None:
        self._queued.append(when)

    # Tracker interface -------------------------------------------------

    def list_items(self, label: str) -> list[WorkItem]:
        self.calls.append(("list_items", label))
        if self.fail_list:
            raise IssueSourceError("list failed")
        return [
            WorkItem(
                number=n,
                title=self.titles[n],
                body=self.bodies[n],
                labels=frozenset(self.labels[n]),
            )
            for n in self.order
            if label in self.labels[n]
        ]

    def add_label(self, number: int, label: str) -> None:
        self.calls.append(("add_label", number, label))
        if self.fail_add_label:
            raise IssueSourceError("add label failed")
        self.labels[number].add(label)

    def remove_label(self, number: int, label: str) -> None:
        self.calls.append(("remove_label", number, label))
        if self.fail_remove_label:
            raise IssueSourceError("remove label failed")
        self.labels[number].discard(label)

    def post_comment(self, number: int, body: str) -> None:
        self.calls.append(("post_comment", number, body))
        if self.fail_post:
            raise IssueSourceError("post failed")
        when = self._queued.pop(0) if self._queued else self.tick()
        self.comments[number].append(Comment(body=body, created_at=when))

    def get_comments(self, number: int, limit: int = 10) -> list[Comment]:
        self.calls.append(("get_comments", number, limit))
        if self.fail_read:
            raise IssueSourceError("read failed")
        ordered = sorted(self.comments[number], key=lambda c: c.created_at)
        return ordered[-limit:]


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture
def no_sleep():
    """A sleep replacement that records requested delays."""
    delays: list[float] = []

    def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep
