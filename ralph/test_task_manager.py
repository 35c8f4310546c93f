"""Tests for candidate selection and the local story file."""

import json

import pytest

from issue_source import CLAIMED_LABEL
from task_manager import (
    UNKNOWN_PRIORITY,
    Pool,
    StoryFileError,
    has_available_work,
    load_stories,
    parse_priority,
    priority_name,
    select_candidates,
)


# ---------------------------------------------------------------------------
# Priority parsing
# ---------------------------------------------------------------------------


def test_parse_priority_markers() -> None:
    assert parse_priority("### Priority\n\n1 - Critical") == 1
    assert parse_priority("### Priority\n\n2 - High") == 2
    assert parse_priority("3 - medium") == 3
    assert parse_priority("4 - Low") == 4
    assert parse_priority("5 - Nice to have") == 5


def test_parse_priority_missing_marker() -> None:
    assert parse_priority("Just a description") == UNKNOWN_PRIORITY
    assert parse_priority("") == UNKNOWN_PRIORITY


def test_parse_priority_highest_marker_wins() -> None:
    assert parse_priority("was 4 - Low, now 2 - High") == 2


def test_priority_name() -> None:
    assert priority_name(5) == "Nice to have"
    assert priority_name(99) == "Unknown"


# ---------------------------------------------------------------------------
# select_candidates
# ---------------------------------------------------------------------------


def test_execution_pool_sorted_by_priority(tracker) -> None:
    tracker.add_issue(10, body="3 - Medium", labels={"ralph-story"})
    tracker.add_issue(11, body="1 - Critical", labels={"ralph-story"})
    tracker.add_issue(12, body="5 - Nice to have", labels={"ralph-story"})
    tracker.add_issue(13, body="2 - High", labels={"ralph-story"})
    tracker.add_issue(14, body="no marker", labels={"ralph-story"})

    items = select_candidates(tracker, Pool.EXECUTION)

    assert [parse_priority(i.body) for i in items] == [1, 2, 3, 5, 99]
    assert [i.number for i in items] == [11, 13, 10, 12, 14]


def test_execution_pool_ties_keep_tracker_order(tracker) -> None:
    tracker.add_issue(3, body="2 - High", labels={"ralph-story"})
    tracker.add_issue(1, body="2 - High", labels={"ralph-story"})
    tracker.add_issue(2, body="1 - Critical", labels={"ralph-story"})

    assert [i.number for i in select_candidates(tracker, Pool.EXECUTION)] == [2, 3, 1]


def test_analysis_pool_keeps_tracker_order(tracker) -> None:
    tracker.add_issue(5, body="5 - Nice", labels={"ralph-analyze"})
    tracker.add_issue(4, body="1 - Critical", labels={"ralph-analyze"})

    assert [i.number for i in select_candidates(tracker, Pool.ANALYSIS)] == [5, 4]


def test_claimed_items_never_selected(tracker) -> None:
    tracker.add_issue(1, body="1 - Critical", labels={"ralph-story", CLAIMED_LABEL})
    tracker.add_issue(2, body="4 - Low", labels={"ralph-story"})
    tracker.add_issue(3, labels={"ralph-analyze", CLAIMED_LABEL})

    assert [i.number for i in select_candidates(tracker, Pool.EXECUTION)] == [2]
    assert select_candidates(tracker, Pool.ANALYSIS) == []


def test_select_candidates_refetches_every_call(tracker) -> None:
    tracker.add_issue(1, labels={"ralph-story"})
    assert [i.number for i in select_candidates(tracker, Pool.EXECUTION)] == [1]

    tracker.labels[1].add(CLAIMED_LABEL)
    assert select_candidates(tracker, Pool.EXECUTION) == []
    assert tracker.calls.count(("list_items", "ralph-story")) == 2


def test_has_available_work(tracker) -> None:
    assert not has_available_work(tracker)
    tracker.add_issue(1, labels={"ralph-story", CLAIMED_LABEL})
    assert not has_available_work(tracker)
    tracker.add_issue(2, labels={"ralph-analyze"})
    assert has_available_work(tracker)


def test_has_available_work_stops_at_analysis_pool(tracker) -> None:
    tracker.add_issue(1, labels={"ralph-analyze"})
    assert has_available_work(tracker)
    assert tracker.calls == [("list_items", "ralph-analyze")]


def test_pool_properties() -> None:
    assert Pool.ANALYSIS.label == "ralph-analyze"
    assert Pool.EXECUTION.label == "ralph-story"
    assert Pool.ANALYSIS.issue_type == "analyze"
    assert Pool.EXECUTION.issue_type == "story"


# ---------------------------------------------------------------------------
# Story file
# ---------------------------------------------------------------------------


def test_load_stories_json(tmp_path) -> None:
    path = tmp_path / "prd.json"
    path.write_text(json.dumps({
        "branchName": "ralph/filters",
        "userStories": [
            {"id": "US-002", "title": "Persist filter", "priority": 2, "passes": False},
            {"id": "US-001", "title": "Add filter", "priority": 1, "passes": True},
            {"id": "US-003", "title": "Polish", "priority": 1},
        ],
    }))

    stories = load_stories(path)

    assert stories.branch_name == "ralph/filters"
    assert [s.id for s in stories.pending] == ["US-003", "US-002"]
    assert stories.has_pending()


def test_load_stories_all_passing(tmp_path) -> None:
    path = tmp_path / "prd.yaml"
    path.write_text("userStories:\n  - id: A\n    title: First\n    passes: true\n")
    assert not load_stories(path).has_pending()


def test_load_stories_duplicate_ids(tmp_path) -> None:
    path = tmp_path / "prd.json"
    path.write_text(json.dumps({"userStories": [{"id": "A", "title": "x"}, {"id": "A", "title": "y"}]}))
    with pytest.raises(StoryFileError, match="Duplicate"):
        load_stories(path)


def test_load_stories_missing_list(tmp_path) -> None:
    path = tmp_path / "prd.json"
    path.write_text(json.dumps({"branchName": "x"}))
    with pytest.raises(StoryFileError):
        load_stories(path)


def test_load_stories_bad_entry(tmp_path) -> None:
    path = tmp_path / "prd.json"
    path.write_text(json.dumps({"userStories": [{"title": "no id"}]}))
    with pytest.raises(StoryFileError):
        load_stories(path)
