"""Tests for ``ralph --init``."""

from unittest.mock import MagicMock, patch

from issue_source import IssueSourceError
from repo_init import LABELS, run_init


@patch("repo_init.in_git_repo", return_value=True)
@patch("repo_init.gh_authenticated", return_value=True)
@patch("repo_init.gh_installed", return_value=True)
@patch("repo_init.IssueSource")
def test_init_creates_every_label(mock_source_cls: MagicMock, *_checks: MagicMock) -> None:
    source = mock_source_cls.return_value
    source.ensure_label.return_value = True
    source.count_open.return_value = 2

    assert run_init("/tmp/repo") == 0

    created = [c.args for c in source.ensure_label.call_args_list]
    assert created == list(LABELS)
    assert source.count_open.call_count == 3


@patch("repo_init.gh_installed", return_value=False)
def test_init_requires_gh(_installed: MagicMock) -> None:
    assert run_init("/tmp/repo") == 1


@patch("repo_init.in_git_repo", return_value=False)
@patch("repo_init.gh_authenticated", return_value=True)
@patch("repo_init.gh_installed", return_value=True)
def test_init_requires_git_repo(*_checks: MagicMock) -> None:
    assert run_init("/tmp/repo") == 1


@patch("repo_init.in_git_repo", return_value=True)
@patch("repo_init.gh_authenticated", return_value=True)
@patch("repo_init.gh_installed", return_value=True)
@patch("repo_init.IssueSource")
def test_init_label_failure(mock_source_cls: MagicMock, *_checks: MagicMock) -> None:
    mock_source_cls.return_value.ensure_label.side_effect = IssueSourceError("forbidden")
    assert run_init("/tmp/repo") == 1


@patch("repo_init.in_git_repo", return_value=True)
@patch("repo_init.gh_authenticated", return_value=True)
@patch("repo_init.gh_installed", return_value=True)
@patch("repo_init.IssueSource")
def test_init_tolerates_count_failure(mock_source_cls: MagicMock, *_checks: MagicMock) -> None:
    source = mock_source_cls.return_value
    source.ensure_label.return_value = False
    source.count_open.side_effect = IssueSourceError("rate limited")
    assert run_init("/tmp/repo") == 0


def test_label_colors() -> None:
    assert {name: color for name, _desc, color in LABELS} == {
        "ralph-story": "5319E7",
        "ralph-in-progress": "FBCA04",
        "ralph-analyze": "D93F0B",
    }
