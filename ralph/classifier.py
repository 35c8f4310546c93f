"""Classify a coding-agent transcript into a retry decision.

The agent tool is a black box: all we get back is its merged stdout/stderr.
Two independent questions are answered from that text:

* Did the agent finish the work?  Only when the transcript shows *both* a
  passing CI run and a closed issue.  Either marker alone is not enough.
* Did the run hit an error?  The rules in :data:`RULES` are checked in order
  and the first match wins.

The two answers are not mutually exclusive: an agent that closed
its issue and then died with ``Error: No messages returned`` still did the
work, and the driver must not retry it.
"""

from __future__ import annotations

import enum
import re
from collections.abc import Callable
from dataclasses import dataclass

COMPLETION_SIGNAL = "<promise>COMPLETE</promise>"

_CI_PASSED = re.compile(
    r"CI status:.*Passed|CI status:.*✅|CI.*passed|"
    r"workflow.*completed.*success|run.*completed.*success",
    re.IGNORECASE,
)
_ISSUE_CLOSED = re.compile(
    r"issue.*closed|closed.*issue|gh issue close|Closing issue",
    re.IGNORECASE,
)
_CI_PENDING = re.compile(r"waiting for CI|gh run watch|CI run.*complete", re.IGNORECASE)

_NO_MESSAGES = re.compile(r"Error: No messages returned", re.IGNORECASE)
_NETWORK = re.compile(
    r"ECONNRESET|ETIMEDOUT|ENOTFOUND|socket hang up|connection refused|"
    r"network error|request timed out",
    re.IGNORECASE,
)
_ERROR_LINE = re.compile(r"^Error:.*$", re.IGNORECASE | re.MULTILINE)


class ErrorCategory(enum.Enum):
    EMPTY_OUTPUT = "empty_output"
    NO_MESSAGES = "no_messages"
    NETWORK = "network"
    GENERIC_ERROR = "generic_error"
    SUCCESS = "success"

    @property
    def is_error(self) -> bool:
        return self is not ErrorCategory.SUCCESS


@dataclass(frozen=True)
class Rule:
    category: ErrorCategory
    matches: Callable[[str], bool]
    description: str


RULES: tuple[Rule, ...] = (
    Rule(ErrorCategory.EMPTY_OUTPUT, lambda text: not text.strip(), "empty output"),
    Rule(ErrorCategory.NO_MESSAGES, lambda text: bool(_NO_MESSAGES.search(text)), "'No messages returned'"),
    Rule(ErrorCategory.NETWORK, lambda text: bool(_NETWORK.search(text)), "network/connection error"),
    Rule(ErrorCategory.GENERIC_ERROR, lambda text: bool(_ERROR_LINE.search(text)), "tool error"),
)


@dataclass(frozen=True)
class Classification:
    category: ErrorCategory
    work_completed: bool
    ci_passed: bool = False
    issue_closed: bool = False
    ci_pending: bool = False
    completion_signal: bool = False
    error_line: str | None = None

    @property
    def needs_retry(self) -> bool:
        """True when the attempt failed and the work is not already done."""
        return self.category.is_error and not self.work_completed


def _first_error_line(text: str) -> str | None:
    m = _ERROR_LINE.search(text)
    return m.group(0).strip() if m else None


def classify(transcript: str | None) -> Classification:
    text = transcript or ""
    ci_passed = bool(_CI_PASSED.search(text))
    issue_closed = bool(_ISSUE_CLOSED.search(text))

    category = ErrorCategory.SUCCESS
    for rule in RULES:
        if rule.matches(text):
            category = rule.category
            break

    return Classification(
        category=category,
        work_completed=ci_passed and issue_closed,
        ci_passed=ci_passed,
        issue_closed=issue_closed,
        ci_pending=bool(_CI_PENDING.search(text)),
        completion_signal=COMPLETION_SIGNAL in text,
        error_line=_first_error_line(text),
    )


def describe(category: ErrorCategory) -> str:
    """Human-readable label for log lines."""
    for rule in RULES:
        if rule.category is category:
            return rule.description
    return "success"
