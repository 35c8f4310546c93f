"""Optimistic claim protocol over GitHub issue labels and comments.

There is no lock server.  Each worker that wants issue N:

1. adds the ``ralph-in-progress`` label (advisory only -- several workers
   can all succeed at this),
2. posts a claim comment carrying its worker id,
3. sleeps a random jitter window so rival claims have time to land,
4. re-reads the last few comments and orders the claim comments by the
   server's ``createdAt``.

The author of the earliest claim owns the issue.  Everybody else posts a
back-off comment and moves on, leaving the label alone (they cannot tell
whose label it is).

An owner that is finished with an issue, whether the agent completed it or
gave up, posts a *release* comment and then removes the label.  Claim
comments before the newest release comment belong to a finished epoch and
are ignored, so a released issue can be claimed again.

Known weak spots, kept as-is:

* If no claim comment can be read back at all, the claimant proceeds
  (``INCONCLUSIVE`` counts as a win).  Under a degraded comment read two
  workers can both proceed.
* A crashed owner leaves the label behind.  Label presence alone never
  means "currently owned".
"""

from __future__ import annotations

import enum
import logging
import os
import random
import re
import socket
import sys
import time
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from issue_source import CLAIMED_LABEL, Comment, IssueSourceError

log = logging.getLogger(__name__)

JITTER_MIN_SECONDS = 3.0
JITTER_MAX_SECONDS = 7.0
COMMENT_WINDOW = 10

_CLAIM_TOKEN = re.compile(r"<!--\s*ralph-claim:(\S+?)\s*-->")
_RELEASE_TOKEN = re.compile(r"<!--\s*ralph-release:(\S+?)\s*-->")


class ClaimOutcome(enum.Enum):
    WON = "won"
    LOST = "lost"
    INCONCLUSIVE = "inconclusive"

    @property
    def proceeds(self) -> bool:
        """Whether the caller should go ahead and work the issue."""
        return self is not ClaimOutcome.LOST


def make_worker_id(
    hostname: str | None = None,
    pid: int | None = None,
    started: float | None = None,
) -> str:
    """Build the process-wide worker id: ``ralph-<host>-<pid>-<epoch>``."""
    host = (hostname or socket.gethostname() or "local").split(".")[0] or "local"
    if pid is None:
        pid = os.getpid()
    if started is None:
        started = time.time()
    return f"ralph-{host}-{pid}-{int(started)}"


def claim_marker(worker_id: str) -> str:
    return f"<!-- ralph-claim:{worker_id} -->"


def release_marker(worker_id: str) -> str:
    return f"<!-- ralph-release:{worker_id} -->"


def backoff_marker(worker_id: str) -> str:
    return f"<!-- ralph-backoff:{worker_id} -->"


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def claim_comment(worker_id: str) -> str:
    return (
        "🤖 **Claimed by Ralph worker**\n"
        f"{claim_marker(worker_id)}\n"
        f"Worker ID: `{worker_id}`\n"
        f"Timestamp: {_utc_stamp()}"
    )


def backoff_comment(worker_id: str) -> str:
    return (
        "🤖 **Released by Ralph worker**\n"
        f"{backoff_marker(worker_id)}\n"
        f"Worker `{worker_id}` backing off - another worker claimed first."
    )


def release_comment(worker_id: str, reason: str) -> str:
    return (
        "🤖 **Released by Ralph worker**\n"
        f"{release_marker(worker_id)}\n"
        f"Worker `{worker_id}` released this issue: {reason}"
    )


def claim_owner(comments: list[Comment]) -> str | None:
    """Return the worker id of the earliest live claim in *comments*, or None.

    Only claims after the newest release record are live.  Timestamps have
    one-second resolution; *comments* arrive in posting order and the sort
    is stable, so records stamped in the same second keep that order.
    """
    ordered = sorted(comments, key=lambda c: c.created_at)
    epoch_start = 0
    for index, comment in enumerate(ordered):
        if _RELEASE_TOKEN.search(comment.body):
            epoch_start = index + 1
    for comment in ordered[epoch_start:]:
        m = _CLAIM_TOKEN.search(comment.body)
        if m:
            return m.group(1)
    return None


class ClaimCoordinator:
    """Run the claim protocol against *source* (an :class:`IssueSource`-like object).

    ``sleep`` and ``rng`` are injectable so tests can control the jitter.
    """

    def __init__(
        self,
        source,
        jitter: tuple[float, float] = (JITTER_MIN_SECONDS, JITTER_MAX_SECONDS),
        comment_window: int = COMMENT_WINDOW,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.source = source
        self.jitter = jitter
        self.comment_window = comment_window
        self._sleep = sleep
        self._rng = rng or random.Random()

    def try_claim(self, number: int, worker_id: str) -> ClaimOutcome:
        log.info("Attempting to claim issue #%d", number)

        try:
            self.source.add_label(number, CLAIMED_LABEL)
        except IssueSourceError as exc:
            log.warning("Could not add '%s' to #%d: %s", CLAIMED_LABEL, number, exc)

        try:
            self.source.post_comment(number, claim_comment(worker_id))
        except IssueSourceError as exc:
            log.warning("Could not post claim comment on #%d: %s", number, exc)
            return ClaimOutcome.LOST

        wait = self._rng.uniform(*self.jitter)
        log.info("Waiting %.1fs to verify exclusive claim on #%d", wait, number)
        self._sleep(wait)

        try:
            comments = self.source.get_comments(number, limit=self.comment_window)
        except IssueSourceError as exc:
            log.warning("Could not read comments on #%d: %s", number, exc)
            comments = []

        owner = claim_owner(comments)
        if owner is None:
            log.warning("Could not verify claim on #%d, proceeding anyway", number)
            return ClaimOutcome.INCONCLUSIVE
        if owner == worker_id:
            log.info("Successfully claimed issue #%d", number)
            return ClaimOutcome.WON

        log.info("Worker %s claimed issue #%d first, backing off", owner, number)
        self.back_off(number, worker_id)
        return ClaimOutcome.LOST

    def back_off(self, number: int, worker_id: str) -> None:
        """Leave an audit comment after losing.  The label is not touched."""
        try:
            self.source.post_comment(number, backoff_comment(worker_id))
        except IssueSourceError as exc:
            log.warning("Could not post back-off comment on #%d: %s", number, exc)

    def release(self, number: int, worker_id: str, reason: str) -> None:
        """Give up ownership: close the claim epoch, then drop the label.

        The label stays until the release record has landed, so anyone who
        sees the item unlabelled also sees the closed epoch.
        """
        try:
            self.source.post_comment(number, release_comment(worker_id, reason))
        except IssueSourceError as exc:
            log.warning("Could not post release comment on #%d: %s", number, exc)
        try:
            self.source.remove_label(number, CLAIMED_LABEL)
        except IssueSourceError as exc:
            log.warning("Could not remove '%s' from #%d: %s", CLAIMED_LABEL, number, exc)
