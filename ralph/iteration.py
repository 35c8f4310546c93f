"""One iteration of the loop: select, claim, invoke the agent, classify, decide.

States::

    SELECTING -> CLAIMING -> INVOKING -> CLASSIFYING -> RETRYING -> INVOKING ...
                                                    \\-> ADVANCING | SKIPPING | TERMINATED

Nothing that happens inside an iteration is fatal to the process.  The
iteration reports an :class:`IterationOutcome` and the batch controller
decides whether to keep going.
"""

from __future__ import annotations

import enum
import logging
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console

sys.path.insert(0, str(Path(__file__).resolve().parent))

import task_manager
from claims import ClaimCoordinator
from classifier import Classification, ErrorCategory, classify, describe
from issue_source import IssueSourceError, WorkItem
from task_manager import POOL_ORDER, Pool, StoryFileError, load_stories, parse_priority, priority_name
from worker import ClaimedIssue, ToolResult, Worker, WorkerError, build_prompt

log = logging.getLogger(__name__)
console = Console()

MAX_TOOL_ATTEMPTS = 5

# Seconds of backoff per attempt number, by failure category.
RETRY_BACKOFF: dict[ErrorCategory, int] = {
    ErrorCategory.EMPTY_OUTPUT: 10,
    ErrorCategory.NO_MESSAGES: 15,
    ErrorCategory.NETWORK: 20,
    ErrorCategory.GENERIC_ERROR: 10,
}

# Categories that re-check the pools once retries run out; the rest just skip.
RECHECK_WORK_ON_EXHAUSTION = frozenset({ErrorCategory.EMPTY_OUTPUT, ErrorCategory.NO_MESSAGES})

CLAIMS_PER_ROUND = 5
CLAIM_ROUNDS = 5
CLAIM_ROUND_DELAY = 10  # seconds
ABANDON_PAUSE = 30  # seconds
SETTLE_DELAY = 1  # seconds before each tool invocation


class IterationState(enum.Enum):
    SELECTING = "selecting"
    CLAIMING = "claiming"
    INVOKING = "invoking"
    CLASSIFYING = "classifying"
    RETRYING = "retrying"
    ADVANCING = "advancing"
    SKIPPING = "skipping"
    TERMINATED = "terminated"


class IterationOutcome(enum.Enum):
    ADVANCED = "advanced"      # success, or errors after the work was already done
    SKIPPED = "skipped"        # retries exhausted, work remains elsewhere
    ABANDONED = "abandoned"    # no claim could be won this iteration
    NO_WORK = "no_work"        # both pools empty
    TERMINATED = "terminated"  # completion signal seen in the transcript

    @property
    def ends_batch(self) -> bool:
        return self in (IterationOutcome.NO_WORK, IterationOutcome.TERMINATED)


@dataclass
class IterationAttempt:
    attempt_number: int
    error_category: ErrorCategory
    work_completed: bool


@dataclass
class IterationResult:
    outcome: IterationOutcome
    claimed: ClaimedIssue | None = None
    attempts: list[IterationAttempt] = field(default_factory=list)
    classification: Classification | None = None
    states: list[IterationState] = field(default_factory=list)


class _NoWork:
    """Sentinel returned by the selection loop when both pools are empty."""


_NO_WORK = _NoWork()


class IterationDriver:
    """Run single iterations for one worker process.

    *source* is the shared tracker (``None`` for the local story-file mode,
    where nothing is claimed).  *worker_id* is the process-wide identity and
    is passed explicitly to every claim call.
    """

    def __init__(
        self,
        worker: Worker,
        worker_id: str,
        prompt_text: str,
        source=None,
        coordinator: ClaimCoordinator | None = None,
        story_path: str | Path | None = None,
        max_attempts: int = MAX_TOOL_ATTEMPTS,
        claims_per_round: int = CLAIMS_PER_ROUND,
        claim_rounds: int = CLAIM_ROUNDS,
        claim_round_delay: float = CLAIM_ROUND_DELAY,
        abandon_pause: float = ABANDON_PAUSE,
        settle_delay: float = SETTLE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.worker = worker
        self.worker_id = worker_id
        self.prompt_text = prompt_text
        self.source = source
        self.coordinator = coordinator
        if source is not None and coordinator is None:
            self.coordinator = ClaimCoordinator(source, sleep=sleep)
        self.story_path = Path(story_path) if story_path else None
        self.max_attempts = max_attempts
        self.claims_per_round = claims_per_round
        self.claim_rounds = claim_rounds
        self.claim_round_delay = claim_round_delay
        self.abandon_pause = abandon_pause
        self.settle_delay = settle_delay
        self._sleep = sleep
        self._states: list[IterationState] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run_iteration(self) -> IterationResult:
        self._states = []
        self._enter(IterationState.SELECTING)

        claimed: ClaimedIssue | None = None
        if self.source is not None:
            selection = self._select_and_claim()
            if selection is _NO_WORK:
                log.info("No available issues found. All done!")
                return self._result(IterationOutcome.NO_WORK)
            if selection is None:
                log.error(
                    "Could not claim any issue after %d rounds; all issues may be "
                    "claimed by other workers. Pausing %ss.",
                    self.claim_rounds,
                    self.abandon_pause,
                )
                self._sleep(self.abandon_pause)
                return self._result(IterationOutcome.ABANDONED)
            claimed = selection
            console.rule(f"[bold green]CLAIMED: Issue #{claimed.number} (Worker: {self.worker_id})")
            self._set_board_status(claimed.number, "In progress")
        elif not self.has_available_work():
            log.info("No pending stories left. All done!")
            return self._result(IterationOutcome.NO_WORK)

        prompt = build_prompt(self.prompt_text, self.worker_id, claimed)
        return self._invoke_with_retry(prompt, claimed)

    def has_available_work(self) -> bool:
        """True if any unclaimed work exists.  Errors count as "maybe"."""
        if self.source is not None:
            try:
                return task_manager.has_available_work(self.source)
            except IssueSourceError as exc:
                log.warning("Could not check for available issues: %s", exc)
                return True
        if self.story_path is not None and self.story_path.exists():
            try:
                return load_stories(self.story_path).has_pending()
            except (StoryFileError, OSError) as exc:
                log.warning("Could not read %s: %s", self.story_path, exc)
                return True
        return True

    # ------------------------------------------------------------------
    # Selection and claiming
    # ------------------------------------------------------------------

    def _select_and_claim(self) -> ClaimedIssue | _NoWork | None:
        for round_no in range(1, self.claim_rounds + 1):
            attempts = 0
            saw_candidates = False
            fetch_failed = False

            for pool in POOL_ORDER:
                if attempts >= self.claims_per_round:
                    break
                self._enter(IterationState.SELECTING)
                try:
                    candidates = task_manager.select_candidates(self.source, pool)
                except IssueSourceError as exc:
                    log.warning("Could not list %s issues: %s", pool.label, exc)
                    fetch_failed = True
                    continue
                saw_candidates = saw_candidates or bool(candidates)

                for item in candidates:
                    if attempts >= self.claims_per_round:
                        break
                    attempts += 1
                    self._log_candidate(item, pool)
                    self._enter(IterationState.CLAIMING)
                    outcome = self.coordinator.try_claim(item.number, self.worker_id)
                    if outcome.proceeds:
                        return ClaimedIssue(item.number, item.title, pool.issue_type)

            if not saw_candidates and not fetch_failed:
                return _NO_WORK
            if round_no < self.claim_rounds:
                log.warning(
                    "Could not claim any issue. Waiting %ss before retry (%d/%d)...",
                    self.claim_round_delay,
                    round_no,
                    self.claim_rounds,
                )
                self._sleep(self.claim_round_delay)
        return None

    @staticmethod
    def _log_candidate(item: WorkItem, pool: Pool) -> None:
        if pool is Pool.ANALYSIS:
            log.info(">> Attempting issue #%d for ANALYSIS: %s", item.number, item.title)
        else:
            level = parse_priority(item.body)
            log.info(
                ">> Attempting issue #%d for IMPLEMENTATION: %s (priority %d - %s)",
                item.number,
                item.title,
                level,
                priority_name(level),
            )

    # ------------------------------------------------------------------
    # Invocation and retry
    # ------------------------------------------------------------------

    def _invoke_with_retry(self, prompt: str, claimed: ClaimedIssue | None) -> IterationResult:
        attempts: list[IterationAttempt] = []
        attempt = 0
        while True:
            attempt += 1
            self._enter(IterationState.INVOKING)
            self._sleep(self.settle_delay)
            result = self._run_tool(prompt)

            self._enter(IterationState.CLASSIFYING)
            verdict = classify(result.output)
            attempts.append(IterationAttempt(attempt, verdict.category, verdict.work_completed))
            self._report_progress(verdict)

            if verdict.completion_signal:
                log.info("Completion signal found. Ralph completed all tasks!")
                self._hand_off(claimed, completed=verdict.work_completed)
                self._enter(IterationState.TERMINATED)
                return self._result(IterationOutcome.TERMINATED, claimed, attempts, verdict)

            if not verdict.needs_retry:
                if verdict.category.is_error:
                    log.warning(
                        "%s occurred but work was already completed. Continuing...",
                        describe(verdict.category),
                    )
                self._hand_off(claimed, completed=verdict.work_completed)
                self._enter(IterationState.ADVANCING)
                return self._result(IterationOutcome.ADVANCED, claimed, attempts, verdict)

            if attempt >= self.max_attempts:
                return self._give_up(claimed, attempts, verdict)

            wait = attempt * RETRY_BACKOFF[verdict.category]
            log.warning(
                "[!] %s%s. Waiting %ss before retry (%d/%d)...",
                describe(verdict.category),
                f": {verdict.error_line}" if verdict.category is ErrorCategory.GENERIC_ERROR else "",
                wait,
                attempt,
                self.max_attempts,
            )
            self._enter(IterationState.RETRYING)
            self._sleep(wait)

    def _give_up(
        self,
        claimed: ClaimedIssue | None,
        attempts: list[IterationAttempt],
        verdict: Classification,
    ) -> IterationResult:
        log.error(
            "[x] %s persisted after %d attempts.",
            describe(verdict.category),
            self.max_attempts,
        )
        work_left = True
        if verdict.category in RECHECK_WORK_ON_EXHAUSTION:
            work_left = self.has_available_work()

        self._enter(IterationState.SKIPPING)
        if claimed is not None:
            self.coordinator.release(
                claimed.number,
                self.worker_id,
                f"{describe(verdict.category)} after {self.max_attempts} attempts",
            )
        if not work_left:
            log.info("No available issues found. All done!")
            return self._result(IterationOutcome.NO_WORK, claimed, attempts, verdict)
        log.info("Skipping this iteration...")
        return self._result(IterationOutcome.SKIPPED, claimed, attempts, verdict)

    def _run_tool(self, prompt: str) -> ToolResult:
        try:
            return self.worker.run(prompt)
        except WorkerError as exc:
            log.error("Agent tool could not be started: %s", exc)
            return ToolResult(output="", returncode=None)

    @staticmethod
    def _report_progress(verdict: Classification) -> None:
        if verdict.work_completed:
            log.info("[✓] Work completed successfully (CI passed, issue closed).")
        elif verdict.ci_passed:
            log.info("[~] CI passed but issue not yet closed.")
        elif verdict.ci_pending:
            log.info("[...] CI verification in progress.")

    # ------------------------------------------------------------------
    # Tracker side effects
    # ------------------------------------------------------------------

    def _hand_off(self, claimed: ClaimedIssue | None, completed: bool) -> None:
        """Close our claim epoch once the agent is finished with the issue."""
        if claimed is None or self.source is None:
            return
        self.coordinator.release(
            claimed.number,
            self.worker_id,
            "work completed" if completed else "agent run finished, handing off",
        )
        if completed:
            self._set_board_status(claimed.number, "Done")

    def _set_board_status(self, number: int, value: str) -> None:
        setter = getattr(self.source, "set_board_status", None)
        if setter is None:
            return
        try:
            setter(number, "Status", value)
        except Exception as exc:
            log.debug("Skipping board status update for #%d: %s", number, exc)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _enter(self, state: IterationState) -> None:
        self._states.append(state)

    def _result(
        self,
        outcome: IterationOutcome,
        claimed: ClaimedIssue | None = None,
        attempts: list[IterationAttempt] | None = None,
        verdict: Classification | None = None,
    ) -> IterationResult:
        return IterationResult(
            outcome=outcome,
            claimed=claimed,
            attempts=attempts or [],
            classification=verdict,
            states=list(self._states),
        )
