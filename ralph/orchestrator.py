"""Orchestrator: run the Ralph loop in batches, once or in watch mode."""

import argparse
import logging
import signal
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from claims import make_worker_id
from iteration import IterationDriver, IterationOutcome
from issue_source import IssueSource
from repo_init import gh_authenticated, gh_installed, run_init
from worker import TOOL_COMMANDS, Worker, tool_available

from rich.console import Console

log = logging.getLogger("orchestrator")
console = Console()

DEFAULT_MAX_ITERATIONS = 10
DEFAULT_POLL_INTERVAL = 60
ITERATION_PAUSE = 2  # seconds


# ---------------------------------------------------------------------------
# Batch state
# ---------------------------------------------------------------------------

@dataclass
class BatchState:
    """Per-batch counters; a fresh instance is created for every batch."""

    batch_number: int
    iterations_run: int = 0
    completion_signal_seen: bool = False
    work_exhausted: bool = False

    @property
    def completed(self) -> bool:
        """True if the batch ended for a reason other than the iteration bound."""
        return self.completion_signal_seen or self.work_exhausted


def run_batch(
    driver: IterationDriver,
    batch_number: int,
    max_iterations: int,
    watch_mode: bool = False,
    stop: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "",
) -> BatchState:
    state = BatchState(batch_number=batch_number)

    for i in range(1, max_iterations + 1):
        if stop is not None and stop.is_set():
            log.info("Stop requested; ending batch %d before iteration %d", batch_number, i)
            break
        if watch_mode:
            console.rule(f"[bold]Ralph Batch {batch_number}, Iteration {i} of {max_iterations} {label}")
        else:
            console.rule(f"[bold]Ralph Iteration {i} of {max_iterations} {label}")

        result = driver.run_iteration()
        state.iterations_run = i

        if result.outcome is IterationOutcome.TERMINATED:
            state.completion_signal_seen = True
            break
        if result.outcome is IterationOutcome.NO_WORK:
            state.work_exhausted = True
            break

        log.info("Iteration %d complete (%s). Continuing...", i, result.outcome.value)
        sleep(ITERATION_PAUSE)

    return state


def watch(
    driver: IterationDriver,
    max_iterations: int,
    interval: int,
    stop: threading.Event,
    label: str = "",
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Poll for work and run batches until *stop* is set.  Returns batches run.

    *stop* is only consulted between batches, between iterations and during
    the idle wait; an iteration that has started always runs to its end.
    """
    batch_number = 0
    while not stop.is_set():
        if driver.has_available_work():
            batch_number += 1
            console.rule(f"[bold]Issues found! Starting batch {batch_number}")
            state = run_batch(
                driver, batch_number, max_iterations,
                watch_mode=True, stop=stop, sleep=sleep, label=label,
            )
            if state.completed:
                log.info(
                    "Batch %d complete. Waiting %ds before checking for new issues...",
                    batch_number, interval,
                )
            else:
                log.info(
                    "Batch %d reached max iterations. Waiting %ds before continuing...",
                    batch_number, interval,
                )
        else:
            log.info("No issues found. Waiting %ds before checking again...", interval)

        if stop.wait(interval):
            break
    return batch_number


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

class _Parser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on bad arguments."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not a number") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"{value!r} must be a positive integer")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog="ralph",
        description="Ralph - autonomous AI agent loop over local stories or GitHub issues",
    )
    parser.add_argument(
        "max_iterations",
        nargs="?",
        type=_positive_int,
        default=DEFAULT_MAX_ITERATIONS,
        help=f"Maximum iterations per batch (default: {DEFAULT_MAX_ITERATIONS})",
    )
    parser.add_argument(
        "-t", "--tool",
        choices=sorted(TOOL_COMMANDS),
        default="claude",
        help="AI tool to use (default: claude)",
    )
    parser.add_argument(
        "-s", "--source",
        choices=["prd", "github"],
        default="prd",
        help="Source for user stories: 'prd' (local file) or 'github' (default: prd)",
    )
    parser.add_argument(
        "-w", "--watch",
        action="store_true",
        default=False,
        help="Continuously poll for new issues (github source only)",
    )
    parser.add_argument(
        "-i", "--interval",
        type=_positive_int,
        default=DEFAULT_POLL_INTERVAL,
        help=f"Polling interval in seconds for watch mode (default: {DEFAULT_POLL_INTERVAL})",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        default=False,
        help="Create the Ralph labels in the GitHub repository and show issue counts",
    )
    parser.add_argument(
        "--repo-path",
        default=".",
        help="Path to the git repo (default: cwd)",
    )
    parser.add_argument(
        "--prompt-file",
        default=None,
        help="Prompt sent to the tool (default: prompt-github.md or prompt-claude.md in the repo)",
    )
    parser.add_argument(
        "--prd",
        default=None,
        help="Local story file for --source prd (default: prd.json in the repo)",
    )
    parser.add_argument(
        "--timeout",
        type=_positive_int,
        default=None,
        help="Per-invocation tool timeout in seconds (default: none)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        default=False,
        help="Enable debug logging",
    )
    return parser


def _fail(message: str) -> int:
    console.print(f"[bold red]Error:[/bold red] {message}")
    return 1


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    repo = Path(args.repo_path).resolve()
    if args.init:
        return run_init(repo)

    if args.watch and args.source != "github":
        return _fail("Watch mode (--watch) only works with --source github")
    if args.source == "github":
        if not gh_installed():
            return _fail("GitHub CLI (gh) is required for --source github")
        if not gh_authenticated(repo):
            return _fail("GitHub CLI is not authenticated. Run: gh auth login")
    if not tool_available(args.tool):
        return _fail(f"'{args.tool}' was not found on PATH")

    default_prompt = "prompt-github.md" if args.source == "github" else "prompt-claude.md"
    prompt_path = Path(args.prompt_file) if args.prompt_file else repo / default_prompt
    try:
        prompt_text = prompt_path.read_text(encoding="utf-8")
    except OSError as exc:
        return _fail(f"Could not read prompt file {prompt_path}: {exc}")

    worker_id = make_worker_id()
    source = IssueSource(repo_path=repo) if args.source == "github" else None
    driver = IterationDriver(
        worker=Worker(tool=args.tool, repo_path=repo, timeout=args.timeout),
        worker_id=worker_id,
        prompt_text=prompt_text,
        source=source,
        story_path=None if source else (Path(args.prd) if args.prd else repo / "prd.json"),
    )
    label = f"({args.tool}, {args.source})"

    if args.watch:
        console.print("[bold]Starting Ralph in WATCH MODE[/bold]")
        console.print(f"  Tool: {args.tool}")
        console.print(f"  Source: {args.source}")
        console.print(f"  Worker: {worker_id}")
        console.print(f"  Max iterations per batch: {args.max_iterations}")
        console.print(f"  Poll interval: {args.interval}s")
        console.print("\nPress Ctrl+C to stop\n")

        stop = threading.Event()

        def _request_stop(signum, frame) -> None:
            log.warning("Interrupt received; stopping after the current step")
            stop.set()

        previous = signal.signal(signal.SIGINT, _request_stop)
        try:
            watch(driver, args.max_iterations, args.interval, stop, label=label)
        finally:
            signal.signal(signal.SIGINT, previous)
        console.print("Ralph stopped by user.")
        return 0

    console.print(
        f"Starting Ralph - Tool: {args.tool} - Source: {args.source} - "
        f"Max iterations: {args.max_iterations} - Worker: {worker_id}"
    )
    try:
        state = run_batch(driver, 1, args.max_iterations, label=label)
    except KeyboardInterrupt:
        console.print("\n[bold red]Interrupted![/bold red]")
        log.warning("KeyboardInterrupt - shutting down")
        return 130

    if state.completed:
        console.print(f"Completed at iteration {state.iterations_run} of {args.max_iterations}")
        return 0
    console.print(
        f"\nRalph reached max iterations ({args.max_iterations}) without completing all tasks."
    )
    return 1


if __name__ == "__main__":
    sys.exit(main())
