"""Worker module that runs one headless coding-agent invocation."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

TOOL_COMMANDS: dict[str, list[str]] = {
    "claude": [
        "claude",
        "--dangerously-skip-permissions",
        "--no-session-persistence",
        "--print",
    ],
    "amp": ["amp", "--dangerously-allow-all"],
}


class WorkerError(Exception):
    """Raised when the agent tool cannot be launched at all."""


@dataclass
class ToolResult:
    output: str
    returncode: int | None
    timed_out: bool = False


@dataclass(frozen=True)
class ClaimedIssue:
    number: int
    title: str
    issue_type: str  # "analyze" or "story"


def tool_available(tool: str) -> bool:
    return tool in TOOL_COMMANDS and shutil.which(TOOL_COMMANDS[tool][0]) is not None


def build_prompt(prompt_text: str, worker_id: str, claimed: ClaimedIssue | None = None) -> str:
    """Prefix *prompt_text* with the pre-claimed issue header when there is one."""
    if claimed is None:
        return prompt_text
    header = (
        "## Pre-Claimed Issue\n\n"
        f"**IMPORTANT:** Issue #{claimed.number} has already been claimed by this Ralph worker.\n\n"
        f"- Worker ID: `{worker_id}`\n"
        f"- Issue Type: {claimed.issue_type}\n"
        "- The `ralph-in-progress` label has already been added\n"
        "- A claim comment has already been posted\n\n"
        '**Skip the "Claiming an Issue" step** - go directly to implementation/analysis.\n\n'
        "---\n\n"
    )
    return header + prompt_text


class Worker:
    """Run the agent *tool* in *repo_path* with a prompt on stdin.

    The transcript is stdout and stderr merged, exactly as a terminal would
    show it; that text is all the classifier ever sees.
    """

    def __init__(
        self,
        tool: str = "claude",
        repo_path: str | Path = ".",
        timeout: int | None = None,
    ) -> None:
        if tool not in TOOL_COMMANDS:
            raise WorkerError(f"Unknown tool {tool!r}; expected one of {sorted(TOOL_COMMANDS)}")
        self.tool = tool
        self.repo_path = Path(repo_path).resolve()
        self.timeout = timeout

    @property
    def command(self) -> list[str]:
        return list(TOOL_COMMANDS[self.tool])

    def run(self, prompt: str) -> ToolResult:
        cmd = self.command
        logger.info(
            "Running %s (prompt %d chars, timeout=%s)",
            self.tool,
            len(prompt),
            f"{self.timeout}s" if self.timeout else "none",
        )
        env = {k: v for k, v in os.environ.items() if k != "CLAUDECODE"}
        try:
            proc = subprocess.run(
                cmd,
                cwd=self.repo_path,
                input=prompt,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
                env=env,
                # Own session: a terminal Ctrl+C reaches ralph, not the agent.
                start_new_session=True,
            )
        except subprocess.TimeoutExpired as e:
            partial = e.output or ""
            if isinstance(partial, bytes):
                partial = partial.decode("utf-8", errors="replace")
            logger.warning("%s timed out after %ss", self.tool, self.timeout)
            return ToolResult(output=partial, returncode=None, timed_out=True)
        except FileNotFoundError as e:
            raise WorkerError(f"{cmd[0]} not found on PATH") from e

        output = proc.stdout or ""
        logger.info("%s exited with code %d (%d chars of output)", self.tool, proc.returncode, len(output))
        return ToolResult(output=output, returncode=proc.returncode)
