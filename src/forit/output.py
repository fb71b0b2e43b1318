from __future__ import annotations

from typing import Optional, Sequence
import os
import sys

from .types import TaskResult

BANNER_WIDTH = 80


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    RESET = "\033[0m"


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"


def banner(title: str) -> str:
    return f"{title} {'*' * max(3, BANNER_WIDTH - len(title) - 1)}"


def format_play(hostname: str) -> str:
    return "\n" + banner(f"PLAY [{hostname}]")


def result_status(result: TaskResult) -> tuple[str, str]:
    if result.failed:
        return "failed", Ansi.RED
    if result.skip_reason:
        return "skipping", Ansi.BLUE
    if result.changed:
        return "changed", Ansi.YELLOW
    return "ok", Ansi.GREEN


def format_task(result: TaskResult, hostname: str, *, dry_run: bool = False) -> str:
    status, color = result_status(result)
    lines = [banner(f"TASK [{result.name}]")]
    detail = result.skip_reason or ""
    seconds = result.duration / 1e9
    lines.append(colorize(f"{status}: [{hostname}] ({seconds:.2f}s) {detail}".rstrip(), color))
    for text in result.output.splitlines():
        if text.strip():
            lines.append(f"    {text}")
    if result.error:
        lines.append(colorize(f"    Error: {result.error}", Ansi.RED))
    if dry_run:
        lines.append("(check mode)")
    return "\n".join(lines)


def format_recap(
    results: Sequence[TaskResult],
    hostname: str,
    elapsed: float,
    *,
    dry_run: bool = False,
) -> str:
    counts = {"ok": 0, "changed": 0, "failed": 0, "skipping": 0}
    for result in results:
        counts[result_status(result)[0]] += 1
    recap = "    ".join(
        [
            colorize(f"ok={counts['ok']}", Ansi.GREEN),
            colorize(f"changed={counts['changed']}", Ansi.YELLOW),
            colorize(f"failed={counts['failed']}", Ansi.RED),
            colorize(f"skipped={counts['skipping']}", Ansi.BLUE),
        ]
    )
    lines = ["", banner("PLAY RECAP"), f"{hostname:<26} : {recap}", f"Playbook finished in {elapsed:.2f} seconds"]
    if dry_run:
        lines.append("*** Playbook run in check mode ***")
    return "\n".join(lines)


def format_no_changes(*, dry_run: bool = False) -> str:
    return "No changes needed (check mode)" if dry_run else "No changes needed"
