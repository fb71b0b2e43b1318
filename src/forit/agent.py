from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional
import logging
import socket
import threading
import time

from .client import ServerClient
from .errors import ExecutionError, PredicateError, TransportError
from .executors import ShellExecutor
from .output import format_no_changes, format_play, format_recap, format_task
from .predicates import HostPredicate
from .secrets import SecretResolver
from .types import Task, TaskResult

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 30 * 60.0


@dataclass
class CycleReport:
    hostname: str
    etag: str
    results: list[TaskResult] = field(default_factory=list)
    elapsed: float = 0.0
    posted: bool = False

    @property
    def failed(self) -> bool:
        return any(result.failed for result in self.results)


class Agent:
    """Polls the server, runs the tasks meant for this host and reports back."""

    def __init__(
        self,
        client: ServerClient,
        *,
        executor: Optional[ShellExecutor] = None,
        hostname: Optional[str] = None,
        dry_run: bool = False,
        interval: float = DEFAULT_INTERVAL,
        secret_resolver: Optional[SecretResolver] = None,
        printer: Callable[[str], None] = print,
    ):
        self.client = client
        self.executor = executor or ShellExecutor()
        self.hostname = hostname
        self.dry_run = dry_run
        self.interval = interval
        self.secret_resolver = secret_resolver or SecretResolver()
        self.printer = printer
        self.last_etag = ""
        self._stop = threading.Event()

    def resolve_hostname(self) -> str:
        return self.hostname or socket.gethostname()

    # Modes ---------------------------------------------------------------
    def run_once(self) -> int:
        """One cycle; 0 when every task succeeded and was reported, 1 otherwise."""

        try:
            report = self.run_cycle()
        except TransportError as exc:
            logger.error("Error checking for tasks: %s", exc)
            return 1
        if report is not None and (report.failed or not report.posted):
            return 1
        return 0

    def run_forever(self) -> None:
        logger.info("Polling %s every %ss", self.client.base_url, self.interval)
        while not self._stop.is_set():
            try:
                self.run_cycle()
            except TransportError as exc:
                logger.error("Error checking for tasks: %s", exc)
            if self._stop.wait(self.interval):
                break
        logger.info("Agent stopped")

    def stop(self) -> None:
        self._stop.set()

    # Cycle ---------------------------------------------------------------
    def run_cycle(self) -> Optional[CycleReport]:
        """Fetch, execute and report once.

        Returns ``None`` when the server reported no changes or when the
        agent was stopped mid-cycle (the partial batch is discarded).
        """

        hostname = self.resolve_hostname()
        started = time.monotonic()
        fetched = self.client.fetch_tasks(hostname, self.last_etag)
        self.printer(format_play(hostname))
        if not fetched.modified:
            self.printer(format_no_changes(dry_run=self.dry_run))
            return None
        logger.debug("Received %d tasks (etag=%s)", len(fetched.tasks), fetched.etag)

        report = CycleReport(hostname=hostname, etag=fetched.etag)
        for task in fetched.tasks:
            if self._stop.is_set():
                logger.warning("Stopped mid-cycle; discarding %d partial results", len(report.results))
                return None
            result = self.run_task(task, hostname)
            report.results.append(result)
            self.printer(format_task(result, hostname, dry_run=self.dry_run))

        report.elapsed = time.monotonic() - started
        try:
            self.client.post_results(hostname, report.results)
            report.posted = True
            self.last_etag = fetched.etag
        except TransportError as exc:
            logger.error("Failed to report results: %s", exc)
        self.printer(format_recap(report.results, hostname, report.elapsed, dry_run=self.dry_run))
        return report

    def run_task(self, task: Task, hostname: str) -> TaskResult:
        result = TaskResult(name=task.name)
        started = time.perf_counter_ns()
        try:
            self._apply(task, hostname, result)
        finally:
            result.duration = time.perf_counter_ns() - started
        logger.debug(
            "task=%s changed=%s failed=%s skipped=%s",
            task.name,
            result.changed,
            result.failed,
            bool(result.skip_reason),
        )
        return result

    def _apply(self, task: Task, hostname: str, result: TaskResult) -> None:
        if task.when:
            try:
                predicate = HostPredicate.compile(task.when)
            except PredicateError as exc:
                result.failed = True
                result.error = f"Invalid condition '{task.when}': {exc}"
                return
            if not predicate.matches(hostname):
                result.skip_reason = f"Condition '{task.when}' not met"
                return

        if self.dry_run:
            result.output = f"Would execute: {task.command}"
            result.changed = True
            return

        try:
            env = self.secret_resolver.resolve_env(task.env)
        except Exception as exc:  # noqa: BLE001
            logger.error("task=%s secret lookup failed: %s", task.name, exc)
            result.failed = True
            result.error = f"Unable to resolve environment: {exc}"
            return

        try:
            result.output = self.executor.execute(task.command, env)
        except ExecutionError as exc:
            result.failed = True
            result.output = exc.output
            result.error = str(exc)
        else:
            # Commands are presumed idempotent; success always counts as a change.
            result.changed = True
