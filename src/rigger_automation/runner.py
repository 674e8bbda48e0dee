from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional

from .checker import ResourceChecker
from .errors import CheckFailed, GuardEvaluationError, HostUnreachable
from .executors import Executor, executor_for
from .facts import FactStore
from .report import RunReport
from .resources.base import resource_name
from .retry import RetryCoordinator
from .scope import Templar, VariableScope
from .secrets import Redactor
from .task_executor import TaskExecutor
from .types import FailurePolicy, HostConfig, Outcome, Plan, PlaySpec, Status, TaskSpec

logger = logging.getLogger(__name__)

ALWAYS_TAG = "always"


def resolve_hosts(plan: Plan, selector: Iterable[str]) -> list[HostConfig]:
    """Expand host names, group names and ``all`` into plan hosts, in order."""
    names: list[str] = []
    for entry in selector:
        if entry == "all":
            candidates = list(plan.hosts)
        elif entry in plan.groups:
            candidates = list(plan.groups[entry])
        elif entry in plan.hosts:
            candidates = [entry]
        else:
            raise KeyError(f"Host or group '{entry}' is not defined")
        for name in candidates:
            if name not in names:
                names.append(name)
    hosts = []
    for name in names:
        host = plan.hosts.get(name)
        if not host:
            raise KeyError(f"Host '{name}' is not defined")
        hosts.append(host)
    return hosts


class PlanRunner:
    """Walks plays in order and applies their tasks to every targeted host.

    Hosts of a play run concurrently on a thread pool; the tasks of one host
    run strictly in order. A fatal failure ends that host's play only; an
    unreachable host is dropped from the rest of the run.
    """

    def __init__(
        self,
        plan: Plan,
        *,
        dry_run: bool = False,
        forks: int = 5,
        tags: Optional[Iterable[str]] = None,
        limit: Optional[Iterable[str]] = None,
        secrets: Optional[Mapping[str, Any]] = None,
        redactor: Optional[Redactor] = None,
        checker: Optional[ResourceChecker] = None,
        coordinator: Optional[RetryCoordinator] = None,
        fact_store: Optional[FactStore] = None,
        executor_factory: Callable[[HostConfig], Executor] = executor_for,
        template_dir: Optional[Path] = None,
        progress_callback: Optional[Callable[[HostConfig, TaskSpec], None]] = None,
    ):
        if forks < 1:
            raise ValueError("forks must be at least 1")
        self.plan = plan
        self.dry_run = dry_run
        self.forks = forks
        self.tags = set(tags or ())
        self.limit = set(limit or ())
        self.secrets = dict(secrets or {})
        self.redactor = redactor or Redactor()
        self.redactor.add(self.secrets.values())
        self.fact_store = fact_store or FactStore()
        self.executor_factory = executor_factory
        self.progress_callback = progress_callback
        plan_dir = Path(plan.source_dir) if plan.source_dir else None
        self.task_executor = TaskExecutor(
            checker=checker,
            templar=Templar(template_dir or plan_dir),
            coordinator=coordinator,
            redactor=self.redactor,
            dry_run=dry_run,
            plan_dir=plan_dir,
        )
        self.report = RunReport()
        self._abort = threading.Event()
        self._lock = threading.Lock()
        self._registered: dict[str, dict[str, Any]] = {}
        self._executors: dict[str, Executor] = {}
        self._unreachable: set[str] = set()

    def run(self) -> RunReport:
        for play in self.plan.plays:
            if self._abort.is_set():
                logger.warning("run aborted before play=%s", play.name)
                break
            self._run_play(play)
        self.report.finish()
        return self.report

    def abort(self) -> None:
        """Stop before the next task on every host; running tasks finish."""
        self._abort.set()

    def _run_play(self, play: PlaySpec) -> None:
        hosts = [host for host in resolve_hosts(self.plan, play.hosts) if self._within_limit(host)]
        for host in hosts:
            if host.name in self._unreachable:
                logger.warning("play=%s host=%s skipped: unreachable earlier in the run", play.name, host.name)
        hosts = [host for host in hosts if host.name not in self._unreachable]
        logger.info("play=%s hosts=%s", play.name, ",".join(host.name for host in hosts))
        if not hosts:
            return
        if len(hosts) == 1 or self.forks == 1:
            for host in hosts:
                self._run_host(play, host)
            return
        with ThreadPoolExecutor(max_workers=min(self.forks, len(hosts))) as pool:
            futures = [pool.submit(self._run_host, play, host) for host in hosts]
            for future in futures:
                future.result()

    def _run_host(self, play: PlaySpec, host: HostConfig) -> None:
        self.report.host_run(host.name, play.name)
        executor = self._executor_for(host)
        try:
            if play.gather_facts:
                facts = self.fact_store.gather(host, executor)
            else:
                facts = self.fact_store.empty(host)
        except HostUnreachable as exc:
            self._host_unreachable(play, host, exc)
            return

        scope = VariableScope([host.variables, self.plan.variables, self.secrets, play.variables])
        registered = self._registered.setdefault(host.name, {})
        for task in play.tasks:
            if self._abort.is_set():
                self.report.abort(host.name, play.name, "run aborted")
                return
            if not self._selected(play, task):
                outcome = Outcome(
                    host=host.name,
                    play=play.name,
                    task=task.name,
                    status=Status.SKIPPED,
                    details="not selected by tags",
                    resource=self.redactor.redact(resource_name(task.params) or "") or None,
                    data={"changed": False, "failed": False, "skipped": True},
                )
                self._record(task, [outcome], registered)
                continue
            if self.progress_callback:
                self.progress_callback(host, task)
            try:
                outcomes = self.task_executor.execute_all(
                    task, scope, facts, dict(registered), host=host, executor=executor, play=play.name
                )
            except HostUnreachable as exc:
                self._host_unreachable(play, host, exc)
                return
            except (CheckFailed, GuardEvaluationError) as exc:
                # Drift or the guard cannot be decided: fatal whatever the policy.
                self._record(task, [self._failure(play, host, task, exc, fatal=True)], registered)
                self.report.abort(host.name, play.name, self.redactor.redact(str(exc)))
                return
            except Exception as exc:  # noqa: BLE001
                logger.error("task=%s host=%s failed: %s", task.name, host.name, exc, exc_info=True)
                outcomes = [self._failure(play, host, task, exc, fatal=False)]
            self._record(task, outcomes, registered)
            if any(outcome.failed and not outcome.ignored for outcome in outcomes):
                self.report.abort(host.name, play.name, f"task '{task.name}' failed")
                return

    def _host_unreachable(self, play: PlaySpec, host: HostConfig, exc: HostUnreachable) -> None:
        message = self.redactor.redact(str(exc))
        logger.error("play=%s host=%s unreachable: %s", play.name, host.name, message)
        with self._lock:
            self._unreachable.add(host.name)
        self.report.abort(host.name, play.name, message)

    def _record(self, task: TaskSpec, outcomes: list[Outcome], registered: dict[str, Any]) -> None:
        for outcome in outcomes:
            self.report.record(outcome)
        if task.register:
            registered[task.register] = TaskExecutor.registered_value(task, outcomes)

    def _failure(self, play: PlaySpec, host: HostConfig, task: TaskSpec, exc: Exception, *, fatal: bool) -> Outcome:
        details = self.redactor.redact(str(exc))
        return Outcome(
            host=host.name,
            play=play.name,
            task=task.name,
            status=Status.FAILED,
            details=details,
            resource=self.redactor.redact(resource_name(task.params) or "") or None,
            ignored=not fatal and task.failure_policy is FailurePolicy.IGNORE,
            data={"changed": False, "failed": True, "skipped": False, "msg": details},
        )

    def _selected(self, play: PlaySpec, task: TaskSpec) -> bool:
        if not self.tags:
            return True
        task_tags = set(task.tags) | set(play.tags)
        return ALWAYS_TAG in task_tags or bool(task_tags & self.tags)

    def _within_limit(self, host: HostConfig) -> bool:
        if not self.limit:
            return True
        if host.name in self.limit:
            return True
        return any(host.name in self.plan.groups.get(group, ()) for group in self.limit)

    def _executor_for(self, host: HostConfig) -> Executor:
        executor = self._executors.get(host.name)
        if executor is None:
            executor = self.executor_factory(host)
            self._executors[host.name] = executor
        return executor
