from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from .checker import ResourceChecker
from .errors import CheckFailed, GuardEvaluationError, HostUnreachable
from .executors import Executor
from .facts import Facts
from .guards import Guard
from .resources.base import Resource, resource_name
from .retry import RetryCoordinator
from .scope import Templar, TemplateError, VariableScope
from .secrets import Redactor
from .types import UNDEFINED, FailurePolicy, HostConfig, Outcome, Status, TaskSpec

logger = logging.getLogger(__name__)


@dataclass
class Attempt:
    """One pass through check and corrective action."""

    status: Status
    details: str
    diff: str = ""
    result: dict[str, Any] = field(default_factory=dict)
    resource: Optional[str] = None


class TaskExecutor:
    """Applies a single task to a single host and reports the outcome.

    Order of work: guard, render params, check, corrective action (or a dry-run
    report), ``changed_when``. A retry policy repeats everything after the
    guard. Tasks with ``become`` check and apply through ``sudo``.
    ``CheckFailed``, ``GuardEvaluationError`` and ``HostUnreachable``
    propagate to the caller; every other error becomes a ``failed`` outcome.
    """

    def __init__(
        self,
        *,
        checker: Optional[ResourceChecker] = None,
        templar: Optional[Templar] = None,
        coordinator: Optional[RetryCoordinator] = None,
        redactor: Optional[Redactor] = None,
        dry_run: bool = False,
        plan_dir: Optional[Path] = None,
    ):
        self.checker = checker or ResourceChecker()
        self.templar = templar or Templar()
        self.coordinator = coordinator or RetryCoordinator()
        self.redactor = redactor or Redactor()
        self.dry_run = dry_run
        self.plan_dir = plan_dir

    # Public API ----------------------------------------------------------
    def execute_all(
        self,
        task: TaskSpec,
        scope: VariableScope,
        facts: Facts,
        registered: Mapping[str, Any],
        *,
        host: HostConfig,
        executor: Executor,
        play: str = "",
    ) -> list[Outcome]:
        """Run ``task`` once, or once per item when it declares a loop."""
        if task.loop is None:
            return [self.execute(task, scope, facts, registered, host=host, executor=executor, play=play)]
        items = self._loop_items(task, scope, facts, registered)
        return [
            self.execute(
                task, scope, facts, registered, host=host, executor=executor, play=play, item=item
            )
            for item in items
        ]

    def execute(
        self,
        task: TaskSpec,
        scope: VariableScope,
        facts: Facts,
        registered: Mapping[str, Any],
        *,
        host: HostConfig,
        executor: Executor,
        play: str = "",
        item: Any = UNDEFINED,
    ) -> Outcome:
        task_scope = self._task_scope(task, scope, registered, item)
        context = self._context(task_scope, facts)
        lookup = self._lookup(task_scope, facts, context)
        name = self._task_name(task, context)
        logger.debug("task=%s host=%s kind=%s", name, host.name, task.kind)

        if task.when is not None and not self._guard_holds(task.when, lookup):
            detail = f"skipped (when: {task.when})"
            result = {"changed": False, "failed": False, "skipped": True, "skip_reason": detail}
            return self._outcome(
                host, play, name, task,
                Attempt(Status.SKIPPED, detail, result=result, resource=resource_name(task.params)),
            )

        if task.become:
            user = self.templar.render(task.become_user, context) if task.become_user else "root"
            executor = executor.become(str(user))

        def attempt() -> Attempt:
            return self._attempt(task, context, task_scope, facts, host, executor)

        if task.retry is None:
            final = attempt()
            attempts = 1
        else:
            repeated = self.coordinator.repeat(
                attempt,
                task.retry.attempts,
                task.retry.delay,
                done=lambda current: self._retry_done(task, current, task_scope, facts, context),
                description=f"task '{name}' on {host.name}",
            )
            final, attempts = repeated.value, repeated.count
            if not repeated.succeeded and final.status is not Status.FAILED:
                # The action itself worked but ``until`` never held.
                final.status = Status.FAILED
                final.details = f"retries exhausted after {attempts} attempt(s): until {task.retry.until}"
                final.result["failed"] = True
        return self._outcome(host, play, name, task, final, attempts=attempts)

    @staticmethod
    def registered_value(task: TaskSpec, outcomes: list[Outcome]) -> dict[str, Any]:
        """The value stored under ``task.register`` once the task has run."""
        if task.loop is None and len(outcomes) == 1:
            return outcomes[0].data
        results = [outcome.data for outcome in outcomes]
        return {
            "results": results,
            "changed": any(outcome.changed for outcome in outcomes),
            "failed": any(outcome.failed for outcome in outcomes),
            "skipped": bool(outcomes) and all(outcome.status is Status.SKIPPED for outcome in outcomes),
        }

    # Steps ---------------------------------------------------------------
    def _attempt(
        self,
        task: TaskSpec,
        context: dict[str, Any],
        task_scope: VariableScope,
        facts: Facts,
        host: HostConfig,
        executor: Executor,
    ) -> Attempt:
        try:
            resource = self._build(task, context)
        except Exception as exc:  # noqa: BLE001
            logger.error("task=%s host=%s invalid: %s", task.name, host.name, self.redactor.redact(str(exc)))
            return Attempt(
                Status.FAILED,
                str(exc),
                result={"changed": False, "failed": True, "skipped": False, "msg": str(exc)},
                resource=resource_name(task.params),
            )

        name = resource.resource_name
        try:
            drift = self.checker.check(resource, host, executor)
        except (CheckFailed, HostUnreachable):
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("task=%s host=%s check error: %s", task.name, host.name, exc, exc_info=True)
            return Attempt(
                Status.FAILED,
                str(exc),
                result={"changed": False, "failed": True, "skipped": False, "msg": str(exc)},
                resource=name,
            )

        if drift.matches:
            status = Status.SKIPPED if drift.skipped else Status.UNCHANGED
            details = drift.diff or "noop"
            result = {**drift.data, "changed": False, "failed": False, "skipped": drift.skipped}
            current = Attempt(status, details, drift.diff, result, name)
        elif self.dry_run:
            result = {**drift.data, "changed": True, "failed": False, "skipped": False, "dry_run": True}
            current = Attempt(Status.CHANGED, "dry-run", drift.diff, result, name)
        else:
            current = self._apply(task, resource, drift, host, executor)

        if task.changed_when is not None and current.status in {Status.CHANGED, Status.UNCHANGED}:
            scope = task_scope.child({task.register: current.result}) if task.register else task_scope
            lookup = self._lookup(scope, facts, self._context(scope, facts))
            if self._guard_holds(task.changed_when, lookup, strict=True):
                current.status = Status.CHANGED
            else:
                current.status = Status.UNCHANGED
            current.result["changed"] = current.status is Status.CHANGED
        return current

    def _apply(self, task: TaskSpec, resource: Resource, drift, host: HostConfig, executor: Executor) -> Attempt:
        name = resource.resource_name
        try:
            action = resource.apply(host, executor, drift)
        except HostUnreachable:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "task=%s host=%s failed: %s", task.name, host.name, self.redactor.redact(str(exc)), exc_info=True
            )
            result = {"changed": False, "failed": True, "skipped": False, "msg": str(exc)}
            return Attempt(Status.FAILED, str(exc), drift.diff, result, name)
        result = {**action.data, "changed": not action.failed, "failed": action.failed, "skipped": False}
        if action.failed:
            result["changed"] = False
            result["msg"] = action.details
            return Attempt(Status.FAILED, action.details, drift.diff, result, name)
        return Attempt(Status.CHANGED, action.details or drift.diff, drift.diff, result, name)

    def _retry_done(
        self,
        task: TaskSpec,
        current: Attempt,
        task_scope: VariableScope,
        facts: Facts,
        context: dict[str, Any],
    ) -> bool:
        assert task.retry is not None
        if task.retry.until is None:
            return current.status is not Status.FAILED
        layer: dict[str, Any] = {"result": current.result}
        if task.register:
            layer[task.register] = current.result
        scope = task_scope.child(layer)
        lookup = self._lookup(scope, facts, self._context(scope, facts))
        return self._guard_holds(task.retry.until, lookup, strict=True)

    def _build(self, task: TaskSpec, context: dict[str, Any]) -> Resource:
        params = self.templar.render(task.params, context)
        if not isinstance(params, dict):
            raise ValueError(f"params of task '{task.name}' must be a mapping")
        if self.plan_dir is not None:
            params["_plan_dir"] = str(self.plan_dir)
        params["_render"] = lambda text: self.templar.render_text(text, context)
        params["_coordinator"] = self.coordinator
        return self.checker.build(task.kind, params)

    def _outcome(
        self,
        host: HostConfig,
        play: str,
        name: str,
        task: TaskSpec,
        attempt: Attempt,
        *,
        attempts: int = 1,
    ) -> Outcome:
        ignored = attempt.status is Status.FAILED and task.failure_policy is FailurePolicy.IGNORE
        outcome = Outcome(
            host=host.name,
            play=play,
            task=self.redactor.redact(name),
            status=attempt.status,
            details=self.redactor.redact(attempt.details),
            diff=self.redactor.redact(attempt.diff),
            resource=self.redactor.redact(attempt.resource) if attempt.resource else None,
            attempts=attempts,
            ignored=ignored,
            data=self.redactor.redact_value(attempt.result),
        )
        log = logger.warning if outcome.failed else logger.debug
        log(
            "task=%s host=%s status=%s attempts=%d details=%s",
            outcome.task,
            host.name,
            outcome.status.value,
            attempts,
            outcome.details,
        )
        return outcome

    # Scope helpers -------------------------------------------------------
    def _task_scope(
        self,
        task: TaskSpec,
        scope: VariableScope,
        registered: Mapping[str, Any],
        item: Any,
    ) -> VariableScope:
        layer = dict(task.variables)
        if item is not UNDEFINED:
            layer["item"] = item
        return scope.child(registered).child(layer)

    @staticmethod
    def _context(scope: VariableScope, facts: Facts) -> dict[str, Any]:
        values = facts.as_dict()
        context: dict[str, Any] = {**values, "facts": values}
        context.update(scope.flatten())
        return context

    def _lookup(self, scope: VariableScope, facts: Facts, context: dict[str, Any]) -> Callable[[str], Any]:
        def resolve(name: str) -> Any:
            value = scope.lookup(name)
            if value is not UNDEFINED:
                return value
            if name == "facts":
                return facts.as_dict()
            return facts.lookup(name)

        rendered = self.templar.lookup_for(resolve, context)

        def lookup(name: str) -> Any:
            try:
                return rendered(name)
            except TemplateError as exc:
                raise GuardEvaluationError(f"cannot resolve '{name}': {exc}") from None

        return lookup

    def _guard_holds(self, guard: Guard, lookup: Callable[[str], Any], *, strict: bool = False) -> bool:
        try:
            return guard.evaluate(lookup)
        except GuardEvaluationError:
            if self.dry_run and not strict:
                # Registered results from skipped actions lack fields like ``rc``.
                logger.info("guard '%s' cannot be decided in dry-run; skipping", guard)
                return False
            raise

    def _loop_items(
        self,
        task: TaskSpec,
        scope: VariableScope,
        facts: Facts,
        registered: Mapping[str, Any],
    ) -> list[Any]:
        context = self._context(self._task_scope(task, scope, registered, UNDEFINED), facts)
        items = self.templar.render(task.loop, context)
        if isinstance(items, str):
            items = [items]
        if not isinstance(items, list):
            raise ValueError(f"loop of task '{task.name}' must be a list")
        return items

    def _task_name(self, task: TaskSpec, context: dict[str, Any]) -> str:
        if not self.templar.is_template(task.name):
            return task.name
        try:
            return str(self.templar.render(task.name, context))
        except ValueError:
            return task.name
