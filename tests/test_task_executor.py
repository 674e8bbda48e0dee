from pathlib import Path

import pytest

from rigger_automation.checker import ResourceChecker
from rigger_automation.errors import CheckFailed, GuardEvaluationError
from rigger_automation.executors import BecomeExecutor, LocalExecutor
from rigger_automation.facts import Facts
from rigger_automation.guards import Guard
from rigger_automation.resources import RESOURCE_REGISTRY
from rigger_automation.resources.base import Resource
from rigger_automation.retry import RetryCoordinator
from rigger_automation.scope import VariableScope
from rigger_automation.secrets import REDACTED, Redactor
from rigger_automation.task_executor import TaskExecutor
from rigger_automation.types import (
    ActionResult,
    CheckResult,
    FailurePolicy,
    HostConfig,
    RetryPolicy,
    Status,
    TaskSpec,
)


class RecordingResource(Resource):
    """Matches when ``spec['in_sync']`` is true; records every call."""

    kind = "recording"
    checks: list[dict] = []
    applies: list[dict] = []
    executors: list = []

    def check(self, host, executor):
        RecordingResource.checks.append(self.spec)
        RecordingResource.executors.append(executor)
        if self.spec.get("explode"):
            raise CheckFailed("cannot inspect recording: boom")
        return CheckResult(bool(self.spec.get("in_sync")), diff="" if self.spec.get("in_sync") else "drift")

    def apply(self, host, executor, drift):
        RecordingResource.applies.append(self.spec)
        if self.spec.get("fail"):
            return ActionResult(details=f"rc=1: {self.spec['fail']}", failed=True, data={"rc": 1})
        return ActionResult(details="fixed", data={"rc": 0, "stdout": self.spec.get("stdout", "")})


@pytest.fixture(autouse=True)
def reset_recording():
    RecordingResource.checks = []
    RecordingResource.applies = []
    RecordingResource.executors = []


@pytest.fixture
def sleeps():
    return []


def make_executor(sleeps, **kwargs) -> TaskExecutor:
    registry = {**RESOURCE_REGISTRY, "recording": RecordingResource}
    return TaskExecutor(
        checker=ResourceChecker(registry),
        coordinator=RetryCoordinator(sleep=sleeps.append),
        **kwargs,
    )


def run(task_executor, task, variables=None, registered=None, facts=None):
    host = HostConfig(name="web01")
    return task_executor.execute_all(
        task,
        VariableScope([variables or {}]),
        facts or Facts(host="web01", values={"os_family": "Debian"}),
        registered or {},
        host=host,
        executor=LocalExecutor(host),
        play="site",
    )


def test_false_guard_skips_without_checking(sleeps):
    task = TaskSpec(name="https only", kind="recording", when=Guard.parse("enable_https"))
    [outcome] = run(make_executor(sleeps), task, {"enable_https": False})

    assert outcome.status is Status.SKIPPED
    assert outcome.details == "skipped (when: enable_https)"
    assert outcome.data["skipped"] is True
    assert RecordingResource.checks == []


def test_guard_can_use_facts(sleeps):
    task = TaskSpec(name="debian", kind="recording", params={"in_sync": True}, when=Guard.parse("os_family == 'Debian'"))
    [outcome] = run(make_executor(sleeps), task)
    assert outcome.status is Status.UNCHANGED
    assert outcome.details == "noop"


def test_undefined_guard_reference_propagates(sleeps):
    task = TaskSpec(name="broken", kind="recording", when=Guard.parse("missing.rc == 0"))
    with pytest.raises(GuardEvaluationError):
        run(make_executor(sleeps), task)


def test_drift_is_corrected(sleeps):
    task = TaskSpec(name="fix", kind="recording", params={"path": "/etc/{{ app }}.conf"})
    [outcome] = run(make_executor(sleeps), task, {"app": "shop"})

    assert outcome.status is Status.CHANGED
    assert outcome.details == "fixed"
    assert outcome.diff == "drift"
    assert outcome.resource == "/etc/shop.conf"
    assert outcome.data["changed"] is True
    assert RecordingResource.applies[0]["path"] == "/etc/shop.conf"


def test_retry_exhaustion_takes_all_attempts(sleeps):
    task = TaskSpec(
        name="flaky",
        kind="recording",
        params={"fail": "connection refused"},
        register="flaky_result",
        retry=RetryPolicy(attempts=3, delay=5, until=Guard.parse("flaky_result.rc == 0")),
    )
    [outcome] = run(make_executor(sleeps), task)

    assert outcome.status is Status.FAILED
    assert outcome.attempts == 3
    assert len(RecordingResource.applies) == 3
    assert sleeps == [5, 5]


def test_retry_until_never_holds_fails(sleeps):
    task = TaskSpec(
        name="wait for output",
        kind="recording",
        params={"stdout": "starting"},
        retry=RetryPolicy(attempts=2, delay=1, until=Guard.parse("'ready' in result.stdout")),
    )
    [outcome] = run(make_executor(sleeps), task)

    assert outcome.status is Status.FAILED
    assert outcome.details == "retries exhausted after 2 attempt(s): until 'ready' in result.stdout"
    assert outcome.data["failed"] is True


def test_ignore_policy_marks_failure_ignored(sleeps):
    task = TaskSpec(name="optional", kind="recording", params={"fail": "nope"}, failure_policy=FailurePolicy.IGNORE)
    [outcome] = run(make_executor(sleeps), task)

    assert outcome.status is Status.FAILED
    assert outcome.ignored is True
    assert outcome.details == "rc=1: nope"
    assert outcome.data["msg"] == "rc=1: nope"


def test_check_failed_propagates(sleeps):
    task = TaskSpec(name="cannot look", kind="recording", params={"explode": True})
    with pytest.raises(CheckFailed):
        run(make_executor(sleeps), task)


def test_invalid_params_fail_the_task(sleeps):
    task = TaskSpec(name="bad file", kind="file", params={"mode": "0644"})
    [outcome] = run(make_executor(sleeps), task)
    assert outcome.status is Status.FAILED
    assert "requires a path" in outcome.details


def test_secrets_are_redacted(sleeps):
    task = TaskSpec(name="db {{ db_password }}", kind="recording", params={"fail": "{{ db_password }}"})
    executor = make_executor(sleeps, redactor=Redactor(["s3cr3t-pw"]))
    [outcome] = run(executor, task, {"db_password": "s3cr3t-pw"})

    assert outcome.task == f"db {REDACTED}"
    assert outcome.details == f"rc=1: {REDACTED}"
    assert "s3cr3t-pw" not in str(outcome.data)


def test_changed_when_overrides_status(sleeps):
    task = TaskSpec(
        name="migrate",
        kind="recording",
        params={"stdout": "Nothing to migrate."},
        register="migration",
        changed_when=Guard.parse("'Nothing to migrate' not in migration.stdout"),
    )
    [outcome] = run(make_executor(sleeps), task)
    assert outcome.status is Status.UNCHANGED
    assert outcome.data["changed"] is False


def test_loop_runs_once_per_item(sleeps):
    task = TaskSpec(name="pkg {{ item }}", kind="recording", params={"name": "{{ item }}"}, loop="{{ packages }}")
    outcomes = run(make_executor(sleeps), task, {"packages": ["nginx", "redis"]})

    assert [o.task for o in outcomes] == ["pkg nginx", "pkg redis"]
    assert [o.resource for o in outcomes] == ["nginx", "redis"]

    value = make_executor(sleeps).registered_value(task, outcomes)
    assert value["changed"] is True
    assert len(value["results"]) == 2


def test_dry_run_reports_without_applying(sleeps):
    task = TaskSpec(name="would fix", kind="recording")
    [outcome] = run(make_executor(sleeps, dry_run=True), task)

    assert outcome.status is Status.CHANGED
    assert outcome.details == "dry-run"
    assert outcome.data["dry_run"] is True
    assert RecordingResource.applies == []


def test_dry_run_skips_undecidable_guard(sleeps):
    task = TaskSpec(name="after check", kind="recording", when=Guard.parse("check.rc == 0"))
    registered = {"check": {"changed": True, "failed": False, "skipped": False, "dry_run": True}}
    [outcome] = run(make_executor(sleeps, dry_run=True), task, registered=registered)
    assert outcome.status is Status.SKIPPED


def test_shell_creates_guard_is_skipped(tmp_path: Path, sleeps):
    marker = tmp_path / "done"
    marker.write_text("")
    task = TaskSpec(name="install", kind="shell", params={"cmd": "exit 1", "creates": str(marker)})
    [outcome] = run(make_executor(sleeps), task)
    assert outcome.status is Status.SKIPPED
    assert outcome.details == f"creates {marker} exists"


def test_guard_over_unrenderable_variable_is_a_guard_error(sleeps):
    task = TaskSpec(
        name="guarded",
        kind="recording",
        when=Guard.parse("x == 1"),
        failure_policy=FailurePolicy.IGNORE,
    )
    with pytest.raises(GuardEvaluationError, match="'missing' is undefined"):
        run(make_executor(sleeps), task, {"x": "{{ missing }}"})
    assert RecordingResource.checks == []


def test_become_checks_and_applies_through_sudo(sleeps):
    task = TaskSpec(name="as deploy", kind="recording", become=True, become_user="{{ app_user }}")
    [outcome] = run(make_executor(sleeps), task, {"app_user": "rigger-deploy"})

    assert outcome.status is Status.CHANGED
    [executor] = RecordingResource.executors
    assert isinstance(executor, BecomeExecutor)
    assert executor.user == "rigger-deploy"


def test_without_become_the_host_executor_is_used(sleeps):
    run(make_executor(sleeps), TaskSpec(name="plain", kind="recording"))
    [executor] = RecordingResource.executors
    assert type(executor) is LocalExecutor


def test_wait_for_polls_through_the_executors_coordinator(sleeps, tmp_path: Path):
    task = TaskSpec(
        name="wait for socket",
        kind="wait_for",
        params={"path": str(tmp_path / "app.sock"), "attempts": 3, "delay": 4},
    )
    [outcome] = run(make_executor(sleeps), task)

    assert outcome.status is Status.FAILED
    assert outcome.details == f"timed out after 3 attempt(s) waiting for {tmp_path / 'app.sock'}"
    assert sleeps == [4.0, 4.0]
