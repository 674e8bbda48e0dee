from pathlib import Path

import pytest

from rigger_automation.executors import LocalExecutor
from rigger_automation.resources.shell import CommandResource, ShellResource
from rigger_automation.types import HostConfig


@pytest.fixture
def executor() -> LocalExecutor:
    return LocalExecutor(HostConfig(name="local"))


def test_shell_runs_without_guards(executor):
    host = executor.host
    resource = ShellResource({"cmd": "echo hello && echo world"})

    drift = resource.check(host, executor)
    assert drift.matches is False
    assert drift.diff == "run: /bin/sh -c echo hello && echo world"

    result = resource.apply(host, executor, drift)
    assert result.failed is False
    assert result.details == "ran (rc=0)"
    assert result.data["stdout_lines"] == ["hello", "world"]
    assert result.data["rc"] == 0


def test_creates_marker_skips(tmp_path: Path, executor):
    marker = tmp_path / "installed.flag"
    marker.write_text("")
    resource = ShellResource({"cmd": "touch never-run", "creates": str(marker)})

    drift = resource.check(executor.host, executor)
    assert drift.matches is True
    assert drift.skipped is True
    assert drift.diff == f"creates {marker} exists"


def test_creates_relative_to_chdir(tmp_path: Path, executor):
    host = executor.host
    resource = ShellResource({"cmd": "touch built", "creates": "built", "chdir": str(tmp_path)})

    drift = resource.check(host, executor)
    resource.apply(host, executor, drift)

    assert (tmp_path / "built").exists()
    assert ShellResource({"cmd": "touch built", "creates": "built", "chdir": str(tmp_path)}).check(host, executor).skipped


def test_removes_missing_path_skips(tmp_path: Path, executor):
    resource = ShellResource({"cmd": "rm -f stale", "removes": str(tmp_path / "stale")})
    drift = resource.check(executor.host, executor)
    assert drift.skipped is True
    assert drift.diff.startswith("removes ")


def test_unless_and_only_if(executor):
    host = executor.host
    assert ShellResource({"cmd": "true", "unless": "exit 0"}).check(host, executor).diff == "unless rc=0"
    assert ShellResource({"cmd": "true", "unless": "exit 1"}).check(host, executor).matches is False
    assert ShellResource({"cmd": "true", "only_if": "exit 2"}).check(host, executor).diff == "only_if rc=2"
    assert ShellResource({"cmd": "true", "only_if": "exit 0"}).check(host, executor).matches is False


def test_unexpected_return_code_fails(executor):
    host = executor.host
    resource = ShellResource({"cmd": "echo boom >&2; exit 3"})
    result = resource.apply(host, executor, resource.check(host, executor))
    assert result.failed is True
    assert result.details == "rc=3: boom"
    assert result.data["stderr"] == "boom"


def test_allowed_returns(executor):
    host = executor.host
    resource = ShellResource({"cmd": "exit 2", "returns": [0, 2]})
    result = resource.apply(host, executor, resource.check(host, executor))
    assert result.failed is False
    assert result.data["rc"] == 2


def test_environment_is_passed(executor):
    host = executor.host
    resource = ShellResource({"cmd": "echo $APP_ENV", "environment": ["APP_ENV=production"]})
    result = resource.apply(host, executor, resource.check(host, executor))
    assert result.data["stdout"] == "production"


def test_command_kind_does_not_use_a_shell(executor):
    host = executor.host
    resource = CommandResource({"cmd": "echo '$HOME' literal"})
    assert resource.command == ["echo", "$HOME", "literal"]
    result = resource.apply(host, executor, resource.check(host, executor))
    assert result.data["stdout"] == "$HOME literal"


def test_cmd_is_required():
    with pytest.raises(ValueError):
        ShellResource({"chdir": "/tmp"})
    with pytest.raises(ValueError):
        ShellResource({"cmd": "true", "timeout": "soon"})
