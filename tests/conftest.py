import subprocess
from typing import Callable, Optional

import pytest

from rigger_automation.executors import CommandResult, LocalExecutor
from rigger_automation.types import HostConfig


class ScriptedExecutor(LocalExecutor):
    """Answers ``run`` from canned results; file primitives use the real filesystem."""

    def __init__(self, host: Optional[HostConfig] = None):
        super().__init__(host or HostConfig(name="local"))
        self.commands: list[list[str]] = []
        self._rules: list[tuple[list[str], Callable[[list[str]], tuple[int, str, str]]]] = []

    def on(self, *prefix: str, rc: int = 0, stdout: str = "", stderr: str = "", handler=None, missing: bool = False):
        def respond(cmd: list[str]) -> tuple[int, str, str]:
            if missing:
                raise FileNotFoundError(cmd[0])
            if handler is not None:
                return handler(cmd)
            return rc, stdout, stderr

        self._rules.append((list(prefix), respond))
        return self

    def run(self, command, *, check=True, env=None, cwd=None, timeout=None, input=None):
        cmd = [str(part) for part in command]
        self.commands.append(cmd)
        rc, stdout, stderr = 0, "", ""
        # Most recent rule wins so tests can override defaults.
        for prefix, respond in reversed(self._rules):
            if cmd[: len(prefix)] == prefix:
                rc, stdout, stderr = respond(cmd)
                break
        if check and rc != 0:
            raise subprocess.CalledProcessError(rc, cmd, stdout, stderr)
        return CommandResult(cmd, stdout, stderr, rc)

    def ran(self, *prefix: str) -> list[list[str]]:
        return [cmd for cmd in self.commands if cmd[: len(prefix)] == list(prefix)]


@pytest.fixture
def scripted() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def local_host() -> HostConfig:
    return HostConfig(name="local")
