from __future__ import annotations

from pathlib import Path
from typing import Any

from .base import Resource
from ..executors import Executor
from ..types import ActionResult, CheckResult, HostConfig


class StatResource(Resource):
    """Report facts about a path for later ``when`` guards."""

    kind = "stat"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_path = spec.get("path")
        if not raw_path:
            raise ValueError("stat resource requires a path")
        self.path = Path(str(raw_path))

    def check(self, host: HostConfig, executor: Executor) -> CheckResult:
        info = executor.stat(self.path).as_dict()
        return CheckResult(True, current=info, data={"stat": info})

    def apply(self, host: HostConfig, executor: Executor, drift: CheckResult) -> ActionResult:
        return ActionResult(details="noop", data=drift.data)


class DebugResource(Resource):
    kind = "debug"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.msg = spec.get("msg", "Hello world!")

    @property
    def resource_name(self) -> None:
        return None

    def check(self, host: HostConfig, executor: Executor) -> CheckResult:
        text = self.msg if isinstance(self.msg, str) else repr(self.msg)
        return CheckResult(True, diff=text, data={"msg": self.msg})

    def apply(self, host: HostConfig, executor: Executor, drift: CheckResult) -> ActionResult:
        return ActionResult(details="noop", data=drift.data)
