from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from .base import Resource
from ..executors import Executor
from ..retry import RetryCoordinator
from ..types import ActionResult, CheckResult, HostConfig


class WaitForResource(Resource):
    """Block until a TCP port accepts connections or a path shows up.

    The first attempt happens in ``check``; when it fails, ``apply`` keeps
    polling through the run's coordinator (``_coordinator``) and fails the
    task once the attempts run out.
    """

    kind = "wait_for"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        port = spec.get("port")
        self.port: Optional[int] = None if port is None else int(port)
        path = spec.get("path")
        self.path: Optional[Path] = Path(str(path)) if path else None
        if (self.port is None) == (self.path is None):
            raise ValueError("wait_for requires exactly one of port or path")
        self.host = str(spec.get("host", "127.0.0.1"))
        self.state = str(spec.get("state", "present" if self.path else "started"))
        if self.state not in {"present", "absent", "started", "stopped"}:
            raise ValueError("wait_for state must be 'started', 'stopped', 'present' or 'absent'")
        self.attempts = int(spec.get("attempts", 30))
        self.delay = float(spec.get("delay", 1))
        if self.attempts < 1:
            raise ValueError("wait_for attempts must be at least 1")
        self.coordinator: RetryCoordinator = spec.get("_coordinator") or RetryCoordinator()

    @property
    def resource_name(self) -> Optional[str]:
        return str(self.path) if self.path else f"{self.host}:{self.port}"

    def check(self, host: HostConfig, executor: Executor) -> CheckResult:
        if self._satisfied(executor):
            return CheckResult(True, diff=f"{self.resource_name} {self.state}")
        return CheckResult(False, diff=f"waiting for {self.resource_name} {self.state}")

    def apply(self, host: HostConfig, executor: Executor, drift: CheckResult) -> ActionResult:
        ready = self.coordinator.poll(
            lambda: self._satisfied(executor),
            self.attempts,
            self.delay,
            description=f"{self.resource_name} {self.state} on {host.name}",
        )
        if not ready:
            return ActionResult(
                details=f"timed out after {self.attempts} attempt(s) waiting for {self.resource_name}",
                failed=True,
            )
        return ActionResult(details=f"{self.resource_name} {self.state}")

    def _satisfied(self, executor: Executor) -> bool:
        if self.path is not None:
            exists = executor.stat(self.path).exists
            return exists if self.state in {"present", "started"} else not exists
        connect = executor.run(
            ["bash", "-c", f"exec 3<>/dev/tcp/{self.host}/{self.port}"],
            check=False,
            timeout=10,
        )
        listening = connect.returncode == 0
        return listening if self.state in {"present", "started"} else not listening
