from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .base import Resource, coerce_bool
from ..executors import Executor
from ..types import ActionResult, CheckResult, HostConfig

logger = logging.getLogger(__name__)


@dataclass
class SystemCtl:
    executable: str = "systemctl"

    def available(self, executor: Executor) -> bool:
        result = executor.run(["sh", "-c", f"command -v {self.executable}"], check=False)
        return result.returncode == 0

    def is_enabled(self, executor: Executor, service: str) -> bool:
        result = executor.run([self.executable, "is-enabled", service], check=False)
        return result.returncode == 0

    def is_active(self, executor: Executor, service: str) -> bool:
        result = executor.run([self.executable, "is-active", service], check=False)
        return result.returncode == 0

    def enable(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "enable", service])

    def disable(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "disable", service])

    def start(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "start", service])

    def stop(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "stop", service])

    def restart(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "restart", service])


class ServiceResource(Resource):
    """Manage systemd services."""

    kind = "service"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name") or spec.get("service")
        if not raw_name:
            raise ValueError("service resource requires a name")
        self.name = str(raw_name)
        self._enabled = coerce_bool(spec.get("enabled"))
        state = spec.get("state")
        self._state = {"started": "running"}.get(state, state)
        if self._state not in {None, "running", "stopped", "restarted"}:
            raise ValueError("service state must be 'running', 'stopped' or 'restarted'")
        self.systemctl = SystemCtl()
        self._pending: list[str] = []

    def check(self, host: HostConfig, executor: Executor) -> CheckResult:
        if not self.systemctl.available(executor):
            raise RuntimeError("systemctl is not available on this host")

        pending: list[str] = []
        current: dict[str, bool] = {}
        if self._enabled is not None:
            enabled = self.systemctl.is_enabled(executor, self.name)
            current["enabled"] = enabled
            if self._enabled and not enabled:
                pending.append("enabled")
            elif not self._enabled and enabled:
                pending.append("disabled")

        if self._state is not None:
            active = self.systemctl.is_active(executor, self.name)
            current["active"] = active
            if self._state == "running" and not active:
                pending.append("started")
            elif self._state == "stopped" and active:
                pending.append("stopped")
            elif self._state == "restarted":
                # A restart is an event, not a state; it never matches.
                pending.append("restarted")

        self._pending = pending
        return CheckResult(not pending, current=current, diff=", ".join(pending))

    def apply(self, host: HostConfig, executor: Executor, drift: CheckResult) -> ActionResult:
        actions = {
            "enabled": self.systemctl.enable,
            "disabled": self.systemctl.disable,
            "started": self.systemctl.start,
            "stopped": self.systemctl.stop,
            "restarted": self.systemctl.restart,
        }
        for change in self._pending:
            logger.debug("service=%s host=%s action=%s", self.name, host.name, change)
            actions[change](executor, self.name)
        return ActionResult(details=", ".join(self._pending))
