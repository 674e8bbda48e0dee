"""
Example plugin module for Rigger.

Drop this file into a plugin directory (see plugin_dirs in main.conf) or make it
importable (plugin_modules) and it registers a resource kind called `hostname`
that keeps /etc/hostname in line with the requested name.
"""

from pathlib import Path

from rigger_automation.resources.base import Resource
from rigger_automation.types import ActionResult, CheckResult, HostConfig

HOSTNAME_FILE = Path("/etc/hostname")


class HostnameResource(Resource):
    kind = "hostname"

    def __init__(self, spec: dict):
        super().__init__(spec)
        if not spec.get("name"):
            raise ValueError("hostname resource requires a name")
        self.hostname = str(spec["name"])

    def check(self, host: HostConfig, executor) -> CheckResult:
        current = (executor.read_file(HOSTNAME_FILE) or "").strip()
        if current == self.hostname:
            return CheckResult(True, current=current)
        return CheckResult(False, current=current, diff=f"{current or '(unset)'} -> {self.hostname}")

    def apply(self, host: HostConfig, executor, drift: CheckResult) -> ActionResult:
        executor.write_file(HOSTNAME_FILE, f"{self.hostname}\n")
        executor.run(["hostname", self.hostname])
        return ActionResult(details=drift.diff)


def register_resources(registry) -> None:
    registry["hostname"] = HostnameResource
