from __future__ import annotations

from pathlib import Path
from typing import Any, Optional
import re

from .base import Resource
from ..executors import Executor
from ..types import ActionResult, CheckResult, HostConfig

SPECIAL_TIMES = {"reboot", "yearly", "annually", "monthly", "weekly", "daily", "hourly"}


class CronResource(Resource):
    """Manage one job as a file under /etc/cron.d."""

    kind = "cron"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError("cron resource requires a name")
        self.name = str(raw_name)
        self.user = str(spec.get("user", "root"))
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("cron state must be 'present' or 'absent'")
        self.job = spec.get("job") or spec.get("command")
        if not self.job and self.state == "present":
            raise ValueError("cron resource requires a job")
        self.schedule = {
            "minute": str(spec.get("minute", "*")),
            "hour": str(spec.get("hour", "*")),
            "day": str(spec.get("day", spec.get("day_of_month", "*"))),
            "month": str(spec.get("month", "*")),
            "weekday": str(spec.get("weekday", spec.get("day_of_week", "*"))),
        }
        special = spec.get("special_time")
        self.special_time: Optional[str] = None
        if special:
            self.special_time = str(special).lstrip("@")
            if self.special_time not in SPECIAL_TIMES:
                raise ValueError(f"cron special_time must be one of {', '.join(sorted(SPECIAL_TIMES))}")
        self.env = dict(spec.get("env") or {})
        cron_dir = Path(str(spec.get("cron_dir", "/etc/cron.d")))
        # cron ignores files in cron.d whose names contain dots.
        self.cron_file = cron_dir / re.sub(r"[^A-Za-z0-9_-]", "_", self.name)

    def check(self, host: HostConfig, executor: Executor) -> CheckResult:
        existing = executor.read_file(self.cron_file)
        if self.state == "absent":
            if existing is None:
                return CheckResult(True)
            return CheckResult(False, current=existing, diff="removed")
        desired = self.render()
        if existing == desired:
            return CheckResult(True, current=existing)
        return CheckResult(False, current=existing, diff="updated" if existing else "created")

    def apply(self, host: HostConfig, executor: Executor, drift: CheckResult) -> ActionResult:
        if self.state == "absent":
            executor.remove_path(self.cron_file)
            return ActionResult(details="removed")
        executor.write_file(self.cron_file, self.render())
        executor.set_mode(self.cron_file, 0o644)
        return ActionResult(details=drift.diff)

    def render(self) -> str:
        content_lines = [f"# {self.name}"]
        for key in sorted(self.env):
            content_lines.append(f"{key}={self.env[key]}")
        if self.special_time:
            schedule = f"@{self.special_time}"
        else:
            schedule = "{minute} {hour} {day} {month} {weekday}".format(**self.schedule)
        content_lines.append(f"{schedule} {self.user} {self.job}")
        return "\n".join(content_lines) + "\n"
