from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from .base import Resource
from ..executors import Executor
from ..types import ActionResult, CheckResult, HostConfig

logger = logging.getLogger(__name__)

RULES = {"allow", "deny", "reject", "limit"}
_RULE_LINE = re.compile(
    r"^(?P<to>\S+(?: \(v6\))?)\s+(?P<action>ALLOW|DENY|REJECT|LIMIT)(?:\s+(?:IN|OUT))?\s+(?P<source>.+?)\s*$"
)


@dataclass(frozen=True)
class UfwRule:
    to: str
    action: str
    source: str = "Anywhere"


@dataclass
class UfwStatus:
    active: bool
    rules: list[UfwRule]


@dataclass
class Ufw:
    executable: str = "ufw"

    def status(self, executor: Executor) -> UfwStatus:
        result = executor.run([self.executable, "status"])
        status = self.parse_status(result.stdout)
        if not status.active:
            # An inactive firewall lists no rules in `ufw status`.
            added = executor.run([self.executable, "show", "added"])
            status.rules = self.parse_added(added.stdout)
        return status

    @staticmethod
    def parse_status(text: str) -> UfwStatus:
        active = False
        rules: list[UfwRule] = []
        for line in text.splitlines():
            stripped = line.strip()
            if stripped.startswith("Status:"):
                active = stripped.split(":", 1)[1].strip() == "active"
                continue
            match = _RULE_LINE.match(stripped)
            if not match or "(v6)" in match.group("to"):
                continue
            rules.append(
                UfwRule(
                    to=match.group("to"),
                    action=match.group("action").lower(),
                    source=match.group("source"),
                )
            )
        return UfwStatus(active=active, rules=rules)

    @staticmethod
    def parse_added(text: str) -> list[UfwRule]:
        """Parse `ufw show added`, which lists rules as the commands that made them."""
        rules: list[UfwRule] = []
        for line in text.splitlines():
            words = line.split()
            if len(words) < 3 or words[0] != "ufw" or words[1] not in RULES:
                continue
            action, args = words[1], [word for word in words[2:] if word not in {"in", "out"}]
            if args and args[0] == "from":
                options = dict(zip(args[::2], args[1::2]))
                if "port" not in options:
                    continue
                proto = options.get("proto")
                to = f"{options['port']}/{proto}" if proto else options["port"]
                source = options["from"]
                rules.append(UfwRule(to=to, action=action, source="Anywhere" if source == "any" else source))
            elif args:
                rules.append(UfwRule(to=args[0], action=action))
        return rules

    def enable(self, executor: Executor) -> None:
        executor.run([self.executable, "--force", "enable"])

    def disable(self, executor: Executor) -> None:
        executor.run([self.executable, "disable"])

    def add(self, executor: Executor, rule: str, port: str, proto: Optional[str], source: Optional[str]) -> None:
        executor.run([self.executable, *self._rule_args(rule, port, proto, source)])

    def delete(self, executor: Executor, rule: str, port: str, proto: Optional[str], source: Optional[str]) -> None:
        executor.run([self.executable, "delete", *self._rule_args(rule, port, proto, source)])

    @staticmethod
    def _rule_args(rule: str, port: str, proto: Optional[str], source: Optional[str]) -> list[str]:
        if source:
            args = [rule, "from", source, "to", "any", "port", port]
            if proto:
                args += ["proto", proto]
            return args
        return [rule, f"{port}/{proto}" if proto else port]


class FirewallResource(Resource):
    """Manage ufw: either the firewall itself or a single port rule."""

    kind = "firewall"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.state = str(spec.get("state", "present"))
        self.port = None if spec.get("port") is None else str(spec["port"])
        if self.state in {"enabled", "disabled"}:
            self.manages_rule = False
        elif self.state in {"present", "absent"}:
            if self.port is None:
                raise ValueError("firewall rule requires a port")
            self.manages_rule = True
        else:
            raise ValueError("firewall state must be 'enabled', 'disabled', 'present' or 'absent'")
        self.rule = str(spec.get("rule", "allow")).lower()
        if self.rule not in RULES:
            raise ValueError(f"firewall rule must be one of {', '.join(sorted(RULES))}")
        proto = spec.get("proto")
        self.proto = None if proto in (None, "any") else str(proto).lower()
        source = spec.get("from") or spec.get("from_ip") or spec.get("src")
        self.source = None if source in (None, "any") else str(source)
        self.ufw = Ufw()

    @property
    def resource_name(self) -> Optional[str]:
        if not self.manages_rule:
            return "ufw"
        return self._expected().to

    def check(self, host: HostConfig, executor: Executor) -> CheckResult:
        status = self.ufw.status(executor)
        current = {"active": status.active, "rules": len(status.rules)}
        if not self.manages_rule:
            want_active = self.state == "enabled"
            if status.active == want_active:
                return CheckResult(True, current=current)
            return CheckResult(False, current=current, diff=self.state)

        expected = self._expected()
        present = expected in status.rules
        if self.state == "present" and not present:
            return CheckResult(False, current=current, diff=f"{self.rule} {expected.to} added")
        if self.state == "absent" and present:
            return CheckResult(False, current=current, diff=f"{self.rule} {expected.to} removed")
        return CheckResult(True, current=current)

    def apply(self, host: HostConfig, executor: Executor, drift: CheckResult) -> ActionResult:
        if not self.manages_rule:
            if self.state == "enabled":
                self.ufw.enable(executor)
            else:
                self.ufw.disable(executor)
            return ActionResult(details=self.state)
        assert self.port is not None
        logger.debug("ufw host=%s %s", host.name, drift.diff)
        if self.state == "present":
            self.ufw.add(executor, self.rule, self.port, self.proto, self.source)
        else:
            self.ufw.delete(executor, self.rule, self.port, self.proto, self.source)
        return ActionResult(details=drift.diff)

    def _expected(self) -> UfwRule:
        to = f"{self.port}/{self.proto}" if self.proto else str(self.port)
        return UfwRule(to=to, action=self.rule, source=self.source or "Anywhere")
