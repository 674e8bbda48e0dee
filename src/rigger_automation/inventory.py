from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .errors import PlanValidationError
from .types import HostConfig, Plan

CONNECTIONS = {"local", "ssh"}


@dataclass
class Inventory:
    hosts: dict[str, HostConfig] = field(default_factory=dict)
    groups: dict[str, list[str]] = field(default_factory=dict)

    def merge_into(self, plan: Plan) -> None:
        """Add these hosts and groups to ``plan``; inventory entries win."""
        plan.hosts.update(self.hosts)
        for name, members in self.groups.items():
            existing = plan.groups.setdefault(name, [])
            for member in members:
                if member not in existing:
                    existing.append(member)


class InventoryLoader:
    """Loads host inventories from TOML, YAML or JSON files.

    Layout::

        [hosts.web1]
        connection = "ssh"
        address = "203.0.113.10"
        user = "ubuntu"

        [groups]
        web = ["web1"]

        [group_vars.web]
        http_port = 80
    """

    def load(self, path: Path) -> Inventory:
        path = Path(path)
        try:
            text = path.read_text()
        except OSError as exc:
            raise PlanValidationError(f"{path}: {exc.strerror or exc}", path=str(path)) from None
        suffix = path.suffix.lower()
        try:
            if suffix == ".toml":
                data = tomllib.loads(text)
            elif suffix == ".json":
                data = json.loads(text)
            else:
                data = yaml.safe_load(text) or {}
        except tomllib.TOMLDecodeError as exc:
            raise PlanValidationError(f"{path}: {exc}", path=str(path)) from None
        except json.JSONDecodeError as exc:
            raise PlanValidationError(
                f"{path}:{exc.lineno}:{exc.colno} {exc.msg}", path=str(path), line=exc.lineno
            ) from None
        except yaml.YAMLError as exc:
            raise PlanValidationError(f"{path}: {exc}", path=str(path)) from None
        if not isinstance(data, dict):
            raise PlanValidationError(f"{path}: inventory must be a mapping", path=str(path))
        try:
            return self.parse(data)
        except ValueError as exc:
            raise PlanValidationError(f"{path}: {exc}", path=str(path)) from None

    def parse(self, data: dict[str, Any]) -> Inventory:
        hosts = parse_hosts(data.get("hosts") or {})
        groups: dict[str, list[str]] = {}
        for name, members in (data.get("groups") or {}).items():
            if isinstance(members, str):
                members = [members]
            unknown = [str(m) for m in members if str(m) not in hosts]
            if unknown:
                raise ValueError(f"group '{name}' lists unknown hosts: {', '.join(unknown)}")
            groups[str(name)] = [str(m) for m in members]
        for group, variables in (data.get("group_vars") or {}).items():
            if group not in groups and group != "all":
                raise ValueError(f"group_vars for unknown group '{group}'")
            members = list(hosts) if group == "all" else groups[group]
            for member in members:
                host = hosts[member]
                # Host variables take precedence over group variables.
                host.variables = {**dict(variables), **host.variables}
        return Inventory(hosts=hosts, groups=groups)


def parse_hosts(host_data: dict[str, Any]) -> dict[str, HostConfig]:
    hosts: dict[str, HostConfig] = {}
    for name, payload in host_data.items():
        payload = payload or {}
        connection = str(payload.get("connection", "local"))
        if connection not in CONNECTIONS:
            raise ValueError(f"host '{name}' has unknown connection '{connection}'")
        port = payload.get("port")
        hosts[str(name)] = HostConfig(
            name=str(name),
            connection=connection,
            address=payload.get("address"),
            user=payload.get("user"),
            port=int(port) if port is not None else None,
            variables=dict(payload.get("variables", payload.get("vars")) or {}),
        )
    return hosts
