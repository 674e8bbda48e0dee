from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional, Sequence

from .errors import HostUnreachable
from .executors import CommandResult, Executor
from .types import UNDEFINED, HostConfig

logger = logging.getLogger(__name__)

FACT_KEYS = (
    "system",
    "kernel",
    "architecture",
    "os_family",
    "distribution",
    "distribution_version",
    "hostname",
    "packages",
)

_FAMILIES = {
    "debian": "Debian",
    "ubuntu": "Debian",
    "rhel": "RedHat",
    "fedora": "RedHat",
    "centos": "RedHat",
    "rocky": "RedHat",
    "almalinux": "RedHat",
    "amzn": "RedHat",
    "arch": "Archlinux",
    "alpine": "Alpine",
}


@dataclass(frozen=True)
class Facts:
    host: str
    values: Mapping[str, Any] = field(default_factory=dict)

    def lookup(self, key: str) -> Any:
        return self.values.get(key, UNDEFINED)

    def as_dict(self) -> dict[str, Any]:
        return dict(self.values)


class FactStore:
    """Gathers host facts once per run and hands out read-only snapshots."""

    def __init__(self) -> None:
        self._facts: dict[str, Facts] = {}
        self._lock = threading.Lock()

    def gather(self, host: HostConfig, executor: Executor) -> Facts:
        with self._lock:
            cached = self._facts.get(host.name)
        if cached is not None:
            return cached

        values: dict[str, Any] = {}
        values.update(self._platform(host, executor))
        values.update(self._os_release(executor, default_family=values["system"]))
        values["hostname"] = self._first_line(self._quiet_run(executor, ["hostname"])) or host.name
        values["packages"] = self._packages(executor, values["os_family"])
        logger.debug(
            "facts host=%s system=%s family=%s packages=%d",
            host.name,
            values["system"],
            values["os_family"],
            len(values["packages"]),
        )
        facts = Facts(host=host.name, values=MappingProxyType(values))
        with self._lock:
            # Another worker may have won the race; keep the first snapshot.
            return self._facts.setdefault(host.name, facts)

    def empty(self, host: HostConfig) -> Facts:
        """Facts for a play that skips gathering; earlier snapshots still apply."""
        with self._lock:
            cached = self._facts.get(host.name)
        return cached or Facts(host=host.name, values=MappingProxyType({}))

    def get(self, host_name: str) -> Optional[Facts]:
        with self._lock:
            return self._facts.get(host_name)

    def _platform(self, host: HostConfig, executor: Executor) -> dict[str, Any]:
        try:
            result = executor.run(["uname", "-s", "-r", "-m"], check=False)
        except OSError as exc:
            raise HostUnreachable(host.name, str(exc)) from None
        if result.returncode != 0:
            raise HostUnreachable(host.name, result.stderr.strip() or f"uname rc={result.returncode}")
        parts = result.stdout.split()
        if len(parts) < 3:
            return {"system": parts[0] if parts else "unknown", "kernel": "", "architecture": ""}
        return {"system": parts[0], "kernel": parts[1], "architecture": parts[-1]}

    def _os_release(self, executor: Executor, *, default_family: str) -> dict[str, Any]:
        result = self._quiet_run(executor, ["cat", "/etc/os-release"])
        release: dict[str, str] = {}
        if result is not None and result.returncode == 0:
            for line in result.stdout.splitlines():
                key, sep, value = line.partition("=")
                if sep:
                    release[key.strip()] = value.strip().strip('"')
        distro = release.get("ID", "")
        family = default_family
        for candidate in [distro, *release.get("ID_LIKE", "").split()]:
            if candidate in _FAMILIES:
                family = _FAMILIES[candidate]
                break
        return {
            "distribution": release.get("NAME", distro),
            "distribution_version": release.get("VERSION_ID", ""),
            "os_family": family,
        }

    def _packages(self, executor: Executor, family: str) -> list[str]:
        if family == "Debian":
            command = ["dpkg-query", "-W", "-f", "${Package}\n"]
        elif family == "RedHat":
            command = ["rpm", "-qa", "--qf", "%{NAME}\n"]
        else:
            return []
        result = self._quiet_run(executor, command)
        if result is None or result.returncode != 0:
            return []
        return sorted({line.strip() for line in result.stdout.splitlines() if line.strip()})

    @staticmethod
    def _quiet_run(executor: Executor, command: Sequence[str]) -> Optional[CommandResult]:
        try:
            return executor.run(command, check=False)
        except FileNotFoundError:
            # Tool not installed on this host; the category stays empty.
            return None

    @staticmethod
    def _first_line(result: Optional[CommandResult]) -> str:
        if result is None or result.returncode != 0:
            return ""
        stripped = result.stdout.strip()
        return stripped.splitlines()[0] if stripped else ""
