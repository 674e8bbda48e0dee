from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import logging

from .base import Resource, coerce_bool
from ..executors import Executor
from ..types import ActionResult, CheckResult, HostConfig

logger = logging.getLogger(__name__)


class PackageResource(Resource):
    """Install or remove packages using the detected package manager."""

    kind = "package"

    def __init__(self, spec: dict[str, object]):
        super().__init__(spec)
        packages = spec.get("packages") or spec.get("name") or spec.get("pkg")
        if isinstance(packages, str):
            self.packages = [packages]
        else:
            self.packages = [str(pkg) for pkg in (packages or [])]
        if not self.packages:
            raise ValueError("package resource requires at least one package")
        self.state = str(spec.get("state", "present"))
        if self.state == "installed":
            self.state = "present"
        if self.state not in {"present", "absent"}:
            raise ValueError("package resource state must be 'present' or 'absent'")
        self.preferred_manager = spec.get("manager")
        self.update_cache = bool(coerce_bool(spec.get("update_cache", False)))
        self._manager: Optional[PackageManager] = None
        self._pending: list[str] = []

    def check(self, host: HostConfig, executor: Executor) -> CheckResult:
        manager = self._manager_for(executor)
        logger.debug(
            "package-manager=%s host=%s packages=%s", manager.name, host.name, self.packages
        )
        installed = [pkg for pkg in self.packages if manager.is_installed(executor, pkg)]
        if self.state == "present":
            self._pending = [pkg for pkg in self.packages if pkg not in installed]
            verb = "install"
        else:
            self._pending = installed
            verb = "remove"
        if not self._pending:
            return CheckResult(True, current=installed, diff=f"manager={manager.name}")
        diff = f"manager={manager.name} {verb}={','.join(self._pending)}"
        return CheckResult(False, current=installed, diff=diff)

    def apply(self, host: HostConfig, executor: Executor, drift: CheckResult) -> ActionResult:
        manager = self._manager_for(executor)
        if self.state == "present":
            if self.update_cache:
                manager.refresh(executor)
            manager.install(executor, self._pending)
            details = f"manager={manager.name} installed={','.join(self._pending)}"
        else:
            manager.remove(executor, self._pending)
            details = f"manager={manager.name} removed={','.join(self._pending)}"
        return ActionResult(details=details)

    def _manager_for(self, executor: Executor) -> "PackageManager":
        if self._manager is None:
            self._manager = PackageManagerFactory.create(self.preferred_manager, executor)
        return self._manager


class PackageManagerFactory:
    _MANAGERS = [
        ("apt-get", "apt", lambda: AptPackageManager()),
        ("dnf", "dnf", lambda: DnfPackageManager()),
        ("yum", "yum", lambda: YumPackageManager()),
        ("brew", "brew", lambda: BrewPackageManager()),
        ("pacman", "pacman", lambda: PacmanPackageManager()),
    ]

    @classmethod
    def create(cls, preferred: Optional[object], executor: Executor) -> "PackageManager":
        if isinstance(preferred, str):
            preferred = preferred.lower()
            for _, key, factory in cls._MANAGERS:
                if key == preferred:
                    return factory()
            raise ValueError(f"Unknown package manager '{preferred}'")
        for binary, _, factory in cls._MANAGERS:
            found = executor.run(["sh", "-c", f"command -v {binary}"], check=False)
            if found.returncode == 0:
                return factory()
        raise RuntimeError("No supported package manager found on PATH")


class PackageManager:
    name = "generic"

    def refresh(self, executor: Executor) -> None:
        """Refresh package metadata; most managers do this on install."""

    def install(self, executor: Executor, packages: list[str]) -> None:
        raise NotImplementedError

    def remove(self, executor: Executor, packages: list[str]) -> None:
        raise NotImplementedError

    def is_installed(self, executor: Executor, package: str) -> bool:
        raise NotImplementedError


@dataclass
class DpkgQuery:
    executable: str = "dpkg-query"

    def check(self, executor: Executor, package: str) -> bool:
        result = executor.run(
            [self.executable, "-W", "-f", "${Status}", package],
            check=False,
        )
        return result.returncode == 0 and "install ok installed" in result.stdout


class AptPackageManager(PackageManager):
    name = "apt"
    env = {"DEBIAN_FRONTEND": "noninteractive"}

    def __init__(self) -> None:
        self.query = DpkgQuery()

    def refresh(self, executor: Executor) -> None:
        executor.run(["apt-get", "update"], env=self.env)

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["apt-get", "install", "-y", *packages], env=self.env)

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["apt-get", "remove", "-y", *packages], env=self.env)

    def is_installed(self, executor: Executor, package: str) -> bool:
        return self.query.check(executor, package)


class DnfPackageManager(PackageManager):
    name = "dnf"

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["dnf", "install", "-y", *packages])

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["dnf", "remove", "-y", *packages])

    def is_installed(self, executor: Executor, package: str) -> bool:
        result = executor.run(["rpm", "-q", package], check=False)
        return result.returncode == 0


class YumPackageManager(DnfPackageManager):
    name = "yum"

    def install(self, executor: Executor, packages: list[str]) -> None:  # type: ignore[override]
        executor.run(["yum", "install", "-y", *packages])

    def remove(self, executor: Executor, packages: list[str]) -> None:  # type: ignore[override]
        executor.run(["yum", "remove", "-y", *packages])


class BrewPackageManager(PackageManager):
    name = "brew"

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["brew", "install", *packages])

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["brew", "uninstall", *packages])

    def is_installed(self, executor: Executor, package: str) -> bool:
        result = executor.run(["brew", "list", package], check=False)
        return result.returncode == 0


class PacmanPackageManager(PackageManager):
    name = "pacman"

    def refresh(self, executor: Executor) -> None:
        executor.run(["pacman", "-Sy"])

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["pacman", "-S", "--noconfirm", *packages])

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["pacman", "-R", "--noconfirm", *packages])

    def is_installed(self, executor: Executor, package: str) -> bool:
        result = executor.run(["pacman", "-Qi", package], check=False)
        return result.returncode == 0
