from __future__ import annotations

import logging
import subprocess
from typing import Any, Mapping, Optional

from . import resources
from .errors import CheckFailed
from .executors import Executor
from .resources.base import Resource
from .types import CheckResult, HostConfig

logger = logging.getLogger(__name__)


class UnknownResourceKind(KeyError):
    def __init__(self, kind: str):
        super().__init__(kind)
        self.kind = kind

    def __str__(self) -> str:
        return f"unknown resource kind '{self.kind}'"


class ResourceChecker:
    """Builds resources from task params and reports their drift.

    Without an explicit registry the module-level ``RESOURCE_REGISTRY`` is
    consulted on every call, so plugins registered after construction are seen.
    """

    def __init__(self, registry: Optional[Mapping[str, type[Resource]]] = None):
        self._registry = registry

    @property
    def registry(self) -> Mapping[str, type[Resource]]:
        if self._registry is not None:
            return self._registry
        return resources.RESOURCE_REGISTRY

    def knows(self, kind: str) -> bool:
        return kind in self.registry

    def build(self, kind: str, spec: dict[str, Any]) -> Resource:
        resource_cls = self.registry.get(kind)
        if resource_cls is None:
            raise UnknownResourceKind(kind)
        return resource_cls(spec)

    def check(self, resource: Resource, host: HostConfig, executor: Executor) -> CheckResult:
        try:
            result = resource.check(host, executor)
        except (OSError, subprocess.SubprocessError, RuntimeError) as exc:
            name = resource.resource_name or resource.kind
            raise CheckFailed(f"cannot inspect {resource.kind} '{name}': {exc}") from exc
        logger.debug(
            "check kind=%s host=%s matches=%s diff=%s",
            resource.kind,
            host.name,
            result.matches,
            result.diff,
        )
        return result
