from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from ..executors import Executor
from ..types import ActionResult, CheckResult, HostConfig

NAME_KEYS = ("resource", "name", "path", "dest", "port", "service")


class Resource(ABC):
    """Shared surface for declared resources.

    ``check`` inspects the host and reports drift without changing anything.
    ``apply`` performs the corrective action and is only called when ``check``
    reported a mismatch.
    """

    kind = "resource"

    def __init__(self, spec: dict[str, Any]):
        self.spec = spec

    @abstractmethod
    def check(self, host: HostConfig, executor: Executor) -> CheckResult:
        """Compare the desired state with what is on ``host``."""

    @abstractmethod
    def apply(self, host: HostConfig, executor: Executor, drift: CheckResult) -> ActionResult:
        """Bring ``host`` to the desired state."""

    @property
    def resource_name(self) -> Optional[str]:
        return resource_name(self.spec)


def resource_name(data: dict[str, Any]) -> Optional[str]:
    for key in NAME_KEYS:
        value = data.get(key)
        if value:
            return str(value)
    pkgs = data.get("packages")
    if isinstance(pkgs, (list, tuple)) and pkgs:
        rendered = ", ".join(str(p) for p in pkgs[:3])
        if len(pkgs) > 3:
            rendered += ", ..."
        return rendered
    return None


def parse_mode(value: Optional[object]) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    return int(text, 8)


def coerce_bool(value: Any | None) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "on", "1"}:
            return True
        if lowered in {"false", "no", "off", "0"}:
            return False
        raise ValueError(f"Unable to interpret boolean value '{value}'")
    return bool(value)
