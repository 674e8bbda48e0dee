from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, TYPE_CHECKING, Union

if TYPE_CHECKING:
    from .guards import Guard


class Status(str, Enum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    FAILED = "failed"


class FailurePolicy(str, Enum):
    FATAL = "fatal"
    IGNORE = "ignore"


@dataclass
class HostConfig:
    name: str
    connection: str = "local"
    address: Optional[str] = None
    user: Optional[str] = None
    port: Optional[int] = None
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int
    delay: float = 0.0
    until: Optional["Guard"] = None


@dataclass
class TaskSpec:
    name: str
    kind: str
    params: dict[str, Any] = field(default_factory=dict)
    when: Optional["Guard"] = None
    register: Optional[str] = None
    failure_policy: FailurePolicy = FailurePolicy.FATAL
    retry: Optional[RetryPolicy] = None
    changed_when: Optional["Guard"] = None
    loop: Optional[Union[list[Any], str]] = None
    tags: list[str] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    become: bool = False
    become_user: Optional[str] = None


@dataclass
class PlaySpec:
    name: str
    hosts: list[str]
    tasks: list[TaskSpec]
    variables: dict[str, Any] = field(default_factory=dict)
    gather_facts: bool = True
    tags: list[str] = field(default_factory=list)
    become: bool = False
    become_user: Optional[str] = None


@dataclass
class Plan:
    hosts: dict[str, HostConfig]
    plays: list[PlaySpec]
    variables: dict[str, Any] = field(default_factory=dict)
    groups: dict[str, list[str]] = field(default_factory=dict)
    source_dir: Optional[str] = None


@dataclass
class CheckResult:
    """Drift report for one resource: does the host already match?

    ``diff`` says what differs, or why nothing does. ``skipped`` marks a match
    that came from an idempotence guard (``creates``/``removes``/``unless``)
    rather than from inspecting real state.
    """

    matches: bool
    current: Any = None
    diff: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    skipped: bool = False


@dataclass
class ActionResult:
    """What a corrective action did."""

    details: str
    failed: bool = False
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class Outcome:
    host: str
    play: str
    task: str
    status: Status
    details: str = ""
    diff: str = ""
    resource: Optional[str] = None
    attempts: int = 1
    ignored: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.status is Status.FAILED

    @property
    def changed(self) -> bool:
        return self.status is Status.CHANGED

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "play": self.play,
            "task": self.task,
            "status": self.status.value,
            "details": self.details,
            "diff": self.diff,
            "resource": self.resource,
            "attempts": self.attempts,
            "ignored": self.ignored,
            "timestamp": self.timestamp.isoformat(),
        }


class _Undefined:
    """Marker for names and attributes that resolve to nothing."""

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()
