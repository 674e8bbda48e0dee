"""Loading, validating and serialising plan files.

Plans are YAML, TOML or JSON documents. Two task shapes are accepted: the
canonical one written by :func:`dumps_plan` (``kind`` + ``params``) and the
familiar playbook idiom where the kind is the task's only non-keyword key::

    - name: Install git
      apt:
        name: git
        state: present
      when: os_family == "Debian"
      ignore_errors: yes
"""

from __future__ import annotations

import json
import logging
import shlex
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

import yaml

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .checker import ResourceChecker
from .errors import GuardEvaluationError, PlanValidationError
from .facts import FACT_KEYS
from .guards import Guard
from .inventory import Inventory, parse_hosts
from .types import FailurePolicy, HostConfig, Plan, PlaySpec, RetryPolicy, TaskSpec

logger = logging.getLogger(__name__)

LINE_KEY = "__line__"

# Playbook module names mapped to resource kinds, with params they imply.
KIND_ALIASES: dict[str, tuple[str, dict[str, Any]]] = {
    "apt": ("package", {"manager": "apt"}),
    "dnf": ("package", {"manager": "dnf"}),
    "yum": ("package", {"manager": "yum"}),
    "systemd": ("service", {}),
    "ufw": ("firewall", {}),
    "copy": ("file", {"remote_src": False}),
    "template": ("file", {}),
}

TASK_KEYWORDS = {
    "name",
    "when",
    "register",
    "ignore_errors",
    "failure_policy",
    "retries",
    "delay",
    "until",
    "retry",
    "changed_when",
    "loop",
    "with_items",
    "args",
    "environment",
    "tags",
    "vars",
    "variables",
    "become",
    "become_user",
    "kind",
    "params",
}
PLAY_KEYWORDS = {"name", "hosts", "vars", "variables", "tasks", "gather_facts", "tags", "become", "become_user"}
IMPLICIT_NAMES = {"facts", *FACT_KEYS}
DEFAULT_PLAYBOOK_DELAY = 5.0


class _LineLoader(yaml.SafeLoader):
    """SafeLoader that remembers the line each mapping starts on."""

    def construct_mapping(self, node, deep=False):  # type: ignore[override]
        mapping = super().construct_mapping(node, deep=deep)
        mapping[LINE_KEY] = node.start_mark.line + 1
        return mapping


class PlanLoader:
    """Reads plan files into :class:`Plan` objects and validates them."""

    def __init__(self, checker: Optional[ResourceChecker] = None):
        self.checker = checker or ResourceChecker()

    def load(
        self,
        path: Path,
        *,
        inventory: Optional[Inventory] = None,
        extra_names: Iterable[str] = (),
    ) -> Plan:
        path = Path(path)
        try:
            text = path.read_text()
        except OSError as exc:
            raise PlanValidationError(f"{path}: {exc.strerror or exc}", path=str(path)) from None
        plan = self.loads(text, fmt=_format_for(path), path=path, inventory=inventory, extra_names=extra_names)
        plan.source_dir = str(path.parent.resolve())
        return plan

    def loads(
        self,
        text: str,
        *,
        fmt: str = "yaml",
        path: Optional[Path] = None,
        inventory: Optional[Inventory] = None,
        extra_names: Iterable[str] = (),
    ) -> Plan:
        label = str(path) if path else "<plan>"
        data = _parse_document(text, fmt, label)
        try:
            plan = self._build(data)
        except PlanValidationError as exc:
            raise PlanValidationError(_located(label, exc.line, str(exc)), path=label, line=exc.line) from None
        if inventory is not None:
            inventory.merge_into(plan)
        if not plan.hosts:
            plan.hosts = {"localhost": HostConfig(name="localhost")}
        try:
            validate_plan(plan, self.checker, extra_names)
        except PlanValidationError as exc:
            raise PlanValidationError(_located(label, exc.line, str(exc)), path=label, line=exc.line) from None
        return plan

    # Building ------------------------------------------------------------
    def _build(self, data: Any) -> Plan:
        if isinstance(data, list):
            document: dict[str, Any] = {"plays": data}
        elif isinstance(data, dict):
            document = data
        else:
            raise PlanValidationError("plan must be a list of plays or a mapping")
        raw_hosts = _strip_lines(document.get("hosts") or {})
        if not isinstance(raw_hosts, dict):
            raise PlanValidationError("plan 'hosts' must be a mapping of host definitions")
        hosts = parse_hosts(raw_hosts) if raw_hosts else {}
        groups = {str(k): [str(h) for h in v] for k, v in _strip_lines(document.get("groups") or {}).items()}
        variables = _strip_lines(document.get("vars", document.get("variables")) or {})
        raw_plays = document.get("plays") or []
        if not isinstance(raw_plays, list):
            raise PlanValidationError("plan 'plays' must be a list")
        plays = [self._parse_play(raw, index) for index, raw in enumerate(raw_plays, start=1)]
        return Plan(hosts=hosts, plays=plays, variables=dict(variables), groups=groups)

    def _parse_play(self, raw: Any, index: int) -> PlaySpec:
        if not isinstance(raw, dict):
            raise PlanValidationError(f"play {index} must be a mapping")
        line = raw.get(LINE_KEY)
        unknown = set(raw) - PLAY_KEYWORDS - {LINE_KEY}
        if unknown:
            raise PlanValidationError(
                f"play {index} has unknown keys: {', '.join(sorted(unknown))}", line=line
            )
        name = str(raw.get("name") or f"play-{index}")
        hosts = _as_list(raw.get("hosts", "all"), split=True)
        variables = _strip_lines(raw.get("vars", raw.get("variables")) or {})
        become = _as_bool(raw.get("become", False), "become", line)
        become_user = str(raw["become_user"]) if raw.get("become_user") else None
        raw_tasks = raw.get("tasks") or []
        if not isinstance(raw_tasks, list):
            raise PlanValidationError(f"play '{name}' tasks must be a list", line=line)
        tasks = [
            self._parse_task(task, pos, name, become=become, become_user=become_user)
            for pos, task in enumerate(raw_tasks, start=1)
        ]
        return PlaySpec(
            name=name,
            hosts=hosts,
            tasks=tasks,
            variables=dict(variables),
            gather_facts=_as_bool(raw.get("gather_facts", True), "gather_facts", line),
            tags=_as_list(raw.get("tags")),
            become=become,
            become_user=become_user,
        )

    def _parse_task(
        self,
        raw: Any,
        index: int,
        play: str,
        *,
        become: bool = False,
        become_user: Optional[str] = None,
    ) -> TaskSpec:
        if not isinstance(raw, dict):
            raise PlanValidationError(f"task {index} of play '{play}' must be a mapping")
        line = raw.get(LINE_KEY)
        name = str(raw.get("name") or f"task-{index}")
        try:
            kind, params = self._kind_and_params(raw, name)
            return TaskSpec(
                name=name,
                kind=kind,
                params=params,
                when=_guard(raw.get("when")),
                register=str(raw["register"]) if raw.get("register") else None,
                failure_policy=self._failure_policy(raw),
                retry=self._retry(raw),
                changed_when=_guard(raw.get("changed_when")),
                loop=self._loop(raw),
                tags=_as_list(raw.get("tags")),
                variables=dict(_strip_lines(raw.get("vars", raw.get("variables")) or {})),
                become=_as_bool(raw.get("become", become), "become", line),
                become_user=str(raw["become_user"]) if raw.get("become_user") else become_user,
            )
        except GuardEvaluationError as exc:
            column = f" (column {exc.column})" if exc.column else ""
            raise PlanValidationError(
                f"task '{name}': invalid guard '{exc.expression}': {exc}{column}", line=line
            ) from None
        except (TypeError, ValueError) as exc:
            if isinstance(exc, PlanValidationError) and exc.line:
                raise
            raise PlanValidationError(f"task '{name}': {exc}", line=line) from None

    def _kind_and_params(self, raw: dict[str, Any], name: str) -> tuple[str, dict[str, Any]]:
        if "kind" in raw:
            params = _strip_lines(raw.get("params") or {})
            if not isinstance(params, dict):
                raise ValueError("params must be a mapping")
            return str(raw["kind"]), params

        candidates = [key for key in raw if key not in TASK_KEYWORDS and key != LINE_KEY]
        if not candidates:
            raise ValueError("no resource kind given")
        if len(candidates) > 1:
            raise ValueError(f"more than one resource kind given: {', '.join(candidates)}")
        key = candidates[0]
        module = key.rsplit(".", 1)[-1]
        kind, implied = KIND_ALIASES.get(module, (module, {}))
        value = _strip_lines(raw[key])
        if value is None:
            params: dict[str, Any] = {}
        elif isinstance(value, dict):
            params = dict(value)
        elif isinstance(value, str):
            params = self._free_form(kind, value)
        else:
            raise ValueError(f"arguments of '{key}' must be a mapping or a string")
        if module == "template" and "src" in params:
            params["template"] = params.pop("src")
        args = _strip_lines(raw.get("args") or {})
        if not isinstance(args, dict):
            raise ValueError("args must be a mapping")
        params.update(args)
        environment = _strip_lines(raw.get("environment"))
        if environment:
            params.setdefault("environment", environment)
        for param, default in implied.items():
            params.setdefault(param, default)
        return kind, params

    @staticmethod
    def _free_form(kind: str, value: str) -> dict[str, Any]:
        if kind in {"shell", "command"}:
            return {"cmd": value}
        params: dict[str, Any] = {}
        for token in shlex.split(value):
            key, sep, val = token.partition("=")
            if not sep:
                raise ValueError(f"cannot parse '{token}' as key=value")
            params[key] = val
        return params

    @staticmethod
    def _failure_policy(raw: dict[str, Any]) -> FailurePolicy:
        if "failure_policy" in raw:
            return FailurePolicy(str(raw["failure_policy"]).lower())
        if _as_bool(raw.get("ignore_errors", False), "ignore_errors", raw.get(LINE_KEY)):
            return FailurePolicy.IGNORE
        return FailurePolicy.FATAL

    @staticmethod
    def _retry(raw: dict[str, Any]) -> Optional[RetryPolicy]:
        if "retry" in raw:
            spec = _strip_lines(raw["retry"])
            if not isinstance(spec, dict):
                raise ValueError("retry must be a mapping")
            return RetryPolicy(
                attempts=int(spec.get("attempts", 3)),
                delay=float(spec.get("delay", 0.0)),
                until=_guard(spec.get("until")),
            )
        if "retries" not in raw and "until" not in raw:
            return None
        attempts = int(raw.get("retries", 3))
        if attempts < 1:
            raise ValueError("retries must be at least 1")
        return RetryPolicy(
            attempts=attempts,
            delay=float(raw.get("delay", DEFAULT_PLAYBOOK_DELAY)),
            until=_guard(raw.get("until")),
        )

    @staticmethod
    def _loop(raw: dict[str, Any]) -> Optional[Any]:
        value = raw.get("loop", raw.get("with_items"))
        if value is None:
            return None
        value = _strip_lines(value)
        if isinstance(value, str):
            return value
        if isinstance(value, list):
            return value
        raise ValueError("loop must be a list or a template string")


def validate_plan(plan: Plan, checker: Optional[ResourceChecker] = None, extra_names: Iterable[str] = ()) -> None:
    """Reject unknown kinds, unknown hosts and guard references to undeclared names.

    A guard may reference facts, variables of the plan, its hosts, its play or
    its task, ``extra_names`` (vault keys, ``-e`` values) and anything
    registered by an earlier task. Referencing a name that only a later task
    registers is an error.
    """
    checker = checker or ResourceChecker()
    host_names: set[str] = set()
    for host in plan.hosts.values():
        host_names.update(host.variables)
    base = IMPLICIT_NAMES | set(plan.variables) | host_names | set(extra_names)
    later = {task.register for play in plan.plays for task in play.tasks if task.register}
    registered: set[str] = set()
    for play in plan.plays:
        for selector in play.hosts:
            if selector != "all" and selector not in plan.hosts and selector not in plan.groups:
                raise PlanValidationError(f"play '{play.name}' targets unknown host or group '{selector}'")
        play_names = base | set(play.variables)
        for task in play.tasks:
            if not checker.knows(task.kind):
                raise PlanValidationError(f"task '{task.name}': unknown resource kind '{task.kind}'")
            known = play_names | registered | set(task.variables)
            if task.loop is not None:
                known = known | {"item"}
            _check_refs(task, "when", task.when, known, later)
            after = known | {"result"} | ({task.register} if task.register else set())
            _check_refs(task, "changed_when", task.changed_when, after, later)
            if task.retry is not None:
                _check_refs(task, "until", task.retry.until, after, later)
            if task.register:
                registered.add(task.register)


def _check_refs(task: TaskSpec, label: str, guard: Optional[Guard], known: set[str], later: set[str]) -> None:
    if guard is None:
        return
    for name in sorted(guard.references() - known):
        if name in later:
            raise PlanValidationError(
                f"task '{task.name}': {label} refers to '{name}' before it is registered"
            )
        raise PlanValidationError(f"task '{task.name}': {label} refers to undefined name '{name}'")


# Serialisation -----------------------------------------------------------
def dump_plan(plan: Plan) -> dict[str, Any]:
    """Canonical, serialisable form of ``plan``; :class:`PlanLoader` reads it back."""
    document: dict[str, Any] = {
        "hosts": {
            name: _drop_empty(
                {
                    "connection": host.connection,
                    "address": host.address,
                    "user": host.user,
                    "port": host.port,
                    "variables": dict(host.variables),
                }
            )
            for name, host in plan.hosts.items()
        },
        "groups": {name: list(members) for name, members in plan.groups.items()},
        "vars": dict(plan.variables),
        "plays": [_dump_play(play) for play in plan.plays],
    }
    return document


def dumps_plan(plan: Plan, fmt: str = "yaml") -> str:
    document = dump_plan(plan)
    if fmt == "json":
        return json.dumps(document, indent=2) + "\n"
    if fmt == "yaml":
        return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)
    raise ValueError(f"Unsupported plan format '{fmt}'")


def _dump_play(play: PlaySpec) -> dict[str, Any]:
    data: dict[str, Any] = {"name": play.name, "hosts": list(play.hosts)}
    if play.variables:
        data["vars"] = dict(play.variables)
    if not play.gather_facts:
        data["gather_facts"] = False
    if play.tags:
        data["tags"] = list(play.tags)
    if play.become:
        data["become"] = True
    if play.become_user:
        data["become_user"] = play.become_user
    data["tasks"] = [_dump_task(task, play) for task in play.tasks]
    return data


def _dump_task(task: TaskSpec, play: PlaySpec) -> dict[str, Any]:
    data: dict[str, Any] = {"name": task.name, "kind": task.kind, "params": dict(task.params)}
    if task.when is not None:
        data["when"] = task.when.source
    if task.register:
        data["register"] = task.register
    if task.failure_policy is not FailurePolicy.FATAL:
        data["failure_policy"] = task.failure_policy.value
    if task.retry is not None:
        retry: dict[str, Any] = {"attempts": task.retry.attempts, "delay": task.retry.delay}
        if task.retry.until is not None:
            retry["until"] = task.retry.until.source
        data["retry"] = retry
    if task.changed_when is not None:
        data["changed_when"] = task.changed_when.source
    if task.loop is not None:
        data["loop"] = task.loop
    if task.tags:
        data["tags"] = list(task.tags)
    if task.variables:
        data["vars"] = dict(task.variables)
    # Tasks inherit privilege escalation from their play.
    if task.become != play.become:
        data["become"] = task.become
    if task.become_user and task.become_user != play.become_user:
        data["become_user"] = task.become_user
    return data


# Helpers ---------------------------------------------------------------
def _format_for(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix == ".toml":
        return "toml"
    if suffix == ".json":
        return "json"
    return "yaml"


def _parse_document(text: str, fmt: str, label: str) -> Any:
    try:
        if fmt == "toml":
            return tomllib.loads(text)
        if fmt == "json":
            return json.loads(text)
        if fmt == "yaml":
            return yaml.load(text, Loader=_LineLoader)  # noqa: S506
    except tomllib.TOMLDecodeError as exc:
        line = getattr(exc, "lineno", None)
        raise PlanValidationError(_located(label, line, str(exc)), path=label, line=line) from None
    except json.JSONDecodeError as exc:
        raise PlanValidationError(f"{label}:{exc.lineno}:{exc.colno} {exc.msg}", path=label, line=exc.lineno) from None
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        line = mark.line + 1 if mark is not None else None
        problem = getattr(exc, "problem", None) or str(exc)
        raise PlanValidationError(_located(label, line, problem), path=label, line=line) from None
    raise ValueError(f"Unsupported plan format '{fmt}'")


def _located(label: str, line: Optional[int], message: str) -> str:
    if message.startswith(f"{label}:"):
        return message
    if line:
        return f"{label}:{line} {message}"
    return f"{label}: {message}"


def _strip_lines(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_lines(v) for k, v in value.items() if k != LINE_KEY}
    if isinstance(value, list):
        return [_strip_lines(v) for v in value]
    return value


def _guard(value: Any) -> Optional[Guard]:
    if value is None:
        return None
    return Guard.parse(_strip_lines(value))


def _as_list(value: Any, *, split: bool = False) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        if split:
            return [part.strip() for part in value.replace(":", ",").split(",") if part.strip()]
        return [value]
    return [str(item) for item in value]


def _as_bool(value: Any, key: str, line: Optional[int]) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in {"true", "yes", "on", "1"}:
        return True
    if lowered in {"false", "no", "off", "0"}:
        return False
    raise PlanValidationError(f"{key} must be a boolean, got {value!r}", line=line)


def _drop_empty(data: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v not in (None, {}, [])}
