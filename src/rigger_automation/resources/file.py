from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Optional

from .base import Resource, coerce_bool, parse_mode
from ..errors import ActionFailed
from ..executors import Executor, PathInfo
from ..types import ActionResult, CheckResult, HostConfig

STATES = {"present", "absent", "directory", "link"}


class FileResource(Resource):
    """Ensure files, directories and symlinks exist with the requested contents."""

    kind = "file"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_path = spec.get("path") or spec.get("dest") or spec.get("name")
        if not raw_path:
            raise ValueError("file resource requires a path")
        self.path = Path(str(raw_path))
        self.link_target = spec.get("link_target") or spec.get("target")
        default_state = "link" if self.link_target else "present"
        self.state = str(spec.get("state", default_state))
        if self.state == "file":
            self.state = "present"
        if self.state not in STATES:
            raise ValueError("file resource state must be 'present', 'absent', 'directory' or 'link'")
        if self.state == "link" and not self.link_target:
            self.link_target = spec.get("src")
            if not self.link_target:
                raise ValueError("file resource with state 'link' requires a src/target")
        raw_content = spec.get("content")
        self.content: Optional[str] = None if raw_content is None else str(raw_content)
        self.source = None if self.state == "link" else spec.get("src")
        self.remote_src = coerce_bool(spec.get("remote_src", True))
        self.template = spec.get("template")
        self.mode = parse_mode(spec.get("mode"))
        self.owner = spec.get("owner")
        self.group = spec.get("group")
        plan_dir = spec.get("_plan_dir")
        self.plan_dir = Path(str(plan_dir)) if plan_dir else None
        self.render: Optional[Callable[[str], str]] = spec.get("_render")
        self._desired_content: Optional[str] = None
        self._uid: Optional[int] = None
        self._gid: Optional[int] = None

    def check(self, host: HostConfig, executor: Executor) -> CheckResult:
        info = executor.stat(self.path)
        if self.state == "absent":
            if info.exists:
                return CheckResult(False, current=info.as_dict(), diff="remove")
            return CheckResult(True, current=info.as_dict())
        if self.state == "link":
            if info.is_link and info.link_target == str(self.link_target):
                return CheckResult(True, current=info.as_dict())
            return CheckResult(False, current=info.as_dict(), diff=f"link->{self.link_target}")

        reasons: list[str] = []
        if self.state == "directory":
            if not info.exists:
                reasons.append("created")
            elif not info.is_dir or info.is_link:
                reasons.append("replaced-non-dir")
        else:
            reasons.extend(self._content_drift(executor, info))
        reasons.extend(self._attribute_drift(executor, info))
        detail = ", ".join(reasons)
        return CheckResult(not reasons, current=info.as_dict(), diff=detail)

    def apply(self, host: HostConfig, executor: Executor, drift: CheckResult) -> ActionResult:
        if self.state == "absent":
            executor.remove_path(self.path)
            return ActionResult(details="removed")
        if self.state == "link":
            executor.remove_path(self.path)
            executor.symlink(str(self.link_target), self.path)
            return ActionResult(details=drift.diff)

        info = executor.stat(self.path)
        if self.state == "directory":
            if info.exists and (not info.is_dir or info.is_link):
                executor.remove_path(self.path)
            executor.make_directory(self.path)
        else:
            if info.is_dir and not info.is_link:
                raise ActionFailed(f"{self.path} is a directory")
            if self._desired_content is not None or not info.exists:
                executor.write_file(self.path, self._desired_content or "")
        if self.mode is not None:
            executor.set_mode(self.path, self.mode)
        if self.owner is not None or self.group is not None:
            uid = self._resolve_owner(executor)
            gid = self._resolve_group(executor)
            executor.set_ownership(self.path, uid=uid, gid=gid)
        return ActionResult(details=drift.diff)

    def _content_drift(self, executor: Executor, info: PathInfo) -> list[str]:
        if info.exists and info.is_dir and not info.is_link:
            return ["not-a-file"]
        desired = self._render_desired(executor)
        self._desired_content = desired
        if not info.exists:
            return ["created"]
        if desired is None:
            return []
        if executor.read_file(self.path) != desired:
            return ["content"]
        return []

    def _attribute_drift(self, executor: Executor, info: PathInfo) -> list[str]:
        reasons: list[str] = []
        if self.mode is not None and info.mode != self.mode:
            reasons.append(f"mode->{self.mode:04o}")
        if self.owner is not None and info.uid != self._resolve_owner(executor, strict=False):
            reasons.append(f"owner->{self.owner}")
        if self.group is not None and info.gid != self._resolve_group(executor, strict=False):
            reasons.append(f"group->{self.group}")
        return reasons

    def _render_desired(self, executor: Executor) -> Optional[str]:
        if self.content is not None:
            return self.content
        if self.template:
            # Templates live next to the plan on the control machine.
            text = self._local_path(self.template).read_text()
            return self.render(text) if self.render else text
        if self.source and not self.remote_src:
            return self._local_path(self.source).read_text()
        if self.source:
            content = executor.read_file(Path(str(self.source)))
            if content is None:
                raise ActionFailed(f"source {self.source} not found")
            return content
        return None

    def _local_path(self, value: object) -> Path:
        path = Path(str(value)).expanduser()
        if not path.is_absolute() and self.plan_dir is not None:
            path = self.plan_dir / path
        return path

    def _resolve_owner(self, executor: Executor, strict: bool = True) -> Optional[int]:
        if self.owner is None:
            return None
        if self._uid is None:
            self._uid = _to_id(self.owner, executor.user_id)
        if self._uid is None and strict:
            raise ActionFailed(f"unknown user '{self.owner}'")
        return self._uid

    def _resolve_group(self, executor: Executor, strict: bool = True) -> Optional[int]:
        if self.group is None:
            return None
        if self._gid is None:
            self._gid = _to_id(self.group, executor.group_id)
        if self._gid is None and strict:
            raise ActionFailed(f"unknown group '{self.group}'")
        return self._gid


def _to_id(value: object, lookup: Callable[[str], Optional[int]]) -> Optional[int]:
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        return lookup(text)
