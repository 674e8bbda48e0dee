from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Optional

from .base import Resource, coerce_bool, parse_mode
from ..errors import ActionFailed
from ..executors import Executor
from ..types import ActionResult, CheckResult, HostConfig


class LineInFileResource(Resource):
    """Make sure a single line is present in (or absent from) a text file."""

    kind = "lineinfile"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_path = spec.get("path") or spec.get("dest")
        if not raw_path:
            raise ValueError("lineinfile resource requires a path")
        self.path = Path(str(raw_path))
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("lineinfile state must be 'present' or 'absent'")
        line = spec.get("line")
        self.line: Optional[str] = None if line is None else str(line)
        regexp = spec.get("regexp")
        self.regexp = re.compile(str(regexp)) if regexp else None
        if self.state == "present" and self.line is None:
            raise ValueError("lineinfile with state 'present' requires a line")
        if self.state == "absent" and self.line is None and self.regexp is None:
            raise ValueError("lineinfile with state 'absent' requires a line or regexp")
        self.create = bool(coerce_bool(spec.get("create", False)))
        self.mode = parse_mode(spec.get("mode"))
        self._new_content: Optional[str] = None

    def check(self, host: HostConfig, executor: Executor) -> CheckResult:
        existing = executor.read_file(self.path)
        if existing is None:
            if self.state == "absent":
                return CheckResult(True, diff="file absent")
            self._new_content = f"{self.line}\n"
            return CheckResult(False, diff="created")

        lines = existing.splitlines()
        if self.state == "present":
            updated, detail = self._ensure_present(lines)
        else:
            updated, detail = self._ensure_absent(lines)
        if updated == lines:
            return CheckResult(True, current=len(lines))
        self._new_content = "\n".join(updated) + "\n"
        return CheckResult(False, current=len(lines), diff=detail)

    def apply(self, host: HostConfig, executor: Executor, drift: CheckResult) -> ActionResult:
        if drift.diff == "created" and not self.create:
            raise ActionFailed(f"{self.path} does not exist (set create to make it)")
        executor.write_file(self.path, self._new_content or "")
        if self.mode is not None:
            executor.set_mode(self.path, self.mode)
        return ActionResult(details=drift.diff)

    def _ensure_present(self, lines: list[str]) -> tuple[list[str], str]:
        assert self.line is not None
        if self.regexp is not None:
            matches = [idx for idx, text in enumerate(lines) if self.regexp.search(text)]
            if matches:
                idx = matches[-1]
                if lines[idx] == self.line:
                    return lines, ""
                updated = list(lines)
                updated[idx] = self.line
                return updated, "line replaced"
        if self.line in lines:
            return lines, ""
        return [*lines, self.line], "line added"

    def _ensure_absent(self, lines: list[str]) -> tuple[list[str], str]:
        if self.regexp is not None:
            kept = [text for text in lines if not self.regexp.search(text)]
        else:
            kept = [text for text in lines if text != self.line]
        removed = len(lines) - len(kept)
        return kept, f"{removed} line(s) removed"
