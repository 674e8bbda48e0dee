from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Optional, Sequence
import logging
import shlex

from .base import Resource
from ..executors import CommandResult, Executor
from ..types import ActionResult, CheckResult, HostConfig

logger = logging.getLogger(__name__)


class ShellResource(Resource):
    """Run arbitrary commands with creates/removes/unless/only_if guards.

    A command has no inspectable state, so without a guard the check never
    matches and the command runs every time.
    """

    kind = "shell"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_command = spec.get("cmd") or spec.get("command")
        if raw_command is None or raw_command == "":
            raise ValueError(f"{self.kind} resource requires a cmd")
        self.raw_command = raw_command
        self.creates = Path(str(spec["creates"])) if spec.get("creates") else None
        self.removes = Path(str(spec["removes"])) if spec.get("removes") else None
        self.unless = spec.get("unless")
        self.only_if = spec.get("only_if")
        cwd = spec.get("chdir") or spec.get("cwd")
        self.cwd = Path(str(cwd)) if cwd else None
        self.env = self._normalize_env(spec.get("env") or spec.get("environment"))
        self.executable = str(spec.get("executable") or "/bin/sh")
        self.allowed_returns = self._normalize_returns(spec.get("returns", [0]))
        self.timeout = self._normalize_timeout(spec.get("timeout"))

    @property
    def resource_name(self) -> Optional[str]:
        return self._format_command(self.command)

    @property
    def command(self) -> list[str]:
        return self._normalize_command(self.raw_command)

    def check(self, host: HostConfig, executor: Executor) -> CheckResult:
        if self.creates is not None:
            creates_path = self._resolve_path(self.creates)
            if executor.stat(creates_path).exists:
                return CheckResult(True, diff=f"creates {creates_path} exists", skipped=True)
        if self.removes is not None:
            removes_path = self._resolve_path(self.removes)
            if not executor.stat(removes_path).exists:
                return CheckResult(True, diff=f"removes {removes_path} missing", skipped=True)
        if self.only_if:
            guard = self._run_guard(self._normalize_command(self.only_if), executor)
            if guard.returncode != 0:
                return CheckResult(True, diff=f"only_if rc={guard.returncode}", skipped=True)
        if self.unless:
            guard = self._run_guard(self._normalize_command(self.unless), executor)
            if guard.returncode == 0:
                return CheckResult(True, diff=f"unless rc={guard.returncode}", skipped=True)
        return CheckResult(False, diff=f"run: {self._format_command(self.command)}")

    def apply(self, host: HostConfig, executor: Executor, drift: CheckResult) -> ActionResult:
        command = self.command
        result = executor.run(
            command,
            check=False,
            env=self.env,
            cwd=self.cwd,
            timeout=self.timeout,
        )
        data = self._result_data(result)
        if result.returncode not in self.allowed_returns:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "%s failed host=%s rc=%s cmd=%s",
                    self.kind,
                    host.name,
                    result.returncode,
                    self._format_command(command),
                )
            return ActionResult(details=self._error_detail(result), failed=True, data=data)
        return ActionResult(details=f"ran (rc={result.returncode})", data=data)

    def _run_guard(self, command: Sequence[str], executor: Executor) -> CommandResult:
        return executor.run(
            command,
            check=False,
            env=self.env,
            cwd=self.cwd,
            timeout=self.timeout,
        )

    def _resolve_path(self, path: Path) -> Path:
        if path.is_absolute() or self.cwd is None:
            return path
        return self.cwd / path

    def _normalize_command(self, value: Any) -> list[str]:
        if isinstance(value, str):
            return [self.executable, "-c", value]
        if isinstance(value, Sequence):
            return [str(v) for v in value]
        raise ValueError(f"{self.kind} command/guard must be a string or list")

    def _result_data(self, result: CommandResult) -> dict[str, Any]:
        stdout = result.stdout.rstrip("\n")
        return {
            "rc": result.returncode,
            "stdout": stdout,
            "stderr": result.stderr.rstrip("\n"),
            "stdout_lines": stdout.splitlines(),
            "cmd": self._format_command(result.command),
        }

    @staticmethod
    def _format_command(command: Sequence[str]) -> str:
        return " ".join(command)

    @staticmethod
    def _normalize_env(value: Any) -> Optional[dict[str, str]]:
        if value is None:
            return None
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        if isinstance(value, Iterable) and not isinstance(value, (str, bytes)):
            env: dict[str, str] = {}
            for item in value:
                key, sep, val = str(item).partition("=")
                if not sep:
                    raise ValueError("env list entries must be KEY=VALUE")
                env[key] = val
            return env
        raise ValueError("env must be a mapping or list of KEY=VALUE strings")

    @staticmethod
    def _normalize_returns(value: Any) -> list[int]:
        if value is None:
            return [0]
        if isinstance(value, int):
            return [int(value)]
        if isinstance(value, Iterable):
            return [int(v) for v in value]
        raise ValueError("returns must be an int or list of ints")

    @staticmethod
    def _normalize_timeout(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError) as exc:  # noqa: PERF203
            raise ValueError("timeout must be numeric") from exc

    @staticmethod
    def _error_detail(result: CommandResult) -> str:
        message = ShellResource._summarize_output(result)
        prefix = f"rc={result.returncode}"
        if message:
            return f"{prefix}: {message}"
        return prefix

    @staticmethod
    def _summarize_output(result: CommandResult) -> Optional[str]:
        for text in (result.stderr, result.stdout):
            if not text:
                continue
            stripped = text.strip()
            if not stripped:
                continue
            line = stripped.splitlines()[0]
            return (line[:157] + "...") if len(line) > 160 else line
        return None


class CommandResource(ShellResource):
    """Like ``shell`` but runs the argument vector directly, without a shell."""

    kind = "command"

    def _normalize_command(self, value: Any) -> list[str]:
        if isinstance(value, str):
            return shlex.split(value)
        return super()._normalize_command(value)
