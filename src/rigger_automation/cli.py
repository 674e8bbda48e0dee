from __future__ import annotations

import argparse
import importlib
import importlib.util
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Optional, Sequence

import yaml

from .config import DEFAULT_CONFIG, RiggerConfig, load_config
from .errors import PlanValidationError
from .inventory import InventoryLoader
from .loader import PlanLoader
from .report import RunReport
from .resources import RESOURCE_REGISTRY
from .runner import PlanRunner
from .secrets import RedactingFilter, Redactor, SecretResolver, load_vault_file
from .types import HostConfig, Outcome, Status, TaskSpec

logger = logging.getLogger(__name__)


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    ORANGE = "\033[38;5;208m"
    RESET = "\033[0m"


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"


_last_progress_len = 0
_progress_lock = threading.Lock()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rigger provisioning runner")
    parser.add_argument(
        "plan",
        nargs="?",
        default=None,
        type=Path,
        help="Path to a plan file (default from config or /etc/rigger/plan.yml)",
    )
    parser.add_argument("-i", "--inventory", type=Path, help="Inventory file with hosts and groups")
    parser.add_argument("--vault-file", type=Path, help="Key/value file with secret variables")
    parser.add_argument(
        "--tags",
        action="append",
        default=[],
        help="Only run tasks carrying one of these tags (comma separated, repeatable)",
    )
    parser.add_argument(
        "--limit",
        action="append",
        default=[],
        help="Only run against these hosts or groups (comma separated, repeatable)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Calculate changes without executing")
    parser.add_argument("--forks", type=int, default=None, help="Hosts to run in parallel")
    parser.add_argument("--report", type=Path, help="Write a JSON run report to this file")
    parser.add_argument(
        "-e",
        "--extra-var",
        dest="extra_vars",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Set a variable for every play (repeatable)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to rigger config file (default: /etc/rigger/main.conf)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s - %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        cfg = load_config(args.config)
    except ValueError as exc:
        print(colorize(f"Config error: {exc}", Ansi.RED), file=sys.stderr)
        return 1
    _apply_aws_env(cfg)
    _load_plugins(cfg)

    plan_path = args.plan or cfg.plan
    inventory_path = args.inventory or cfg.inventory
    vault_path = args.vault_file or cfg.vault_file
    resolver = SecretResolver()
    try:
        extra_vars = _parse_extra_vars(args.extra_vars)
        inventory = InventoryLoader().load(inventory_path) if inventory_path else None
        secrets = load_vault_file(vault_path, resolver) if vault_path else {}
        plan = PlanLoader().load(
            plan_path,
            inventory=inventory,
            extra_names=set(secrets) | set(extra_vars),
        )
    except (PlanValidationError, ValueError) as exc:
        _clear_progress()
        print(colorize(f"Plan validation failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1

    # -e values apply to every play, after the plan's own variables.
    for play in plan.plays:
        play.variables = {**play.variables, **extra_vars}
    redactor = Redactor(secrets.values())
    redactor.add(resolver.revealed)
    for handler in logging.getLogger().handlers:
        handler.addFilter(RedactingFilter(redactor))

    runner = PlanRunner(
        plan,
        dry_run=args.dry_run,
        forks=args.forks or cfg.forks,
        tags=_split(args.tags),
        limit=_split(args.limit),
        secrets=secrets,
        redactor=redactor,
        template_dir=cfg.template_dir,
        progress_callback=print_progress,
    )
    previous = signal.signal(signal.SIGTERM, lambda *_: runner.abort())
    try:
        report = runner.run()
    finally:
        signal.signal(signal.SIGTERM, previous)

    _clear_progress()
    print_report(report)
    if args.report:
        report.write_json(args.report)

    return 0 if report.success else 2


def print_report(report: RunReport) -> None:
    effective_level = logging.getLogger().getEffectiveLevel()
    summary = Summary()
    for run in report.runs:
        for outcome in run.outcomes:
            summary.add(outcome)
            if not should_display_outcome(outcome, effective_level):
                continue
            print(format_outcome(outcome))
        if run.aborted:
            line = f"{run.host}::{run.play} aborted - {run.error or 'fatal failure'}"
            print(colorize(line, Ansi.RED))
    print(summary.render())


def format_outcome(outcome: Outcome) -> str:
    status = outcome.status.value
    color: Optional[str] = None
    if outcome.failed:
        if "unknown resource kind" in outcome.details.lower():
            status = "unknown"
            color = Ansi.ORANGE
        elif outcome.ignored:
            status = "failed (ignored)"
            color = Ansi.ORANGE
        else:
            color = Ansi.RED
    elif outcome.changed:
        color = Ansi.GREEN
    else:
        color = Ansi.BLUE
    resource = f"[{outcome.resource}]" if outcome.resource else ""
    attempts = f" (attempts={outcome.attempts})" if outcome.attempts > 1 else ""
    line = f"{outcome.host}::{outcome.task}{resource} {status}{attempts} - {outcome.details}"
    if outcome.diff and outcome.diff != outcome.details:
        line = f"{line} [{outcome.diff}]"
    return colorize(line, color)


def should_display_outcome(outcome: Outcome, log_level: int) -> bool:
    if outcome.failed or outcome.changed:
        return True
    if "msg" in outcome.data:
        return True
    return log_level <= logging.DEBUG


def print_progress(host: HostConfig, task: TaskSpec) -> None:
    global _last_progress_len
    line = f"{host.name}::{task.name} pending..."
    with _progress_lock:
        _last_progress_len = len(line)
        print(colorize(line, Ansi.YELLOW), end="\r", flush=True)


def _clear_progress() -> None:
    global _last_progress_len
    with _progress_lock:
        if _last_progress_len:
            print(" " * _last_progress_len, end="\r", flush=True)
            _last_progress_len = 0


def _apply_aws_env(cfg: RiggerConfig) -> None:
    if cfg.aws_profile and "AWS_PROFILE" not in os.environ:
        os.environ["AWS_PROFILE"] = cfg.aws_profile
    if cfg.aws_region:
        if "AWS_REGION" not in os.environ:
            os.environ["AWS_REGION"] = cfg.aws_region
        if "AWS_DEFAULT_REGION" not in os.environ:
            os.environ["AWS_DEFAULT_REGION"] = cfg.aws_region


def _load_plugins(cfg: RiggerConfig) -> None:
    """Import plugin modules and let them add resource kinds.

    A plugin is any module defining ``register_resources(registry)``; it is
    found either as a ``*.py`` file in one of ``plugin_dirs`` or by dotted
    name in ``plugin_modules``.
    """
    for plugin_dir in cfg.plugin_dirs:
        if not plugin_dir.is_dir():
            logger.warning("plugin dir %s does not exist", plugin_dir)
            continue
        for path in sorted(plugin_dir.glob("*.py")):
            spec = importlib.util.spec_from_file_location(f"rigger_plugin_{path.stem}", path)
            if spec is None or spec.loader is None:
                continue
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
            _register_from(module, str(path))
    for name in cfg.plugin_modules:
        module = importlib.import_module(name)
        _register_from(module, name)


def _register_from(module: Any, origin: str) -> None:
    hook = getattr(module, "register_resources", None)
    if hook is None:
        logger.warning("plugin %s has no register_resources hook", origin)
        return
    hook(RESOURCE_REGISTRY)
    logger.debug("loaded plugin %s", origin)


def _parse_extra_vars(values: Sequence[str]) -> dict[str, Any]:
    extra: dict[str, Any] = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"extra variable '{item}' must be KEY=VALUE")
        extra[key.strip()] = yaml.safe_load(raw) if raw else ""
    return extra


def _split(values: Sequence[str]) -> list[str]:
    return [part.strip() for value in values for part in value.split(",") if part.strip()]


class Summary:
    def __init__(self) -> None:
        self.changed = 0
        self.unchanged = 0
        self.skipped = 0
        self.failed = 0
        self.ignored = 0

    def add(self, outcome: Outcome) -> None:
        if outcome.ignored:
            self.ignored += 1
        elif outcome.status is Status.FAILED:
            self.failed += 1
        elif outcome.status is Status.CHANGED:
            self.changed += 1
        elif outcome.status is Status.SKIPPED:
            self.skipped += 1
        else:
            self.unchanged += 1

    def render(self) -> str:
        parts = [
            f"Changed: {self.changed}",
            f"Unchanged: {self.unchanged}",
            f"Skipped: {self.skipped}",
            f"Failed: {self.failed}",
            f"Ignored: {self.ignored}",
        ]
        text = " | ".join(parts)
        color = Ansi.GREEN if self.failed == 0 else Ansi.RED
        return colorize(text, color)


if __name__ == "__main__":
    raise SystemExit(main())
