from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .types import Outcome, Status


@dataclass
class HostRun:
    """Outcomes of one play on one host, in execution order."""

    host: str
    play: str
    outcomes: list[Outcome] = field(default_factory=list)
    aborted: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "play": self.play,
            "aborted": self.aborted,
            "error": self.error,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


class RunReport:
    """Append-only log of a plan run, safe to write from several host workers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: list[HostRun] = []
        self._index: dict[tuple[str, str], HostRun] = {}
        self.started = datetime.now(timezone.utc)
        self.finished: Optional[datetime] = None

    def host_run(self, host: str, play: str) -> HostRun:
        key = (host, play)
        with self._lock:
            run = self._index.get(key)
            if run is None:
                run = HostRun(host=host, play=play)
                self._index[key] = run
                self._runs.append(run)
            return run

    def record(self, outcome: Outcome) -> None:
        run = self.host_run(outcome.host, outcome.play)
        with self._lock:
            run.outcomes.append(outcome)

    def abort(self, host: str, play: str, error: Optional[str] = None) -> None:
        run = self.host_run(host, play)
        with self._lock:
            run.aborted = True
            if error and not run.error:
                run.error = error

    def finish(self) -> None:
        self.finished = datetime.now(timezone.utc)

    @property
    def runs(self) -> list[HostRun]:
        with self._lock:
            return list(self._runs)

    @property
    def outcomes(self) -> list[Outcome]:
        with self._lock:
            return [outcome for run in self._runs for outcome in run.outcomes]

    def for_host(self, host: str) -> list[Outcome]:
        return [outcome for outcome in self.outcomes if outcome.host == host]

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in Status}
        counts["ignored"] = 0
        for outcome in self.outcomes:
            if outcome.ignored:
                counts["ignored"] += 1
            else:
                counts[outcome.status.value] += 1
        return counts

    @property
    def success(self) -> bool:
        if any(run.aborted for run in self.runs):
            return False
        return not any(outcome.failed and not outcome.ignored for outcome in self.outcomes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started": self.started.isoformat(),
            "finished": self.finished.isoformat() if self.finished else None,
            "success": self.success,
            "counts": self.counts(),
            "runs": [run.to_dict() for run in self.runs],
        }

    def write_json(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2) + "\n")
