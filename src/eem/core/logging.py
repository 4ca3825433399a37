"""Structured logging and verbosity levels for Eem pipeline runs."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Any


class Verbosity(IntEnum):
    """Verbosity levels for console output."""

    DEFAULT = 0   # Summary only
    VERBOSE = 1   # + per-stage progress, per-item failures
    DEBUG = 2     # + gateway request details, timing


@dataclass
class StageLog:
    """Per-stage run statistics."""

    name: str
    status: str = "pending"
    items: int = 0
    failed_items: list[str] = field(default_factory=list)
    gateway_calls: int = 0
    time_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "items": self.items,
            "failed_items": list(self.failed_items),
            "gateway_calls": self.gateway_calls,
            "time_seconds": self.time_seconds,
        }


@dataclass
class RunLog:
    """Structured log of a complete pipeline run.

    The dict format is::

        {
            "run_id": "20250101T120000Z",
            "stages": {
                "source": {"status": "completed", "items": 12, ...},
                ...
            },
            "total_items": 12,
            "total_failures": 0,
            "total_gateway_calls": 3,
            "total_time": 1.2,
        }
    """

    run_id: str = ""
    stages: dict[str, StageLog] = field(default_factory=dict)
    total_time: float = 0.0
    total_items: int = 0
    total_failures: int = 0
    total_gateway_calls: int = 0

    def get_or_create_stage(self, name: str) -> StageLog:
        """Get existing stage log or create a new one."""
        if name not in self.stages:
            self.stages[name] = StageLog(name=name)
        return self.stages[name]

    def finalize(self) -> None:
        """Compute totals from stage data."""
        self.total_items = sum(s.items for s in self.stages.values())
        self.total_failures = sum(len(s.failed_items) for s in self.stages.values())
        self.total_gateway_calls = sum(s.gateway_calls for s in self.stages.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "stages": {name: stage.to_dict() for name, stage in self.stages.items()},
            "total_items": self.total_items,
            "total_failures": self.total_failures,
            "total_gateway_calls": self.total_gateway_calls,
            "total_time": self.total_time,
        }


class EemLogger:
    """Structured logger for Eem pipeline runs.

    Writes JSONL log files to logs_dir and optionally emits
    console output via Rich based on verbosity level.
    """

    def __init__(
        self,
        verbosity: Verbosity = Verbosity.DEFAULT,
        logs_dir: Path | None = None,
    ):
        self.verbosity = verbosity
        self.logs_dir = logs_dir
        self.run_log = RunLog(
            run_id=datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ"),
        )
        self._log_file = None
        self._log_path: Path | None = None
        self._stage_start: dict[str, float] = {}
        self._run_start: float = time.time()

        if logs_dir is not None:
            logs_dir.mkdir(parents=True, exist_ok=True)
            self._log_path = logs_dir / f"{self.run_log.run_id}.jsonl"
            self._log_file = open(self._log_path, "a")

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def _write_event(self, event: dict[str, Any]) -> None:
        """Write a JSON event to the JSONL log file."""
        if self._log_file is not None:
            event["timestamp"] = datetime.now(timezone.utc).isoformat()
            self._log_file.write(json.dumps(event, default=str) + "\n")
            self._log_file.flush()

    def _console_print(self, message: str, min_verbosity: Verbosity) -> None:
        """Print to console if verbosity is high enough."""
        if self.verbosity >= min_verbosity:
            from rich.console import Console

            Console(stderr=True).print(message)

    # -- Run lifecycle --

    def run_start(self, flow_name: str, stage_count: int) -> None:
        """Log the start of a pipeline run."""
        self._run_start = time.time()
        self._write_event({
            "event": "run_start",
            "flow": flow_name,
            "stage_count": stage_count,
        })
        self._console_print(f"[bold]Running flow:[/bold] {flow_name}", Verbosity.VERBOSE)

    def run_finish(self, status: str) -> None:
        """Log the completion of a pipeline run and finalize stats."""
        self.run_log.total_time = time.time() - self._run_start
        self.run_log.finalize()

        self._write_event({
            "event": "run_finish",
            "status": status,
            "total_time": round(self.run_log.total_time, 3),
            "total_items": self.run_log.total_items,
            "total_failures": self.run_log.total_failures,
            "total_gateway_calls": self.run_log.total_gateway_calls,
        })

        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None

    # -- Stage events --

    def stage_start(self, stage: str) -> None:
        """Log the start of a stage."""
        self._stage_start[stage] = time.time()
        self.run_log.get_or_create_stage(stage).status = "running"
        self._write_event({"event": "stage_start", "stage": stage})
        self._console_print(f"  [bold]Stage:[/bold] {stage}", Verbosity.VERBOSE)

    def stage_finish(self, stage: str, status: str, items: int = 0, details: str = "") -> None:
        """Log the completion (or failure, or skip) of a stage."""
        started = self._stage_start.pop(stage, None)
        elapsed = time.time() - started if started is not None else 0.0
        log = self.run_log.get_or_create_stage(stage)
        log.status = status
        log.items += items
        log.time_seconds = elapsed

        self._write_event({
            "event": "stage_finish",
            "stage": stage,
            "status": status,
            "items": items,
            "details": details,
            "time_seconds": round(elapsed, 3),
        })

        style = {"completed": "green", "skipped": "dim", "failed": "red"}.get(status, "white")
        self._console_print(
            f"    [{style}]{stage}: {status}[/{style}] {details}",
            Verbosity.VERBOSE,
        )

    # -- Item events --

    def item_failed(self, stage: str, item: str, error: BaseException | str) -> None:
        """Log a best-effort batch item that failed without aborting the batch."""
        self.run_log.get_or_create_stage(stage).failed_items.append(item)
        self._write_event({
            "event": "item_failed",
            "stage": stage,
            "item": item,
            "error": str(error),
        })
        self._console_print(f"      [yellow]![/yellow] {item}: {error}", Verbosity.VERBOSE)

    # -- Gateway call events --

    def gateway_call_start(self, stage: str, desc: str) -> float:
        """Log the start of a gateway call. Returns start time for pairing with gateway_call_finish."""
        start = time.time()
        self._write_event({"event": "gateway_call_start", "stage": stage, "desc": desc})
        self._console_print(f"        [dim]Gateway call: {desc}[/dim]", Verbosity.DEBUG)
        return start

    def gateway_call_finish(self, stage: str, desc: str, start_time: float) -> None:
        """Log the completion of a gateway call."""
        elapsed = time.time() - start_time
        self.run_log.get_or_create_stage(stage).gateway_calls += 1
        self._write_event({
            "event": "gateway_call_finish",
            "stage": stage,
            "desc": desc,
            "duration_seconds": round(elapsed, 3),
        })
        self._console_print(f"        [dim]  -> {elapsed:.1f}s[/dim]", Verbosity.DEBUG)

    def notice(self, stage: str, message: str) -> None:
        """Record a free-form notice (e.g. a notify_if predicate)."""
        self._write_event({"event": "notice", "stage": stage, "message": message})
        self._console_print(f"      [cyan]notice[/cyan] {message}", Verbosity.DEFAULT)

    def close(self) -> None:
        """Close the log file if open."""
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None
