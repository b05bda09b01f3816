"""Progress side channel for long extractions and imports.

Sinks are optional and best effort: ``notify_progress`` never lets a sink
failure reach the walker or the importer.
"""

from __future__ import annotations

import time
from typing import Any

import structlog

log = structlog.get_logger()


def notify_progress(sink: Any, method: str, *args: Any, **kwargs: Any) -> None:
    if sink is None:
        return
    handler = getattr(sink, method, None)
    if handler is None:
        return
    try:
        handler(*args, **kwargs)
    except Exception:
        log.debug("progress.sink.failed", method=method, exc_info=True)


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.1f} seconds"
    if seconds < 3600:
        return f"{seconds / 60:.1f} minutes"
    return f"{seconds / 3600:.1f} hours"


class ProgressTracker:
    """Counts processed records and logs progress events through structlog."""

    def __init__(self, enabled: bool = True, total_records: int = 0, *, report_every: int = 100):
        self.enabled = enabled
        self.total_records = total_records
        self.processed_records = 0
        self.model_progress: dict[str, dict[str, float]] = {}
        self.start_time: float | None = None
        self.report_every = max(1, report_every)

    def start_extraction(self, total_count: int = 0) -> None:
        self.reset()
        self.total_records = total_count
        self.start_time = time.perf_counter()
        if self.enabled:
            log.info("progress.extraction.started", total=total_count)

    def record_extracted(self, type_name: str) -> None:
        self.processed_records += 1
        entry = self.model_progress.setdefault(
            type_name, {"current": 0, "total": 0, "percentage": 100.0}
        )
        entry["current"] += 1
        entry["total"] = entry["current"]
        if self.enabled and self.processed_records % self.report_every == 0:
            self.update_progress(self.processed_records)

    def update_progress(self, current: int, message: str | None = None) -> None:
        self.processed_records = current
        if self.enabled:
            log.info(
                "progress.update",
                current=current,
                total=self.total_records,
                percentage=self.progress_percentage,
                message=message,
            )

    def complete_extraction(self, final_count: int, duration: float) -> None:
        if self.enabled:
            log.info(
                "progress.extraction.completed",
                records=final_count,
                duration=format_duration(duration),
                rate=round(final_count / duration, 1) if duration > 0 else 0,
            )

    def start_import(self, total_count: int) -> None:
        self.reset()
        self.total_records = total_count
        self.start_time = time.perf_counter()
        if self.enabled:
            log.info("progress.import.started", total=total_count)

    def log_model_progress(self, type_name: str, current: int, total: int) -> None:
        percentage = round(current * 100.0 / total, 1) if total > 0 else 0.0
        self.model_progress[type_name] = {
            "current": current,
            "total": total,
            "percentage": percentage,
        }
        if self.enabled:
            log.info(
                "progress.model",
                model=type_name,
                current=current,
                total=total,
                percentage=percentage,
            )

    def increment(self, count: int = 1) -> None:
        self.processed_records += count

    def complete_import(self, final_count: int, duration: float) -> None:
        if self.enabled:
            log.info(
                "progress.import.completed",
                records=final_count,
                duration=format_duration(duration),
                rate=round(final_count / duration, 1) if duration > 0 else 0,
            )

    def log_error(self, message: str) -> None:
        # Errors are reported even when progress output is disabled
        log.error("progress.error", message=message)

    @property
    def progress_percentage(self) -> float:
        if self.total_records == 0:
            return 0.0
        return round(self.processed_records * 100.0 / self.total_records, 1)

    @property
    def elapsed_time(self) -> float:
        if self.start_time is None:
            return 0.0
        return time.perf_counter() - self.start_time

    @property
    def records_per_second(self) -> float:
        elapsed = self.elapsed_time
        if self.processed_records == 0 or elapsed == 0:
            return 0.0
        return self.processed_records / elapsed

    @property
    def estimated_time_remaining(self) -> float:
        if (
            self.processed_records == 0
            or self.total_records == 0
            or self.processed_records >= self.total_records
        ):
            return 0.0
        rate = self.records_per_second
        if rate == 0:
            return 0.0
        return (self.total_records - self.processed_records) / rate

    @property
    def complete(self) -> bool:
        return self.total_records > 0 and self.processed_records >= self.total_records

    def reset(self) -> None:
        self.processed_records = 0
        self.model_progress = {}
        self.start_time = None

    def snapshot(self) -> dict[str, Any]:
        return {
            "total_records": self.total_records,
            "processed_records": self.processed_records,
            "progress_percentage": self.progress_percentage,
            "elapsed_time": self.elapsed_time,
            "estimated_time_remaining": self.estimated_time_remaining,
            "records_per_second": self.records_per_second,
            "model_progress": {k: dict(v) for k, v in self.model_progress.items()},
            "complete": self.complete,
        }

    def __str__(self) -> str:
        return (
            f"Progress: {self.processed_records}/{self.total_records} "
            f"({self.progress_percentage}%)"
        )
