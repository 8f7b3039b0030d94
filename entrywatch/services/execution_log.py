from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

JobStatus = Literal["success", "error"]

logger = logging.getLogger("entrywatch.jobs")


@dataclass(frozen=True, slots=True)
class JobExecutionLog:
    job_name: str
    executed_at: datetime
    status: JobStatus
    message: str
    details: dict[str, Any] | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "executed_at": self.executed_at.isoformat(),
            "status": self.status,
            "message": self.message,
            "details": self.details,
        }


class ExecutionLog:
    """Append-only record of sweep runs for the lifetime of the process.

    Appends and snapshots share one lock, so a reader never sees a record
    half-way through being added.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[JobExecutionLog] = []

    def record(self, entry: JobExecutionLog) -> None:
        with self._lock:
            self._records.append(entry)

        log = logger.error if entry.status == "error" else logger.info
        log(
            "job_execution",
            extra={
                "job_name": entry.job_name,
                "executed_at": entry.executed_at.isoformat(),
                "status": entry.status,
                "job_message": entry.message,
                "details": entry.details or {},
            },
        )

    def snapshot(self) -> list[JobExecutionLog]:
        with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


_default_log = ExecutionLog()


def get_execution_log() -> ExecutionLog:
    return _default_log


def get_job_execution_logs() -> list[JobExecutionLog]:
    return _default_log.snapshot()
