from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, fields, replace
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, Optional


class Priority(IntEnum):
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3

    @classmethod
    def parse(cls, value: Any) -> "Priority":
        """Accept a Priority, its int value or its (case-insensitive) name."""
        if isinstance(value, str) and not value.lstrip("-").isdigit():
            try:
                return cls[value.upper()]
            except KeyError:
                raise ValueError(f"unknown priority {value!r}") from None
        return cls(int(value))


class JobState(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETRYING = "RETRYING"
    DEAD_LETTER = "DEAD_LETTER"


# States a worker may claim from.
CLAIMABLE_STATES = (JobState.PENDING, JobState.RETRYING)
TERMINAL_STATES = (JobState.COMPLETED, JobState.DEAD_LETTER)


def new_job_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Job:
    """One unit of deferred work, as persisted in the job store."""

    id: str
    type: str
    payload: Any
    priority: Priority = Priority.NORMAL
    state: JobState = JobState.PENDING
    attempts: int = 0
    # attempts >= max_retries after a failure moves the job to DEAD_LETTER
    max_retries: int = 3
    next_run_at: float = 0.0
    last_error: Optional[str] = None
    created_at: float = 0.0
    updated_at: float = 0.0

    # enqueue order, used as the FIFO tie-breaker within a priority band
    seq: int = 0
    # bumped on every write; compare-and-swap key for outcome recording
    version: int = 0
    claimed_at: Optional[float] = None
    claimed_by: Optional[str] = None
    completed_at: Optional[float] = None
    result: Any = None

    def sort_key(self):
        return (-int(self.priority), self.seq)

    def copy(self) -> "Job":
        return replace(self)

    def to_record(self) -> Dict[str, str]:
        """Flatten to a string map (one Redis hash per job)."""
        rec: Dict[str, str] = {}
        for f in fields(self):
            v = getattr(self, f.name)
            if f.name in ("payload", "result"):
                rec[f.name] = json.dumps(v)
            elif v is None:
                rec[f.name] = ""
            elif isinstance(v, Enum):
                rec[f.name] = str(v.value)
            else:
                rec[f.name] = str(v)
        return rec

    @classmethod
    def from_record(cls, rec: Dict[str, str]) -> "Job":
        def opt_float(k: str) -> Optional[float]:
            v = rec.get(k, "")
            return float(v) if v != "" else None

        return cls(
            id=rec["id"],
            type=rec["type"],
            payload=json.loads(rec.get("payload") or "null"),
            priority=Priority(int(rec.get("priority", Priority.NORMAL))),
            state=JobState(rec.get("state", JobState.PENDING.value)),
            attempts=int(rec.get("attempts", 0)),
            max_retries=int(rec.get("max_retries", 3)),
            next_run_at=float(rec.get("next_run_at") or 0.0),
            last_error=rec.get("last_error") or None,
            created_at=float(rec.get("created_at") or 0.0),
            updated_at=float(rec.get("updated_at") or 0.0),
            seq=int(rec.get("seq", 0)),
            version=int(rec.get("version", 0)),
            claimed_at=opt_float("claimed_at"),
            claimed_by=rec.get("claimed_by") or None,
            completed_at=opt_float("completed_at"),
            result=json.loads(rec.get("result") or "null"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "priority": self.priority.name,
            "state": self.state.value,
            "attempts": self.attempts,
            "max_retries": self.max_retries,
            "next_run_at": self.next_run_at,
            "last_error": self.last_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "claimed_by": self.claimed_by,
            "completed_at": self.completed_at,
            "result": self.result,
        }


PayloadFactory = Callable[[Dict[str, Any], int], Any]


@dataclass
class ScheduledJobDefinition:
    """Template the Scheduler materializes into a Job once per interval bucket."""

    id: str
    type: str
    interval_s: float
    payload_template: Dict[str, Any] = field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    max_retries: int = 3
    # floor(now / interval_s) of the last tick that enqueued; -1 = never
    last_materialized_bucket: int = -1
    # not persisted; re-attached when the definition is registered at startup
    payload_factory: Optional[PayloadFactory] = field(default=None, repr=False, compare=False)

    def bucket_at(self, ts: float) -> int:
        return int(ts // self.interval_s)

    def make_payload(self, bucket: int) -> Any:
        if self.payload_factory is not None:
            return self.payload_factory(dict(self.payload_template), bucket)
        return dict(self.payload_template)

    def to_record(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "type": self.type,
            "interval_s": str(self.interval_s),
            "payload_template": json.dumps(self.payload_template),
            "priority": str(int(self.priority)),
            "max_retries": str(self.max_retries),
            "last_materialized_bucket": str(self.last_materialized_bucket),
        }

    @classmethod
    def from_record(cls, rec: Dict[str, str]) -> "ScheduledJobDefinition":
        return cls(
            id=rec["id"],
            type=rec["type"],
            interval_s=float(rec["interval_s"]),
            payload_template=json.loads(rec.get("payload_template") or "{}"),
            priority=Priority(int(rec.get("priority", Priority.NORMAL))),
            max_retries=int(rec.get("max_retries", 3)),
            last_materialized_bucket=int(rec.get("last_materialized_bucket", -1)),
        )
