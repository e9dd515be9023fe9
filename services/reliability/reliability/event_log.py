from __future__ import annotations

import csv
import json
import os
import threading
import time
from typing import Any, Dict


class EventLogger:
    """
    Appends job and breaker state transitions to a file for later inspection.

    Supported formats:
    - format="csv"  -> CSV with header
    - format="json" -> JSON Lines (one JSON object per line)
    """

    # Stable CSV schema; JSON lines carry every key given
    CSV_FIELDS = [
        "ts",
        "event",
        "job_id",
        "job_type",
        "worker_id",
        "breaker",
        "from_state",
        "state",
        "attempts",
        "error",
    ]

    def __init__(self, path: str, fmt: str = "json", enabled: bool = True) -> None:
        self.enabled = enabled
        self.format = fmt.lower()
        self.path = path
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "EventLogger":
        return cls(
            settings.event_log_path,
            fmt=settings.event_log_format,
            enabled=settings.event_log_enabled,
        )

    @classmethod
    def disabled(cls) -> "EventLogger":
        return cls("", enabled=False)

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        if not self.enabled:
            return
        rec: Dict[str, Any] = {"ts": time.time(), "event": event, **payload}

        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with self._lock:
                if self.format == "csv":
                    self._emit_csv(rec)
                else:
                    self._emit_jsonl(rec)
        except Exception:
            # Never fail a job or a guarded call because of event logging
            return

    def _emit_jsonl(self, rec: Dict[str, Any]) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(rec, ensure_ascii=False, default=str) + "\n")

    def _emit_csv(self, rec: Dict[str, Any]) -> None:
        row = {k: rec.get(k, "") for k in self.CSV_FIELDS}
        write_header = not os.path.exists(self.path) or os.path.getsize(self.path) == 0
        with open(self.path, "a", encoding="utf-8", newline="") as f:
            w = csv.DictWriter(f, fieldnames=self.CSV_FIELDS)
            if write_header:
                w.writeheader()
            w.writerow(row)
