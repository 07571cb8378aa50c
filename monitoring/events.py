"""Append-only JSONL log of pipeline lifecycle events.

One JSON object per line: ts, kind, version, payload. Drift checks and
the training orchestrator write here; the log is never rewritten.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

EVENT_DRIFT_CHECK = "drift_check"
EVENT_TRAINING_COMPLETED = "training_completed"
EVENT_TRAINING_FAILED = "training_failed"
EVENT_SHADOW_STARTED = "shadow_started"
EVENT_SHADOW_PROMOTED = "shadow_promoted"
EVENT_SHADOW_DISCARDED = "shadow_discarded"


@dataclass(frozen=True)
class PipelineEvent:
    ts: str
    kind: str
    version: Optional[str] = None
    payload: dict = field(default_factory=dict)


class EventLog:
    """Thread-safe writer and reader for one JSONL file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(self, kind: str, payload: Optional[dict] = None, version: Optional[str] = None) -> PipelineEvent:
        event = PipelineEvent(
            ts=datetime.now(timezone.utc).isoformat(),
            kind=str(kind),
            version=version,
            payload=dict(payload or {}),
        )
        line = json.dumps(asdict(event), ensure_ascii=False, default=str)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        return event

    def recent(self, limit: int = 200, kind: Optional[str] = None) -> list[dict]:
        """Newest last. Malformed lines are skipped."""
        if not self.path.exists():
            return []
        with self._lock:
            lines = self.path.read_text(encoding="utf-8").splitlines()

        out: list[dict] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                rec = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed event line in %s", self.path)
                continue
            if kind is None or rec.get("kind") == kind:
                out.append(rec)
        return out[-max(1, int(limit)):]
