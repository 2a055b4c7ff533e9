# facetrack/event_recorder.py
import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class EventRecorder:
    """
    Append-only JSONL audit log for one tracker session.

    Each session owns its recorder; there is no shared global instance.
    """

    def __init__(self, log_path: Path, session_id: Optional[str] = None):
        self.log_path = Path(log_path)
        self.session_id = session_id or f"session_{uuid.uuid4().hex[:12]}"
        self._lock = threading.Lock()
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def record(self, event_type: str, payload: Dict[str, Any], actor: str = "tracker"):
        """
        Writes a structured, immutable event to the log.
        """
        entry = {
            "schema_version": SCHEMA_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "session_id": self.session_id,
            "event_type": event_type,
            "actor": actor,
            "payload": payload,
        }

        try:
            with self._lock:
                with open(self.log_path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(entry) + "\n")
                    f.flush()
                    os.fsync(f.fileno())
        except OSError as e:
            # Never break tracking because the audit log failed
            logger.warning(f"Event logging failed: {e}")

    def read_events(self) -> list[dict]:
        """Read back every event written to this log."""
        if not self.log_path.exists():
            return []
        with open(self.log_path, encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]


class NullRecorder:
    """Recorder that discards events. Used when no audit log is configured."""

    session_id = None

    def record(self, event_type: str, payload: Dict[str, Any], actor: str = "tracker"):
        pass
