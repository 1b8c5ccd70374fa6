from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

from gemini_relay.utils.redaction import redact_url


class JsonlAuditLogger:
    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 4096,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._dropped = 0
        self._queue: Queue[str | None] = Queue(maxsize=max(1, max_queue_size))
        self._writer: Thread | None = None
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._writer = Thread(
                target=self._write_loop, name="relay-audit-writer", daemon=True
            )
            self._writer.start()

    def log(self, event: dict[str, Any]) -> None:
        if not self.enabled:
            return
        record = {"ts": round(time.time(), 3), **event}
        url = record.get("url")
        if isinstance(url, str):
            record["url"] = redact_url(url)
        line = json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)
        try:
            self._queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped += 1

    def close(self) -> None:
        if self._writer is None:
            return
        self._queue.put(None)
        self._writer.join(timeout=2.0)
        self._writer = None

    def _write_loop(self) -> None:
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                line = self._queue.get()
                if line is None:
                    break
                handle.write(line + "\n")
                handle.flush()
            with self._lock:
                dropped, self._dropped = self._dropped, 0
            if dropped:
                summary = {
                    "ts": round(time.time(), 3),
                    "event": "audit_events_dropped",
                    "dropped_count": dropped,
                }
                handle.write(json.dumps(summary, separators=(",", ":")) + "\n")
