from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

logger = logging.getLogger("uvicorn.error")


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)


class DispatchEventLog:
    """Fire-and-forget JSONL sink for dispatch events.

    Records go through a bounded queue drained by a daemon thread. A full
    queue drops the record and counts it; callers are never blocked.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        enabled: bool = True,
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._dropped = 0
        self._written = 0
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        if not self.enabled:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._queue = Queue(maxsize=max(1, max_queue_size))
        self._worker = Thread(
            target=self._drain, name="gateway-event-writer", daemon=True
        )
        self._worker.start()

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped

    @property
    def written(self) -> int:
        with self._lock:
            return self._written

    def __call__(self, event: dict[str, Any]) -> None:
        self.emit(event)

    def emit(self, event: dict[str, Any]) -> None:
        queue = self._queue
        if not self.enabled or queue is None:
            return
        line = _encode({"ts": round(time.time(), 3), **event})
        try:
            queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped += 1

    def close(self) -> None:
        queue = self._queue
        worker = self._worker
        if queue is None or worker is None:
            return
        queue.put(None)
        worker.join(timeout=2.0)
        self._queue = None
        self._worker = None

    def _drain(self) -> None:
        queue = self._queue
        if queue is None:
            return
        try:
            with self.path.open("a", encoding="utf-8") as handle:
                while True:
                    item = queue.get()
                    if item is None:
                        queue.task_done()
                        break
                    handle.write(item + "\n")
                    handle.flush()
                    with self._lock:
                        self._written += 1
                    queue.task_done()
                with self._lock:
                    dropped, self._dropped = self._dropped, 0
                if dropped:
                    handle.write(
                        _encode(
                            {
                                "ts": round(time.time(), 3),
                                "event": "event_log_dropped_records",
                                "dropped_count": dropped,
                            }
                        )
                        + "\n"
                    )
                    handle.flush()
        except OSError as exc:
            logger.error("event_log_write_failed path=%s error=%s", self.path, exc)
