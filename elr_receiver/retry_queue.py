"""Durable FIFO of serialized payloads awaiting redelivery to the registry."""

import base64
import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


class RetryQueue:
    """
    Append-only JSONL file used as a FIFO queue.

    Each line is ``{"id", "enqueued_at", "data"}`` with the payload base64
    encoded. Appends are flushed and fsynced; removing the head rewrites the
    file through a temp file and ``os.replace``, so a crash leaves either the
    old or the new file. A torn trailing line is skipped on read.
    """

    def __init__(self, path: Path | str = Path("queueELR")):
        self.path = Path(path)
        if self.path.parent and not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._logger = logging.getLogger("elr-receiver")

        pending = self.size()
        if pending:
            self._logger.info(f"[QUEUE] Opened {self.path} with {pending} pending entr{'y' if pending == 1 else 'ies'}")

    def enqueue(self, payload: bytes) -> Dict[str, Any]:
        """Append a payload at the tail and return the stored record."""

        record = {
            "id": str(uuid.uuid4()),
            "enqueued_at": datetime.now(timezone.utc).isoformat(),
            "data": base64.b64encode(payload).decode("ascii"),
        }

        line = json.dumps(record) + "\n"
        with self._lock:
            if self._ends_torn():
                # Start on a fresh line so a crashed partial write stays isolated.
                line = "\n" + line
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())

        self._logger.info(f"[QUEUE] Enqueued {record['id']} ({len(payload)} bytes)")
        return record

    def dequeue_one(self) -> Optional[bytes]:
        """Remove and return the head payload, or None when empty."""

        with self._lock:
            records = self._read_records()
            if not records:
                return None
            head, rest = records[0], records[1:]
            self._rewrite(rest)

        self._logger.debug(f"[QUEUE] Dequeued {head.get('id')} ({len(rest)} remaining)")
        return self._decode(head)

    def peek(self) -> Optional[bytes]:
        with self._lock:
            records = self._read_records()
        if not records:
            return None
        return self._decode(records[0])

    def size(self) -> int:
        with self._lock:
            return len(self._read_records())

    def is_empty(self) -> bool:
        return self.size() == 0

    def clear(self) -> None:
        with self._lock:
            self._rewrite([])
        self._logger.info(f"[QUEUE] Cleared {self.path}")

    # ------------------------------------------------------------------

    def _read_records(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []

        records: List[Dict[str, Any]] = []
        with self.path.open(encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    self._logger.warning(f"[QUEUE] Skipping unreadable line in {self.path}")
                    continue
                if isinstance(record, dict) and isinstance(record.get("data"), str):
                    records.append(record)
        return records

    def _ends_torn(self) -> bool:
        if not self.path.exists() or self.path.stat().st_size == 0:
            return False
        with self.path.open("rb") as f:
            f.seek(-1, os.SEEK_END)
            return f.read(1) != b"\n"

    def _rewrite(self, records: List[Dict[str, Any]]) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            for record in records:
                f.write(json.dumps(record) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)

    def _decode(self, record: Dict[str, Any]) -> bytes:
        try:
            return base64.b64decode(record["data"], validate=True)
        except (ValueError, TypeError):
            # Undecodable data is handed back raw; the drainer drops it as malformed.
            self._logger.warning(f"[QUEUE] Entry {record.get('id')} is not valid base64")
            return record["data"].encode("utf-8", errors="replace")

    def __len__(self) -> int:
        return self.size()
