# audit.py
# Append-only ledger of permission decisions and step failures.
#
# One JSON object per line. The file is opened for each append and no handle
# is kept between calls. A failed write is logged and swallowed: auditing
# never aborts the action it describes.

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_PATH = Path.home() / ".plan-gate" / "audit.log"


class AuditLog:
    """Write-only JSONL sink. Timestamps never go backwards within one process."""

    def __init__(self, path: str | Path = DEFAULT_AUDIT_PATH) -> None:
        self._path = Path(path).expanduser()
        self._last: datetime | None = None

    @property
    def path(self) -> Path:
        return self._path

    def now(self) -> datetime:
        """Current UTC time, clamped to the last timestamp handed out."""
        ts = datetime.now(timezone.utc)
        if self._last is not None and ts < self._last:
            ts = self._last
        self._last = ts
        return ts

    def append(self, entry: BaseModel) -> None:
        line = entry.model_dump_json() + "\n"
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as fh:
                fh.write(line)
        except OSError as exc:
            logger.warning("Failed to write audit log %s: %s", self._path, exc)

    def read_entries(self, limit: int | None = None) -> list[dict]:
        """Parsed records, oldest first. Used by the `audit` CLI command."""
        if not self._path.exists():
            return []
        records: list[dict] = []
        with open(self._path, encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.debug("Skipping malformed audit line: %s", line[:80])
        if limit is not None:
            records = records[-limit:]
        return records
