"""Append-only local record of deployments whose database commit has not landed yet.

Written only when even the onchain status write failed, so the address and hash
survive until reconciliation replays them. One JSON object per line; the last
line for a tx hash wins, and a "committed" line retires it.
"""

from __future__ import annotations

import json
import threading
import time
from pathlib import Path

import structlog
from pydantic import BaseModel

log = structlog.get_logger(__name__)


class JournalEntry(BaseModel):
    market_id: str
    tx_hash: str
    market_address: str
    attempt_id: str | None = None
    recorded_at: int = 0
    committed: bool = False


class PendingCommitJournal:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()

    def _append(self, entry: JournalEntry) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock, open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry.model_dump()) + "\n")
            f.flush()

    def record(self, market_id: str, tx_hash: str, market_address: str, attempt_id: str | None = None) -> JournalEntry:
        entry = JournalEntry(
            market_id=market_id,
            tx_hash=tx_hash,
            market_address=market_address,
            attempt_id=attempt_id,
            recorded_at=int(time.time() * 1000),
        )
        self._append(entry)
        log.warning("pending_commit_journaled", market_id=market_id, tx_hash=tx_hash)
        return entry

    def mark_committed(self, entry: JournalEntry) -> None:
        self._append(entry.model_copy(update={"committed": True, "recorded_at": int(time.time() * 1000)}))

    def entries(self) -> list[JournalEntry]:
        """Open (uncommitted) entries, oldest first."""
        if not self.path.exists():
            return []
        latest: dict[str, JournalEntry] = {}
        with self._lock, open(self.path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = JournalEntry.model_validate(json.loads(line))
                except ValueError as e:
                    # Torn write from a crash mid-append
                    log.error("journal_line_unreadable", path=str(self.path), line=lineno, error=str(e), alert=True)
                    continue
                latest.pop(entry.tx_hash, None)
                latest[entry.tx_hash] = entry
        return [e for e in latest.values() if not e.committed]

    def find(self, tx_hash: str) -> JournalEntry | None:
        for entry in self.entries():
            if entry.tx_hash == tx_hash:
                return entry
        return None

    def compact(self) -> int:
        """Rewrite the file with only open entries. Returns how many remain."""
        with self._lock:
            if not self.path.exists():
                return 0
            open_entries = self.entries()
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                for entry in open_entries:
                    f.write(json.dumps(entry.model_dump()) + "\n")
            tmp.replace(self.path)
        return len(open_entries)
