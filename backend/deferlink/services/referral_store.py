"""Referral store: durable JSON-file collection of attribution records.

WHAT:
    Keeps every AttributionRecord in a single ordered JSON array on disk and
    exposes create / find / filter / update / delete plus an age-based
    expiry sweep.

WHY:
    Attribution volume is low to medium and the deployment is a single
    instance, so a flat file is enough. The store is the only component
    that touches the file; everything else goes through its operations.

HOW:
    - Every mutation re-reads the whole collection, applies the change and
      writes the whole collection back, holding a single-writer lock.
    - Writes go to a temp file in the same directory followed by
      os.replace(), so readers never see a partially written file.
    - Reads take no lock.

FAILURE POLICY:
    - Initialization failure (directory/file cannot be created) raises
      PersistenceError and must abort startup.
    - Read/parse failure degrades to an empty collection.
    - Write failure (e.g. read-only deployment target) is logged and
      swallowed. Attribution becomes best-effort; callers must not assume
      the record was persisted (see `last_write_ok`).

REFERENCES:
    - deferlink/services/attribution_service.py (main consumer)
    - deferlink/services/maintenance_scheduler.py (periodic expiry sweep)
"""

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from ..errors import PersistenceError
from ..schemas import AttributionRecord
from ..telemetry import capture_exception

logger = logging.getLogger(__name__)

RawEntry = Dict[str, Any]

# camelCase alias -> field name, for partial updates
_ALIASES = {info.alias: name for name, info in AttributionRecord.model_fields.items() if info.alias}
_IMMUTABLE_FIELDS = {"id", "created_at"}


def _parse_created_at(entry: RawEntry) -> Optional[datetime]:
    value = entry.get("createdAt")
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ReferralStore:
    """
    JSON-file backed store of AttributionRecords.

    USAGE:
        store = ReferralStore("./data/referrals.json")
        store.create(record)
        store.find_by_id(record.id)
        store.sweep_expired(retention_days=30)

    THREAD SAFETY:
        Mutations (create, update, delete, sweep_expired) are serialized by
        one lock per store instance. Background jobs must go through the same
        instance so they share that lock with request handlers.
    """

    def __init__(self, path: str):
        self.path = Path(path).resolve()
        self._write_lock = threading.Lock()
        self.last_write_ok = True
        self._ensure_exists()

    # -------------------------------------------------------------------------
    # Medium access
    # -------------------------------------------------------------------------

    def _ensure_exists(self) -> None:
        """Create the directory and an empty collection if missing. Fatal on failure."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if not self.path.exists():
                self.path.write_text("[]", encoding="utf-8")
                logger.info(f"[STORE] Created empty referral store at {self.path}")
        except OSError as e:
            logger.error(f"[STORE] Cannot initialize referral store at {self.path}: {e}")
            raise PersistenceError(
                f"Cannot initialize referral store: {e}", path=str(self.path)
            ) from e

    def _read_raw(self) -> List[RawEntry]:
        try:
            text = self.path.read_text(encoding="utf-8")
            data = json.loads(text or "[]")
        except (OSError, ValueError) as e:
            logger.error(f"[STORE] Failed to read referral store, treating as empty: {e}")
            return []

        if not isinstance(data, list):
            logger.error("[STORE] Referral store is not a JSON array, treating as empty")
            return []
        return [entry for entry in data if isinstance(entry, dict)]

    def _write_raw(self, entries: List[RawEntry]) -> bool:
        """Atomically replace the collection. Returns False when the write was swallowed."""
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(entries, fh, indent=2, ensure_ascii=False)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as e:
            logger.warning(
                f"[STORE] Write failed, attribution is best-effort only: {e}",
                extra={"path": str(self.path)},
            )
            capture_exception(e, extra={"operation": "store_write", "path": str(self.path)})
            self.last_write_ok = False
            return False
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass

        self.last_write_ok = True
        return True

    @staticmethod
    def _to_record(entry: RawEntry) -> Optional[AttributionRecord]:
        try:
            return AttributionRecord.from_json(entry)
        except PydanticValidationError as e:
            logger.warning(f"[STORE] Skipping malformed record {entry.get('id')!r}: {e.error_count()} errors")
            return None

    # -------------------------------------------------------------------------
    # Queries (lock-free)
    # -------------------------------------------------------------------------

    def all(self) -> List[AttributionRecord]:
        """Return every valid record in insertion order."""
        records = (self._to_record(entry) for entry in self._read_raw())
        return [record for record in records if record is not None]

    def find_by_id(self, record_id: str) -> Optional[AttributionRecord]:
        for entry in self._read_raw():
            if entry.get("id") == record_id:
                return self._to_record(entry)
        return None

    def filter(self, predicate: Callable[[AttributionRecord], bool]) -> List[AttributionRecord]:
        return [record for record in self.all() if predicate(record)]

    def count(self) -> int:
        return len(self._read_raw())

    # -------------------------------------------------------------------------
    # Mutations (single writer)
    # -------------------------------------------------------------------------

    def create(self, record: AttributionRecord) -> AttributionRecord:
        """Append a new record. Never overwrites an existing id."""
        with self._write_lock:
            entries = self._read_raw()
            if any(entry.get("id") == record.id for entry in entries):
                raise PersistenceError(f"Record id already exists: {record.id}")
            entries.append(record.to_json())
            self._write_raw(entries)

        logger.debug(f"[STORE] Created {record.kind} record {record.id}")
        return record

    def update(self, record_id: str, fields: Dict[str, Any]) -> Optional[AttributionRecord]:
        """
        Merge `fields` into an existing record.

        PARAMETERS:
            record_id: Record to update
            fields: Partial record, snake_case or camelCase keys. `id` and
                `createdAt` are immutable and ignored.

        RETURNS:
            The updated record, or None if no record has this id.
        """
        changes = {}
        for key, value in fields.items():
            name = _ALIASES.get(key, key)
            if name in AttributionRecord.model_fields and name not in _IMMUTABLE_FIELDS:
                changes[name] = value

        with self._write_lock:
            entries = self._read_raw()
            for index, entry in enumerate(entries):
                if entry.get("id") != record_id:
                    continue
                current = self._to_record(entry)
                if current is None:
                    return None
                updated = AttributionRecord.model_validate({**current.model_dump(), **changes})
                entries[index] = updated.to_json()
                self._write_raw(entries)
                return updated
        return None

    def delete(self, record_id: str) -> bool:
        with self._write_lock:
            entries = self._read_raw()
            remaining = [entry for entry in entries if entry.get("id") != record_id]
            if len(remaining) == len(entries):
                return False
            self._write_raw(remaining)
        return True

    def sweep_expired(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """
        Delete records created before `now - retention_days`.

        WHAT:
            Bulk expiry. Entries whose `createdAt` is missing or unparseable
            are treated as expired.

        RETURNS:
            Number of deleted records. Running it twice in a row with no
            writes in between returns 0 the second time. A swallowed write
            deletes nothing and returns 0.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=retention_days)

        with self._write_lock:
            entries = self._read_raw()
            kept = []
            for entry in entries:
                created_at = _parse_created_at(entry)
                if created_at is not None and created_at >= cutoff:
                    kept.append(entry)

            deleted = len(entries) - len(kept)
            if deleted > 0 and not self._write_raw(kept):
                return 0

        if deleted > 0:
            logger.info(f"[STORE] Swept {deleted} expired records (retention={retention_days}d)")
        return deleted
