"""
In-memory registry of protective order pairs keyed by position.

Single source of truth for "what the system believes is protecting what".
All operations take the same lock and never perform I/O while holding it,
so they are safe to call from the reconciler task, request handlers and
worker threads alike.
"""
import threading
from datetime import datetime
from typing import AbstractSet, Dict, List, Optional, Tuple

from bracketguard.domain.models import BracketRecord, PositionKey
from bracketguard.monitoring.logger import get_logger

logger = get_logger(__name__)


class BracketTracker:
    """
    Mutation-guarded map from PositionKey to BracketRecord.

    At most one record per key: register() replaces, never merges.
    """

    def __init__(self) -> None:
        self._records: Dict[PositionKey, BracketRecord] = {}
        self._lock = threading.Lock()

    def register(self, key: PositionKey, record: BracketRecord) -> Optional[BracketRecord]:
        """Upsert the record for key. Returns the record it replaced, if any."""
        if record.position_key != key:
            raise ValueError(f"Record key {record.position_key} does not match {key}")
        with self._lock:
            previous = self._records.get(key)
            self._records[key] = record
        if previous is not None:
            logger.info(
                "BRACKET_REPLACED",
                position_key=str(key),
                old_order_ids=previous.order_ids,
                new_order_ids=record.order_ids,
            )
        else:
            logger.info("BRACKET_REGISTERED", position_key=str(key), order_ids=record.order_ids)
        return previous

    def get(self, key: PositionKey) -> Optional[BracketRecord]:
        with self._lock:
            return self._records.get(key)

    def remove(self, key: PositionKey) -> Optional[BracketRecord]:
        """Delete the record for key. Returns the removed record, or None if absent."""
        with self._lock:
            return self._records.pop(key, None)

    def prune(
        self,
        active_keys: AbstractSet[PositionKey],
        created_before: Optional[datetime] = None,
    ) -> List[BracketRecord]:
        """
        Remove every record whose key is not in active_keys, in one atomic step.

        Records created at or after created_before are kept: they were
        registered while the caller's exchange snapshot was in flight and
        that snapshot may predate their entry fill.
        """
        removed: List[BracketRecord] = []
        with self._lock:
            for key, record in list(self._records.items()):
                if key in active_keys:
                    continue
                if created_before is not None and record.created_at >= created_before:
                    continue
                removed.append(self._records.pop(key))
        return removed

    def snapshot_all(self) -> List[Tuple[PositionKey, BracketRecord]]:
        """Point-in-time copy of all entries; later mutations do not affect it."""
        with self._lock:
            return list(self._records.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._records
