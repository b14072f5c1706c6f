"""
Append-only audit trail for administrative changes.
"""

import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Tuple

from shared.logging import get_logger
from ..rules.models import AuditEntry, utcnow


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AuditTrail:
    """Bounded in-memory audit log; the oldest entries fall off first."""

    def __init__(self, max_entries: int = 50000):
        self.max_entries = max(1, max_entries)
        self.logger = get_logger("policy.audit")
        self._entries: Deque[AuditEntry] = deque(maxlen=self.max_entries)
        self._lock = threading.Lock()

    def record(
        self,
        admin_id: str,
        action: str,
        entity_type: str,
        entity_id: str,
        changes: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None
    ) -> AuditEntry:
        entry = AuditEntry(
            entry_id=str(uuid.uuid4()),
            admin_id=admin_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            changes=changes or {},
            timestamp=utcnow(),
            ip_address=ip_address,
        )
        with self._lock:
            self._entries.append(entry)

        self.logger.info(
            "Admin action recorded",
            action=action,
            admin_id=admin_id,
            entity_type=entity_type,
            entity_id=entity_id
        )
        return entry

    def query(
        self,
        admin_id: Optional[str] = None,
        action: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[AuditEntry], int, bool]:
        """Matching entries newest first, as (page, total, has_more)."""
        start_date, end_date = _as_utc(start_date), _as_utc(end_date)
        with self._lock:
            snapshot = list(self._entries)

        matched = [
            entry for entry in reversed(snapshot)
            if (admin_id is None or entry.admin_id == admin_id)
            and (action is None or entry.action == action)
            and (entity_type is None or entry.entity_type == entity_type)
            and (entity_id is None or entry.entity_id == entity_id)
            and (start_date is None or entry.timestamp >= start_date)
            and (end_date is None or entry.timestamp <= end_date)
        ]
        total = len(matched)
        page = matched[offset:offset + limit]
        return page, total, offset + len(page) < total

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
