"""
Bounded in-memory log of rate limit violations.
"""

import threading
from collections import deque
from typing import Deque, List, Optional

from shared.logging import get_logger
from ..rules.models import RateLimitViolation


class ViolationLog:
    """Keeps the newest `max_entries` violations."""

    def __init__(self, max_entries: int = 10000):
        self.max_entries = max(1, max_entries)
        self.logger = get_logger("policy.rate_limit.violations")
        self._entries: Deque[RateLimitViolation] = deque(maxlen=self.max_entries)
        self._lock = threading.Lock()
        self._total = 0

    def record(self, violation: RateLimitViolation) -> None:
        with self._lock:
            self._entries.append(violation)
            self._total += 1

        self.logger.warning(
            "Rate limit exceeded",
            rule_id=violation.rule_id,
            subject_key=violation.subject_key,
            endpoint=violation.endpoint,
            attempts=violation.attempts,
            limit=violation.limit
        )

    def list(self, limit: int = 100, rule_id: Optional[str] = None) -> List[RateLimitViolation]:
        """Newest first, optionally filtered by rule."""
        with self._lock:
            snapshot = list(self._entries)

        result = []
        for violation in reversed(snapshot):
            if rule_id is not None and violation.rule_id != rule_id:
                continue
            result.append(violation)
            if len(result) >= limit:
                break
        return result

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def total_recorded(self) -> int:
        return self._total
