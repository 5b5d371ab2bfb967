"""Lightweight in-memory counters for operational visibility."""

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from threading import Lock
from typing import Deque, Dict, Optional


class LedgerMetrics:
    """Thread-safe, low-overhead counters for ledger activity."""

    def __init__(self, max_errors: int = 50) -> None:
        self._lock = Lock()
        self._recent_errors: Deque[Dict[str, str]] = deque(maxlen=max_errors)
        self.updates_applied = 0
        self.update_failures = 0
        self.concurrency_conflicts = 0
        self.unmatched_outflows = 0
        self.cache_invalidation_failures = 0
        self.pricing_errors = 0
        self.last_update_at: Optional[str] = None

    def record_update(self) -> None:
        """Count a committed balance update."""

        with self._lock:
            self.updates_applied += 1
            self.last_update_at = datetime.now(timezone.utc).isoformat()

    def record_update_failure(self, message: str, conflict: bool = False) -> None:
        """Track a rolled-back balance update and remember why it failed."""

        with self._lock:
            self.update_failures += 1
            if conflict:
                self.concurrency_conflicts += 1
            self._recent_errors.appendleft(self._format_error(message))

    def record_unmatched_outflow(self) -> None:
        with self._lock:
            self.unmatched_outflows += 1

    def record_cache_invalidation_failure(self, message: str) -> None:
        with self._lock:
            self.cache_invalidation_failures += 1
            self._recent_errors.appendleft(self._format_error(message))

    def record_pricing_error(self, message: str) -> None:
        """Track pricing-source issues without affecting update counters."""

        with self._lock:
            self.pricing_errors += 1
            self._recent_errors.appendleft(self._format_error(message))

    def snapshot(self) -> Dict[str, object]:
        """Return a read-only snapshot of current counters."""

        with self._lock:
            return {
                "updates_applied": self.updates_applied,
                "update_failures": self.update_failures,
                "concurrency_conflicts": self.concurrency_conflicts,
                "unmatched_outflows": self.unmatched_outflows,
                "cache_invalidation_failures": self.cache_invalidation_failures,
                "pricing_errors": self.pricing_errors,
                "last_update_at": self.last_update_at,
                "recent_errors": list(self._recent_errors),
            }

    @staticmethod
    def _format_error(message: str) -> Dict[str, str]:
        return {
            "at": datetime.now(timezone.utc).isoformat(),
            "message": message,
        }


__all__ = ["LedgerMetrics"]
