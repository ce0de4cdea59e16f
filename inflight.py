"""
In-Flight Guard
Process-wide registry of object keys that are being reconciled or are waiting
for a delayed recheck. Acquisition is an atomic check-and-set, so N
near-simultaneous events for one object collapse into a single attempt.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List


@dataclass(frozen=True)
class PendingKey:
    """Marker for a key that is currently being resolved"""
    object_id: str
    acquired_at: datetime


class InFlightGuard:
    """Thread-safe exclusive membership set keyed by object id"""

    def __init__(self):
        self._lock = threading.Lock()
        self._busy: Dict[str, PendingKey] = {}

    def try_acquire(self, object_id: str) -> bool:
        """Mark object_id busy; False if another caller already holds it"""
        with self._lock:
            if object_id in self._busy:
                return False
            self._busy[object_id] = PendingKey(object_id, datetime.now(timezone.utc))
            return True

    def release(self, object_id: str) -> None:
        """Clear the busy marker. Safe to call more than once."""
        with self._lock:
            self._busy.pop(object_id, None)

    def is_busy(self, object_id: str) -> bool:
        with self._lock:
            return object_id in self._busy

    def snapshot(self) -> List[PendingKey]:
        with self._lock:
            return sorted(self._busy.values(), key=lambda p: p.acquired_at)

    def __len__(self) -> int:
        with self._lock:
            return len(self._busy)
