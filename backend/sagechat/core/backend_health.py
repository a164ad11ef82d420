"""Generation backend health tracking based on recent call outcomes."""

import time
from collections import Counter, deque
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Optional


class HealthStatus(str, Enum):
    """Backend health status levels."""
    HEALTHY = "healthy"      # Working normally
    DEGRADED = "degraded"    # Experiencing issues
    UNHEALTHY = "unhealthy"  # Down or overloaded
    UNKNOWN = "unknown"      # No recent data


@dataclass
class CallRecord:
    """Record of a single generation call."""
    timestamp: float
    success: bool
    error_kind: Optional[str] = None


class BackendHealthTracker:
    """
    Tracks the generation backend's health over a sliding window of calls.

    Content rejections are policy outcomes, not outages, and are counted
    separately from the success rate.
    """

    WINDOW_SECONDS = 300  # 5 minute window
    MAX_RECORDS = 500
    DEGRADED_THRESHOLD = 0.7  # Below 70% success = degraded
    UNHEALTHY_THRESHOLD = 0.3  # Below 30% success = unhealthy
    POLICY_KINDS = {"content_rejected"}

    def __init__(self):
        self._calls: deque[CallRecord] = deque(maxlen=self.MAX_RECORDS)
        self._lock = Lock()

    def record_success(self) -> None:
        with self._lock:
            self._calls.append(CallRecord(timestamp=time.time(), success=True))

    def record_failure(self, error_kind: str) -> None:
        with self._lock:
            self._calls.append(CallRecord(timestamp=time.time(), success=False, error_kind=error_kind))

    def snapshot(self) -> dict:
        """Current status, success rate and failure counts by kind."""
        cutoff = time.time() - self.WINDOW_SECONDS
        with self._lock:
            recent = [c for c in self._calls if c.timestamp > cutoff]

        failures = Counter(c.error_kind for c in recent if not c.success)
        outages = [c for c in recent if c.error_kind not in self.POLICY_KINDS]

        if not outages:
            return {
                "status": HealthStatus.UNKNOWN.value,
                "success_rate": None,
                "recent_calls": len(recent),
                "failures": dict(failures),
            }

        success_rate = sum(1 for c in outages if c.success) / len(outages)
        if success_rate >= self.DEGRADED_THRESHOLD:
            status = HealthStatus.HEALTHY
        elif success_rate >= self.UNHEALTHY_THRESHOLD:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.UNHEALTHY

        return {
            "status": status.value,
            "success_rate": round(success_rate * 100, 1),
            "recent_calls": len(recent),
            "failures": dict(failures),
        }
