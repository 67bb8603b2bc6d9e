"""
Thread-safe run status for rebalance and reconstruction jobs.

Each (task, index_id) pair has its own status record. Accessors return
copies so callers can never mutate tracked state.
"""
import threading
from dataclasses import dataclass, asdict, replace
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple


@dataclass
class RunStatusData:
    """Status of one task for one index (immutable snapshot)."""
    is_running: bool = False
    last_run: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    progress: float = 0.0  # 0.0 to 1.0
    summary: Optional[str] = None


class GlobalRunStatus:
    """Run status tracker shared by the API and the jobs entry point."""

    def __init__(self):
        self._lock = threading.RLock()
        self._runs: Dict[Tuple[str, int], RunStatusData] = {}
        self._is_rate_limited = False
        self._rate_limit_reset_at: Optional[datetime] = None

    def get(self, task: str, index_id: int) -> RunStatusData:
        with self._lock:
            return replace(self._runs.get((task, index_id), RunStatusData()))

    def is_running(self, task: str, index_id: int) -> bool:
        return self.get(task, index_id).is_running

    def start(self, task: str, index_id: int) -> None:
        with self._lock:
            self._runs[(task, index_id)] = RunStatusData(
                is_running=True,
                started_at=datetime.now().isoformat(),
            )

    def update_progress(self, task: str, index_id: int, progress: float) -> None:
        with self._lock:
            current = self._runs.setdefault((task, index_id), RunStatusData(is_running=True))
            current.progress = min(1.0, max(0.0, progress))

    def complete(self, task: str, index_id: int, success: bool = True,
                 error: Optional[str] = None, summary: Optional[str] = None) -> None:
        with self._lock:
            current = self._runs.setdefault((task, index_id), RunStatusData())
            current.is_running = False
            current.last_run = datetime.now().isoformat()
            current.summary = summary
            if success:
                current.progress = 1.0
                current.error = None
            else:
                current.error = error

    @property
    def is_rate_limited(self) -> bool:
        """Rate-limit flag, auto-cleared once the reset time has passed."""
        with self._lock:
            if self._is_rate_limited and self._rate_limit_reset_at:
                if datetime.now() > self._rate_limit_reset_at:
                    self._is_rate_limited = False
                    self._rate_limit_reset_at = None
            return self._is_rate_limited

    @property
    def rate_limit_reset_at(self) -> Optional[str]:
        with self._lock:
            if self._rate_limit_reset_at:
                return self._rate_limit_reset_at.isoformat()
            return None

    def set_rate_limited(self, reset_in_seconds: float = 60.0) -> None:
        with self._lock:
            self._is_rate_limited = True
            self._rate_limit_reset_at = datetime.now() + timedelta(seconds=reset_in_seconds)

    def clear_rate_limit(self) -> None:
        with self._lock:
            self._is_rate_limited = False
            self._rate_limit_reset_at = None

    def get_status_dict(self) -> dict:
        with self._lock:
            runs = [
                {"task": task, "index_id": index_id, **asdict(status)}
                for (task, index_id), status in sorted(self._runs.items())
            ]
            return {
                "runs": runs,
                "rate_limit": {
                    "is_limited": self.is_rate_limited,
                    "reset_at": self.rate_limit_reset_at,
                },
            }


# Global singleton instance
run_status = GlobalRunStatus()
