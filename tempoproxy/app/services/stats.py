"""Usage statistics for the proxy.

Counts requests, successes, failures and per-model usage since startup.
All state lives in process memory and is reported by ``GET /stats``.
"""

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict


@dataclass
class StatsCollector:
    """Collects request statistics.

    Updates are plain attribute writes with no await in between, so the
    collector is safe to share between coroutines on one event loop.
    """

    clock: Callable[[], float] = time.time
    total_requests: int = 0
    success_count: int = 0
    error_count: int = 0
    total_response_time: float = 0.0
    model_counts: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    start_time: float = field(init=False)

    def __post_init__(self) -> None:
        self.start_time = self.clock()

    def record_request(self, model: str, duration_ms: float, success: bool) -> None:
        """Record a finished request.

        Args:
            model: Model name the request asked for
            duration_ms: Response time in milliseconds
            success: Whether the request succeeded
        """
        self.total_requests += 1
        self.total_response_time += duration_ms
        if success:
            self.success_count += 1
        else:
            self.error_count += 1
        self.model_counts[model] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics with derived averages and uptime."""
        total = self.total_requests
        if total:
            average_response_time = round(self.total_response_time / total)
            success_rate = round(self.success_count / total * 100, 2)
        else:
            average_response_time = 0
            success_rate = 100
        return {
            "uptime": int(self.clock() - self.start_time),
            "total_requests": total,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "success_rate": success_rate,
            "average_response_time": average_response_time,
            "model_usage": dict(self.model_counts),
        }

    def reset(self) -> None:
        """Clear all counters and restart the uptime clock."""
        self.total_requests = 0
        self.success_count = 0
        self.error_count = 0
        self.total_response_time = 0.0
        self.model_counts = defaultdict(int)
        self.start_time = self.clock()
