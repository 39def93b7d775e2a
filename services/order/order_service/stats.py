"""
Order Service — サービス統計

パイプラインのインスタンスが所有するカウンタ。グローバル状態にはしない。
"""

import threading
from dataclasses import dataclass, fields


@dataclass
class StatsSnapshot:
    total_requests: int = 0
    successful_orders: int = 0
    failed_orders: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    events_published: int = 0
    events_dropped: int = 0
    events_failed: int = 0

    @property
    def success_rate(self) -> float:
        if not self.total_requests:
            return 0.0
        return self.successful_orders / self.total_requests * 100

    @property
    def cache_hit_rate(self) -> float:
        lookups = self.cache_hits + self.cache_misses
        if not lookups:
            return 0.0
        return self.cache_hits / lookups * 100


class ServiceStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts = StatsSnapshot()

    def incr(self, name: str, n: int = 1) -> None:
        with self._lock:
            setattr(self._counts, name, getattr(self._counts, name) + n)

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            return StatsSnapshot(
                **{f.name: getattr(self._counts, f.name) for f in fields(StatsSnapshot)}
            )
