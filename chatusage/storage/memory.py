"""
chatusage - In-Memory Usage Store

Process-local store for tests and local runs.
"""

import copy
from datetime import date
from typing import Dict, List

from ..usage.aggregator import DailyUsageStats
from ..usage.models import UsageLog
from .base import AggregatingUsageStore


class InMemoryUsageStore(AggregatingUsageStore):
    """Keeps persisted logs in a dict keyed by log id."""

    name = "memory"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._logs: Dict[str, UsageLog] = {}
        self.daily_stats: Dict[date, DailyUsageStats] = {}

    async def persist(self, log: UsageLog) -> str:
        # Stored copy is detached from the caller's object
        self._logs[log.id] = copy.deepcopy(log)
        return log.id

    async def delete_log(self, log_id: str) -> bool:
        return self._logs.pop(log_id, None) is not None

    async def _load_logs(self) -> List[UsageLog]:
        return list(self._logs.values())

    async def _save_daily_stats(self, stats: DailyUsageStats) -> None:
        self.daily_stats[stats.day] = stats

    def __len__(self) -> int:
        return len(self._logs)
