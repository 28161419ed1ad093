"""In-process store of accepted health data points.

Points are keyed by id, so a sample that arrives again on a later pass
overwrites the earlier copy instead of duplicating it.  The backup manager
snapshots this store and restores into it.

Usage::

    store = HealthDataStore()
    store.add(point)                  # True: first time this id was seen
    store.add(point)                  # False: replaced in place
    store.points(since=last_backup)   # only points synced after that time
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from healthsync.wearables.base import HealthDataPoint, HealthMetricType

logger = logging.getLogger("healthsync.wearables.store")


class HealthDataStore:
    """Id-keyed, insertion-ordered collection of data points."""

    def __init__(self) -> None:
        self._points: dict[str, HealthDataPoint] = {}

    def add(self, point: HealthDataPoint) -> bool:
        """Insert or replace a point.

        Returns:
            True if the id was not already stored.
        """
        is_new = point.id not in self._points
        self._points[point.id] = point
        return is_new

    def add_many(self, points: Iterable[HealthDataPoint]) -> int:
        """Insert points; return how many were new."""
        return sum(1 for point in points if self.add(point))

    def points(
        self,
        since: datetime | None = None,
        metric_type: HealthMetricType | None = None,
    ) -> list[HealthDataPoint]:
        """Return stored points in insertion order.

        Args:
            since:       Only points whose ``sync_timestamp`` is after this.
            metric_type: Only points of this metric.
        """
        result = []
        for point in self._points.values():
            if since is not None and point.sync_timestamp <= since:
                continue
            if metric_type is not None and point.metric_type != metric_type:
                continue
            result.append(point)
        return result

    def restore(self, points: Iterable[HealthDataPoint]) -> int:
        """Merge points from a backup; return how many were merged."""
        count = 0
        for point in points:
            self.add(point)
            count += 1
        logger.info("Restored %d data points into store (now %d)", count, len(self))
        return count

    def clear(self) -> None:
        self._points.clear()

    def __len__(self) -> int:
        return len(self._points)

    def __contains__(self, point_id: object) -> bool:
        return point_id in self._points
