"""Google Fit REST API connector.

OAuth2 (authorization code, offline access) against Google's identity
endpoints; data comes from the Fitness REST API.

API base: https://www.googleapis.com/fitness/v1/users/me

Endpoints used:
    POST /dataset:aggregate   — Bucketed sums/averages per data type
    GET  /sessions            — Sleep sessions (activityType 72)

Most metrics are bucketed hourly; body metrics are bucketed daily.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from healthsync.wearables.adapters.oauth import OAuthConnector
from healthsync.wearables.base import HealthDataPoint, HealthMetricType, WearableDataSource

logger = logging.getLogger("healthsync.wearables.google_fit")

_FIT_API_BASE = "https://www.googleapis.com/fitness/v1/users/me"
_SLEEP_ACTIVITY_TYPE = 72

_HOUR = timedelta(hours=1)
_DAY = timedelta(days=1)

# metric → (aggregate data type, unit, bucket width)
_AGGREGATES: dict[HealthMetricType, tuple[str, str, timedelta]] = {
    HealthMetricType.STEPS: ("com.google.step_count.delta", "count", _HOUR),
    HealthMetricType.DISTANCE: ("com.google.distance.delta", "m", _HOUR),
    HealthMetricType.ACTIVE_MINUTES: ("com.google.active_minutes", "min", _HOUR),
    HealthMetricType.CALORIES_BURNED: ("com.google.calories.expended", "kcal", _HOUR),
    HealthMetricType.HEART_RATE: ("com.google.heart_rate.bpm", "bpm", _HOUR),
    HealthMetricType.WEIGHT: ("com.google.weight", "kg", _DAY),
    HealthMetricType.BODY_FAT: ("com.google.body.fat.percentage", "%", _DAY),
    HealthMetricType.BMI: ("com.google.body.mass.index", "kg/m2", _DAY),
}


def _millis(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _from_millis(value: str | int) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _first_value(values: list[dict]) -> float | None:
    """Return the first numeric entry of a Fit ``value`` list.

    Summary types (heart rate, weight) report [average, max, min].
    """
    if not values:
        return None
    entry = values[0]
    if "intVal" in entry:
        return entry["intVal"]
    if "fpVal" in entry:
        return entry["fpVal"]
    return None


class GoogleFitConnector(OAuthConnector):
    """Google Fit connector (OAuth2 + Fitness REST API)."""

    SOURCE = WearableDataSource.GOOGLE_FIT
    DISPLAY_NAME = "Google Fit"

    AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/auth"
    TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
    REVOKE_ENDPOINT = "https://oauth2.googleapis.com/revoke"
    DEFAULT_SCOPES = (
        "https://www.googleapis.com/auth/fitness.activity.read",
        "https://www.googleapis.com/auth/fitness.body.read",
        "https://www.googleapis.com/auth/fitness.heart_rate.read",
        "https://www.googleapis.com/auth/fitness.sleep.read",
    )
    EXTRA_AUTHORIZATION_PARAMS = {"access_type": "offline", "prompt": "consent"}

    SUPPORTED_METRICS = frozenset(
        {
            HealthMetricType.STEPS,
            HealthMetricType.DISTANCE,
            HealthMetricType.ACTIVE_MINUTES,
            HealthMetricType.CALORIES_BURNED,
            HealthMetricType.HEART_RATE,
            HealthMetricType.SLEEP_SESSION,
            HealthMetricType.WEIGHT,
            HealthMetricType.BODY_FAT,
            HealthMetricType.BMI,
        }
    )

    async def _fetch(
        self, metric_type: HealthMetricType, start: datetime, end: datetime
    ) -> list[HealthDataPoint]:
        if metric_type is HealthMetricType.SLEEP_SESSION:
            return await self._fetch_sleep(start, end)
        return await self._fetch_aggregate(metric_type, start, end)

    async def _fetch_aggregate(
        self, metric_type: HealthMetricType, start: datetime, end: datetime
    ) -> list[HealthDataPoint]:
        data_type, unit, bucket = _AGGREGATES[metric_type]
        body = {
            "aggregateBy": [{"dataTypeName": data_type}],
            "bucketByTime": {"durationMillis": int(bucket.total_seconds() * 1000)},
            "startTimeMillis": _millis(start),
            "endTimeMillis": _millis(end),
        }
        data = await self._post(f"{_FIT_API_BASE}/dataset:aggregate", body)

        synced_at = self._clock()
        points: list[HealthDataPoint] = []
        for bucket_data in data.get("bucket", []):
            bucket_start = _from_millis(bucket_data["startTimeMillis"])
            for dataset in bucket_data.get("dataset", []):
                for raw in dataset.get("point", []):
                    value = _first_value(raw.get("value", []))
                    if value is None:
                        continue
                    points.append(
                        self._make_point(
                            metric_type,
                            bucket_start,
                            value,
                            unit,
                            user_id=self.user_id,
                            sync_timestamp=synced_at,
                            metadata={
                                "data_type": raw.get("dataTypeName", data_type),
                                "origin": raw.get("originDataSourceId"),
                            },
                        )
                    )
        return points

    async def _fetch_sleep(self, start: datetime, end: datetime) -> list[HealthDataPoint]:
        data = await self._get(
            f"{_FIT_API_BASE}/sessions",
            params={
                "startTime": start.isoformat(),
                "endTime": end.isoformat(),
                "activityType": _SLEEP_ACTIVITY_TYPE,
            },
        )

        synced_at = self._clock()
        points: list[HealthDataPoint] = []
        for session in data.get("session", []):
            if int(session.get("activityType", _SLEEP_ACTIVITY_TYPE)) != _SLEEP_ACTIVITY_TYPE:
                continue
            session_start = _from_millis(session["startTimeMillis"])
            session_end = _from_millis(session["endTimeMillis"])
            minutes = (session_end - session_start).total_seconds() / 60
            points.append(
                self._make_point(
                    HealthMetricType.SLEEP_SESSION,
                    session_start,
                    round(minutes, 1),
                    "min",
                    user_id=self.user_id,
                    sync_timestamp=synced_at,
                    metadata={"session_id": session.get("id"), "end": session_end.isoformat()},
                )
            )
        return points
