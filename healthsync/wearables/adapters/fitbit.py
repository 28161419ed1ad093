"""Fitbit Web API connector.

OAuth2 authorization code flow with HTTP Basic client authentication on
the token endpoint.  Data comes from the daily time series endpoints, so
every point except sleep is one value per day.

API base: https://api.fitbit.com

Endpoints used:
    /1/user/-/activities/{resource}/date/{start}/{end}.json
    /1/user/-/body/{resource}/date/{start}/{end}.json
    /1/user/-/foods/log/water/date/{start}/{end}.json
    /1.2/user/-/sleep/date/{start}/{end}.json

Without an Accept-Language header Fitbit answers in metric units; distance
arrives in km and is converted to metres by the normalizer.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone

import httpx

from healthsync.wearables.adapters.oauth import OAuthConnector
from healthsync.wearables.base import (
    HealthDataPoint,
    HealthMetricType,
    WearableDataSource,
    parse_timestamp,
)

logger = logging.getLogger("healthsync.wearables.fitbit")

_FITBIT_API_BASE = "https://api.fitbit.com"

# metric → (resource path, response key, unit)
_TIME_SERIES: dict[HealthMetricType, tuple[str, str, str]] = {
    HealthMetricType.STEPS: ("activities/steps", "activities-steps", "count"),
    HealthMetricType.DISTANCE: ("activities/distance", "activities-distance", "km"),
    HealthMetricType.ACTIVE_MINUTES: (
        "activities/minutesVeryActive",
        "activities-minutesVeryActive",
        "min",
    ),
    HealthMetricType.CALORIES_BURNED: ("activities/calories", "activities-calories", "kcal"),
    HealthMetricType.FLOORS_CLIMBED: ("activities/floors", "activities-floors", "count"),
    HealthMetricType.WEIGHT: ("body/weight", "body-weight", "kg"),
    HealthMetricType.BODY_FAT: ("body/fat", "body-fat", "%"),
    HealthMetricType.BMI: ("body/bmi", "body-bmi", "kg/m2"),
    HealthMetricType.WATER_INTAKE: ("foods/log/water", "foods-log-water", "ml"),
}

_SLEEP_STAGES = ("deep", "light", "rem", "wake")


def _day_start(day: str) -> datetime:
    return datetime.combine(date.fromisoformat(day), time.min, tzinfo=timezone.utc)


def _to_number(value: object) -> float | int | None:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return int(number) if number.is_integer() else number


class FitbitConnector(OAuthConnector):
    """Fitbit connector (OAuth2 + Web API time series)."""

    SOURCE = WearableDataSource.FITBIT
    DISPLAY_NAME = "Fitbit"

    AUTHORIZATION_ENDPOINT = "https://www.fitbit.com/oauth2/authorize"
    TOKEN_ENDPOINT = "https://api.fitbit.com/oauth2/token"
    REVOKE_ENDPOINT = "https://api.fitbit.com/oauth2/revoke"
    DEFAULT_SCOPES = (
        "activity",
        "heartrate",
        "location",
        "nutrition",
        "profile",
        "settings",
        "sleep",
        "social",
        "weight",
    )

    SUPPORTED_METRICS = frozenset(
        {
            HealthMetricType.STEPS,
            HealthMetricType.DISTANCE,
            HealthMetricType.ACTIVE_MINUTES,
            HealthMetricType.CALORIES_BURNED,
            HealthMetricType.FLOORS_CLIMBED,
            HealthMetricType.HEART_RATE,
            HealthMetricType.SLEEP_SESSION,
            HealthMetricType.SLEEP_STAGES,
            HealthMetricType.WEIGHT,
            HealthMetricType.BODY_FAT,
            HealthMetricType.BMI,
            HealthMetricType.WATER_INTAKE,
        }
    )

    @property
    def fitbit_user_id(self) -> str | None:
        """Fitbit's encoded user id from the token response."""
        if self._tokens is None:
            return None
        return self._tokens.extra.get("user_id")

    def _client_auth(self, data: dict[str, str]) -> tuple[dict[str, str], httpx.Auth | None]:
        return (
            {**data, "client_id": self.oauth.client_id},
            httpx.BasicAuth(self.oauth.client_id, self.oauth.client_secret),
        )

    async def _fetch(
        self, metric_type: HealthMetricType, start: datetime, end: datetime
    ) -> list[HealthDataPoint]:
        start_day = start.date().isoformat()
        end_day = end.date().isoformat()
        if metric_type is HealthMetricType.HEART_RATE:
            return await self._fetch_resting_heart_rate(start_day, end_day)
        if metric_type in (HealthMetricType.SLEEP_SESSION, HealthMetricType.SLEEP_STAGES):
            return await self._fetch_sleep(metric_type, start_day, end_day)
        return await self._fetch_time_series(metric_type, start_day, end_day)

    async def _fetch_time_series(
        self, metric_type: HealthMetricType, start_day: str, end_day: str
    ) -> list[HealthDataPoint]:
        resource, key, unit = _TIME_SERIES[metric_type]
        data = await self._get(
            f"{_FITBIT_API_BASE}/1/user/-/{resource}/date/{start_day}/{end_day}.json"
        )

        synced_at = self._clock()
        points: list[HealthDataPoint] = []
        for entry in data.get(key, []):
            value = _to_number(entry.get("value"))
            if value is None:
                continue
            points.append(
                self._make_point(
                    metric_type,
                    _day_start(entry["dateTime"]),
                    value,
                    unit,
                    user_id=self.user_id,
                    sync_timestamp=synced_at,
                )
            )
        return points

    async def _fetch_resting_heart_rate(
        self, start_day: str, end_day: str
    ) -> list[HealthDataPoint]:
        data = await self._get(
            f"{_FITBIT_API_BASE}/1/user/-/activities/heart/date/{start_day}/{end_day}.json"
        )

        synced_at = self._clock()
        points: list[HealthDataPoint] = []
        for entry in data.get("activities-heart", []):
            resting = _to_number((entry.get("value") or {}).get("restingHeartRate"))
            if resting is None:
                # no resting rate on days the tracker was not worn
                continue
            points.append(
                self._make_point(
                    HealthMetricType.HEART_RATE,
                    _day_start(entry["dateTime"]),
                    resting,
                    "bpm",
                    user_id=self.user_id,
                    sync_timestamp=synced_at,
                    metadata={"kind": "resting"},
                )
            )
        return points

    async def _fetch_sleep(
        self, metric_type: HealthMetricType, start_day: str, end_day: str
    ) -> list[HealthDataPoint]:
        data = await self._get(
            f"{_FITBIT_API_BASE}/1.2/user/-/sleep/date/{start_day}/{end_day}.json"
        )

        synced_at = self._clock()
        points: list[HealthDataPoint] = []
        for log in data.get("sleep", []):
            started = parse_timestamp(log.get("startTime"))
            if started is None:
                continue
            metadata = {"log_id": log.get("logId"), "date_of_sleep": log.get("dateOfSleep")}

            if metric_type is HealthMetricType.SLEEP_SESSION:
                minutes = _to_number(log.get("minutesAsleep"))
                if minutes is None:
                    continue
                value: object = minutes
            else:
                summary = (log.get("levels") or {}).get("summary") or {}
                value = {
                    stage: summary[stage].get("minutes", 0)
                    for stage in _SLEEP_STAGES
                    if stage in summary
                }
                if not value:
                    # classic logs only carry asleep/restless/awake
                    continue

            points.append(
                self._make_point(
                    metric_type,
                    started,
                    value,
                    "min",
                    user_id=self.user_id,
                    sync_timestamp=synced_at,
                    metadata=metadata,
                )
            )
        return points
