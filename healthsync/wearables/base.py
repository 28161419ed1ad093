"""Base classes and canonical data models for the HealthSync wearable engine.

Every platform connector must subclass WearableConnector and return the
canonical HealthDataPoint model.  These types are the single source of
truth consumed by the validator, normalizer, anomaly detector, sync
manager, backup manager and API layer.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger("healthsync.wearables")

#: Injected time source.  Every time-dependent component accepts one.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: object) -> datetime | None:
    """Coerce a datetime or ISO-8601 string to an aware UTC datetime.

    Naive values are assumed to be UTC.  Returns None if the value is
    missing or unparseable.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class WearableDataSource(str, Enum):
    """Supported wearable platforms."""

    APPLE_HEALTH = "apple_health"
    GOOGLE_FIT = "google_fit"
    FITBIT = "fitbit"


class HealthMetricType(str, Enum):
    """Health metrics that can be synchronized."""

    # Activity
    STEPS = "steps"
    DISTANCE = "distance"
    ACTIVE_MINUTES = "active_minutes"
    CALORIES_BURNED = "calories_burned"
    FLOORS_CLIMBED = "floors_climbed"

    # Vitals
    HEART_RATE = "heart_rate"
    BLOOD_PRESSURE = "blood_pressure"
    BLOOD_OXYGEN = "blood_oxygen"
    RESPIRATORY_RATE = "respiratory_rate"
    BODY_TEMPERATURE = "body_temperature"

    # Sleep
    SLEEP_SESSION = "sleep_session"
    SLEEP_STAGES = "sleep_stages"

    # Body
    WEIGHT = "weight"
    BODY_FAT = "body_fat"
    BMI = "bmi"

    # Nutrition
    WATER_INTAKE = "water_intake"
    NUTRITION = "nutrition"

    # Other
    ECG = "ecg"
    STRESS_LEVEL = "stress_level"
    MINDFULNESS_MINUTES = "mindfulness_minutes"


class BatteryOptimizationLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _LOG_LEVEL_RANK[self]


_LOG_LEVEL_RANK: dict[LogLevel, int] = {
    LogLevel.DEBUG: 0,
    LogLevel.INFO: 1,
    LogLevel.WARN: 2,
    LogLevel.ERROR: 3,
}


class TokenState(str, Enum):
    """Lifecycle of an OAuth credential held by a connector."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ConnectorError(Exception):
    """Base class for platform connector failures."""


class ConnectorNotInitializedError(ConnectorError):
    """Raised when a connector is used before ``initialize()`` succeeded."""


class NotAuthorizedError(ConnectorError):
    """Raised when data is requested without a valid credential."""


class UnsupportedMetricError(ConnectorError):
    """Raised when a connector is asked for a metric it cannot provide."""


class UnsupportedPlatformError(ConnectorError):
    """Raised when no connector exists for a requested platform."""


# ---------------------------------------------------------------------------
# OAuth tokens
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    """OAuth token pair returned after authorization or refresh.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Long-lived token used to obtain a new access_token.
        expires_at:    UTC datetime when the access_token expires.
        token_type:    Token type, typically "Bearer".
        scope:         Granted OAuth scopes.
        extra:         Any additional fields returned by the provider (e.g. user_id).
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: list[str] = field(default_factory=list)
    extra: dict = field(default_factory=dict)

    def is_expired(self, now: datetime, buffer_seconds: int = 0) -> bool:
        """Return True if the access token expires within ``buffer_seconds``.

        Tokens without an expiry never expire.
        """
        if self.expires_at is None:
            return False
        return self.expires_at - timedelta(seconds=buffer_seconds) <= now


# ---------------------------------------------------------------------------
# Canonical data point
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HealthDataPoint:
    """One observation of a health metric, as produced by a connector.

    Data points are immutable once created.  The validator and anomaly
    detector only read them; the normalizer returns a new instance.

    Attributes:
        id:               Unique id (stable across re-syncs of the same sample).
        user_id:          Owning user.
        source:           Platform the point came from.
        metric_type:      Kind of measurement.
        timestamp:        Observation time (UTC); must not be in the future.
        value:            Numeric scalar, or a mapping for structured metrics
                          such as blood pressure ``{"systolic", "diastolic"}``.
        unit:             Unit string as reported (normalized later).
        sync_timestamp:   When the point was fetched; never before ``timestamp``.
        source_device_id: Originating device, if known.
        is_manual_entry:  True when the user typed the value in.
        metadata:         Free-form platform details.
    """

    id: str
    user_id: str
    source: WearableDataSource
    metric_type: HealthMetricType
    timestamp: datetime
    value: Any
    unit: str
    sync_timestamp: datetime
    source_device_id: str | None = None
    is_manual_entry: bool = False
    metadata: dict = field(default_factory=dict)

    @property
    def is_numeric(self) -> bool:
        return isinstance(self.value, (int, float)) and not isinstance(self.value, bool)

    def to_dict(self) -> dict:
        """Return a JSON-serializable dict (ISO timestamps, enum values)."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "source": WearableDataSource(self.source).value,
            "metric_type": HealthMetricType(self.metric_type).value,
            "timestamp": _iso(self.timestamp),
            "value": self.value,
            "unit": self.unit,
            "sync_timestamp": _iso(self.sync_timestamp),
            "source_device_id": self.source_device_id,
            "is_manual_entry": self.is_manual_entry,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HealthDataPoint":
        """Rebuild a point from ``to_dict()`` output.

        Raises:
            KeyError:   If a required field is missing.
            ValueError: If an enum value or timestamp is invalid.
        """
        timestamp = parse_timestamp(data["timestamp"])
        sync_timestamp = parse_timestamp(data["sync_timestamp"])
        if timestamp is None or sync_timestamp is None:
            raise ValueError(f"Invalid timestamps in data point {data.get('id')!r}")
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            source=WearableDataSource(data["source"]),
            metric_type=HealthMetricType(data["metric_type"]),
            timestamp=timestamp,
            value=data["value"],
            unit=data["unit"],
            sync_timestamp=sync_timestamp,
            source_device_id=data.get("source_device_id"),
            is_manual_entry=bool(data.get("is_manual_entry", False)),
            metadata=data.get("metadata") or {},
        )


def _iso(value: object) -> str | None:
    if isinstance(value, datetime):
        return value.isoformat()
    return value if value is None else str(value)


# ---------------------------------------------------------------------------
# Sync outcome records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyncError:
    """A failed operation inside a sync pass.

    ``source`` is None for failures not tied to a platform (backups,
    unexpected errors).
    """

    source: WearableDataSource | None
    code: str
    message: str
    timestamp: datetime
    metric_type: HealthMetricType | None = None


@dataclass(frozen=True)
class SyncWarning:
    """A non-fatal data-quality event (rejected point, anomaly)."""

    source: WearableDataSource | None
    code: str
    message: str
    timestamp: datetime
    metric_type: HealthMetricType | None = None


@dataclass
class SyncStats:
    """Aggregated outcome of the most recent sync pass."""

    total_synced: int = 0
    synced_by_metric_type: dict[HealthMetricType, int] = field(default_factory=dict)
    errors: list[SyncError] = field(default_factory=list)
    warnings: list[SyncWarning] = field(default_factory=list)
    anomalies_detected: int = 0


@dataclass
class SyncStatus:
    """Transient sync status held by the sync manager.

    Attributes:
        is_running:        True while periodic sync is scheduled.
        last_sync_time:    Completion time of the last pass.
        next_sync_time:    When the next periodic pass is due.
        connected_sources: Registered platforms, in registration order.
        last_sync_stats:   Stats of the last pass (None before the first).
    """

    is_running: bool = False
    last_sync_time: datetime | None = None
    next_sync_time: datetime | None = None
    connected_sources: list[WearableDataSource] = field(default_factory=list)
    last_sync_stats: SyncStats | None = None

    def copy(self) -> "SyncStatus":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        """JSON-friendly representation used by the HTTP layer."""
        data = asdict(self)
        data["connected_sources"] = [s.value for s in self.connected_sources]
        if self.last_sync_stats is not None:
            stats = data["last_sync_stats"]
            stats["synced_by_metric_type"] = {
                HealthMetricType(k).value: v
                for k, v in self.last_sync_stats.synced_by_metric_type.items()
            }
        return data


# ---------------------------------------------------------------------------
# Abstract connector
# ---------------------------------------------------------------------------


class WearableConnector(ABC):
    """Abstract base class for all wearable platform connectors.

    Each platform implements this interface to provide a uniform surface
    for the sync manager and facade.  All I/O methods are coroutines.

    Lifecycle: created uninitialized → ``initialize()`` → ``authorize()``
    → usable for ``fetch_data()`` until revoked or until the credential
    expires and cannot be refreshed.
    """

    #: Platform this connector talks to.
    SOURCE: WearableDataSource

    #: Human-readable name for logging and UI.
    DISPLAY_NAME: str = "Unknown Platform"

    #: Window fetched when no start time is given.
    DEFAULT_FETCH_WINDOW = timedelta(days=7)

    @abstractmethod
    async def initialize(self) -> bool:
        """Perform one-time platform setup.

        Returns:
            False (without raising) if the platform is unavailable in the
            current runtime.
        """

    @abstractmethod
    async def authorize(self) -> bool:
        """Establish a valid access credential.

        Returns:
            True on success.  Never raises for auth failures.
        """

    @abstractmethod
    async def is_authorized(self) -> bool:
        """Cheap check of credential validity (may refresh silently)."""

    @abstractmethod
    async def revoke_authorization(self) -> bool:
        """Invalidate and clear the local credential state."""

    @abstractmethod
    async def fetch_data(
        self,
        metric_type: HealthMetricType,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> list[HealthDataPoint]:
        """Fetch points for one metric within a time window.

        Args:
            metric_type: Metric to fetch; must be supported.
            start_time:  Window start (defaults to ``DEFAULT_FETCH_WINDOW`` ago).
            end_time:    Window end (defaults to now).

        Raises:
            NotAuthorizedError:     If no valid credential is held.
            UnsupportedMetricError: If the metric is not supported.
        """

    @abstractmethod
    def get_supported_metrics(self) -> frozenset[HealthMetricType]:
        """Return the static set of metrics this connector can fetch."""

    async def aclose(self) -> None:
        """Release network resources.  Default: nothing to release."""
        return None

    def supports(self, metric_type: HealthMetricType) -> bool:
        return metric_type in self.get_supported_metrics()

    def _make_point(
        self,
        metric_type: HealthMetricType,
        timestamp: datetime,
        value: Any,
        unit: str,
        *,
        user_id: str,
        sync_timestamp: datetime,
        source_device_id: str | None = None,
        metadata: dict | None = None,
        sample_key: str | None = None,
    ) -> HealthDataPoint:
        """Build a point whose id is stable for the same sample.

        The id is ``{source}_{metric}_{epoch_ms}``, suffixed with
        ``sample_key`` when several samples can share a timestamp.  Re-fetching
        the same sample on a later pass yields the same id.
        """
        point_id = f"{self.SOURCE.value}_{metric_type.value}_{int(timestamp.timestamp() * 1000)}"
        if sample_key:
            point_id = f"{point_id}_{sample_key}"
        return HealthDataPoint(
            id=point_id,
            user_id=user_id,
            source=self.SOURCE,
            metric_type=metric_type,
            timestamp=timestamp,
            value=value,
            unit=unit,
            sync_timestamp=sync_timestamp,
            source_device_id=source_device_id,
            metadata=metadata or {},
        )
