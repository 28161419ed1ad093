"""Shared fixtures, fake connectors and data point factories for sync engine tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import pytest

from healthsync.config import Settings
from healthsync.services.backup_storage import LocalBackupStorage
from healthsync.services.encryption import FieldEncryptor
from healthsync.wearables.base import (
    HealthDataPoint,
    HealthMetricType,
    WearableConnector,
    WearableDataSource,
)
from healthsync.wearables.battery import StaticBatteryProvider
from healthsync.wearables.config_loader import StorageLocation
from healthsync.wearables.integration import WearableIntegration

# Canonical test instant
TEST_NOW = datetime(2026, 2, 23, 12, 0, 0, tzinfo=timezone.utc)
TEST_USER_ID = "user-123"


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = TEST_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def make_point(
    metric_type: HealthMetricType = HealthMetricType.STEPS,
    value: Any = 1000,
    unit: str = "count",
    *,
    source: WearableDataSource = WearableDataSource.FITBIT,
    timestamp: datetime | None = None,
    sync_timestamp: datetime | None = None,
    point_id: str | None = None,
) -> HealthDataPoint:
    ts = timestamp or TEST_NOW - timedelta(hours=1)
    return HealthDataPoint(
        id=point_id or f"{source.value}_{metric_type.value}_{int(ts.timestamp() * 1000)}",
        user_id=TEST_USER_ID,
        source=source,
        metric_type=metric_type,
        timestamp=ts,
        value=value,
        unit=unit,
        sync_timestamp=sync_timestamp or TEST_NOW,
    )


class FakeConnector(WearableConnector):
    """In-memory connector with scripted responses.

    ``responses`` maps a metric to a list of points, an exception to raise,
    or a callable returning either.  ``delay`` makes every fetch sleep
    first.
    """

    DISPLAY_NAME = "Fake"

    def __init__(
        self,
        source: WearableDataSource,
        responses: dict[HealthMetricType, Any] | None = None,
        *,
        delay: float = 0.0,
    ) -> None:
        self.SOURCE = source
        self.responses = dict(responses or {})
        self.delay = delay
        self.fetch_calls: list[tuple[HealthMetricType, datetime | None, datetime | None]] = []
        self.closed = False
        self.revoked = False

    def get_supported_metrics(self) -> frozenset[HealthMetricType]:
        return frozenset(self.responses)

    async def initialize(self) -> bool:
        return True

    async def authorize(self) -> bool:
        return True

    async def is_authorized(self) -> bool:
        return not self.revoked

    async def revoke_authorization(self) -> bool:
        self.revoked = True
        return True

    async def fetch_data(
        self,
        metric_type: HealthMetricType,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> list[HealthDataPoint]:
        self.fetch_calls.append((metric_type, start_time, end_time))
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.responses[metric_type]
        if callable(response) and not isinstance(response, BaseException):
            response = response()
        if isinstance(response, BaseException):
            raise response
        return list(response)

    async def aclose(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def point_factory() -> Callable[..., HealthDataPoint]:
    return make_point


@pytest.fixture
def encryptor() -> FieldEncryptor:
    return FieldEncryptor(FieldEncryptor.generate_key())


@pytest.fixture
def local_storage(tmp_path: Path) -> LocalBackupStorage:
    return LocalBackupStorage(tmp_path / "backups")


@pytest.fixture
def battery_provider() -> StaticBatteryProvider:
    return StaticBatteryProvider(level=100.0)


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        backup_dir=str(tmp_path / "backups"),
        sync_fetch_timeout_seconds=0.5,
    )


@pytest.fixture
def integration(
    clock: FakeClock,
    test_settings: Settings,
    local_storage: LocalBackupStorage,
    battery_provider: StaticBatteryProvider,
    encryptor: FieldEncryptor,
) -> WearableIntegration:
    """Facade wired to temp-dir backups, a fixed clock and a full battery."""
    return WearableIntegration(
        settings=test_settings,
        clock=clock,
        battery_provider=battery_provider,
        storages={StorageLocation.LOCAL: local_storage},
        encryptor=encryptor,
    )
