"""Tests for sync passes: fan-out, processing pipeline, failures and scheduling."""

from __future__ import annotations

import asyncio
import shutil
from datetime import timedelta

import pytest

from healthsync.services.backup_storage import LocalBackupStorage
from healthsync.services.encryption import FieldEncryptor
from healthsync.wearables.anomaly_detector import AnomalyDetector
from healthsync.wearables.backup import BackupManager
from healthsync.wearables.base import (
    BatteryOptimizationLevel,
    ConnectorError,
    HealthMetricType,
    WearableDataSource,
)
from healthsync.wearables.battery import BatteryOptimizer, StaticBatteryProvider
from healthsync.wearables.config_loader import BackupConfig, StorageLocation, SyncConfig
from healthsync.wearables.normalizer import DataNormalizer
from healthsync.wearables.store import HealthDataStore
from healthsync.wearables.sync.manager import (
    ANOMALY_DETECTED,
    BACKUP_ERROR,
    FETCH_TIMEOUT,
    INVALID_DATA,
    SYNC_ERROR,
    SYNC_WINDOW,
    UNEXPECTED_ERROR,
    DataSyncManager,
)
from healthsync.wearables.sync_logger import SyncLogger
from healthsync.wearables.tests.conftest import TEST_NOW, FakeClock, FakeConnector, make_point
from healthsync.wearables.validator import DataValidator

FITBIT = WearableDataSource.FITBIT
GOOGLE = WearableDataSource.GOOGLE_FIT


@pytest.fixture
def store() -> HealthDataStore:
    return HealthDataStore()


@pytest.fixture
def validator(clock: FakeClock) -> DataValidator:
    return DataValidator(clock=clock)


@pytest.fixture
def manager(
    clock: FakeClock,
    store: HealthDataStore,
    validator: DataValidator,
    local_storage: LocalBackupStorage,
    encryptor: FieldEncryptor,
    battery_provider: StaticBatteryProvider,
) -> DataSyncManager:
    config = SyncConfig()
    return DataSyncManager(
        config,
        SyncLogger(clock=clock),
        validator,
        DataNormalizer(),
        AnomalyDetector(),
        store,
        BackupManager(
            BackupConfig(),
            store,
            {StorageLocation.LOCAL: local_storage},
            encryptor=encryptor,
            clock=clock,
        ),
        BatteryOptimizer(BatteryOptimizationLevel.MEDIUM, battery_provider),
        clock=clock,
        fetch_timeout_seconds=0.2,
    )


def _steps(n: int = 3) -> list:
    return [
        make_point(HealthMetricType.STEPS, 500 + i, timestamp=TEST_NOW - timedelta(hours=i + 1))
        for i in range(n)
    ]


class TestSyncNow:
    @pytest.mark.asyncio
    async def test_end_to_end_steps(self, manager: DataSyncManager, store: HealthDataStore) -> None:
        connector = FakeConnector(FITBIT, {HealthMetricType.STEPS: _steps(3)})
        manager.register_connector(FITBIT, connector)

        status = await manager.sync_now([HealthMetricType.STEPS])

        stats = status.last_sync_stats
        assert stats.total_synced == 3
        assert stats.synced_by_metric_type == {HealthMetricType.STEPS: 3}
        assert stats.errors == []
        assert len(store) == 3
        assert status.last_sync_time == TEST_NOW
        assert status.next_sync_time is None

    @pytest.mark.asyncio
    async def test_requested_scope_respected(self, manager: DataSyncManager) -> None:
        connector = FakeConnector(
            FITBIT,
            {
                HealthMetricType.STEPS: _steps(2),
                HealthMetricType.HEART_RATE: [make_point(HealthMetricType.HEART_RATE, 70, "bpm")],
            },
        )
        manager.register_connector(FITBIT, connector)

        stats = (await manager.sync_now([HealthMetricType.STEPS])).last_sync_stats

        assert stats.synced_by_metric_type[HealthMetricType.STEPS] > 0
        assert stats.synced_by_metric_type.get(HealthMetricType.HEART_RATE, 0) == 0
        assert [c[0] for c in connector.fetch_calls] == [HealthMetricType.STEPS]

    @pytest.mark.asyncio
    async def test_fetch_window_is_one_day(self, manager: DataSyncManager) -> None:
        connector = FakeConnector(FITBIT, {HealthMetricType.STEPS: []})
        manager.register_connector(FITBIT, connector)
        await manager.sync_now()
        (_, start, end) = connector.fetch_calls[0]
        assert end == TEST_NOW
        assert start == TEST_NOW - SYNC_WINDOW

    @pytest.mark.asyncio
    async def test_only_supported_metrics_fetched(self, manager: DataSyncManager) -> None:
        fitbit = FakeConnector(FITBIT, {HealthMetricType.STEPS: []})
        google = FakeConnector(GOOGLE, {HealthMetricType.HEART_RATE: []})
        manager.register_connector(FITBIT, fitbit)
        manager.register_connector(GOOGLE, google)

        await manager.sync_now()

        assert [c[0] for c in fitbit.fetch_calls] == [HealthMetricType.STEPS]
        assert [c[0] for c in google.fetch_calls] == [HealthMetricType.HEART_RATE]

    @pytest.mark.asyncio
    async def test_enabled_metrics_filter_default_set(self, manager: DataSyncManager) -> None:
        manager.update_config(SyncConfig(enabled_metrics=[HealthMetricType.HEART_RATE]))
        connector = FakeConnector(
            FITBIT, {HealthMetricType.STEPS: [], HealthMetricType.HEART_RATE: []}
        )
        manager.register_connector(FITBIT, connector)
        await manager.sync_now()
        assert [c[0] for c in connector.fetch_calls] == [HealthMetricType.HEART_RATE]

    @pytest.mark.asyncio
    async def test_zero_connectors(self, manager: DataSyncManager) -> None:
        status = await manager.sync_now()
        assert status.last_sync_stats is None
        assert status.last_sync_time is None

    @pytest.mark.asyncio
    async def test_resynced_points_deduplicated(
        self, manager: DataSyncManager, store: HealthDataStore
    ) -> None:
        manager.register_connector(FITBIT, FakeConnector(FITBIT, {HealthMetricType.STEPS: _steps(2)}))
        await manager.sync_now()
        await manager.sync_now()
        assert len(store) == 2


class TestFailures:
    @pytest.mark.asyncio
    async def test_partial_failure_yields_one_tagged_error(
        self, manager: DataSyncManager, store: HealthDataStore
    ) -> None:
        fitbit = FakeConnector(
            FITBIT,
            {
                HealthMetricType.STEPS: _steps(2),
                HealthMetricType.HEART_RATE: ConnectorError("upstream 500"),
            },
        )
        manager.register_connector(FITBIT, fitbit)

        status = await manager.sync_now([HealthMetricType.STEPS, HealthMetricType.HEART_RATE])

        stats = status.last_sync_stats
        assert stats.total_synced == 2
        (error,) = stats.errors
        assert error.code == SYNC_ERROR
        assert error.source is FITBIT
        assert error.metric_type is HealthMetricType.HEART_RATE
        assert "upstream 500" in error.message

    @pytest.mark.asyncio
    async def test_failing_connector_does_not_stop_others(self, manager: DataSyncManager) -> None:
        manager.register_connector(
            FITBIT, FakeConnector(FITBIT, {HealthMetricType.STEPS: RuntimeError("boom")})
        )
        manager.register_connector(GOOGLE, FakeConnector(GOOGLE, {HealthMetricType.STEPS: _steps(1)}))
        stats = (await manager.sync_now()).last_sync_stats
        assert stats.total_synced == 1
        assert [e.source for e in stats.errors] == [FITBIT]

    @pytest.mark.asyncio
    async def test_fetch_timeout(self, manager: DataSyncManager) -> None:
        manager.register_connector(
            FITBIT, FakeConnector(FITBIT, {HealthMetricType.STEPS: []}, delay=1.0)
        )
        stats = (await manager.sync_now()).last_sync_stats
        (error,) = stats.errors
        assert error.code == FETCH_TIMEOUT
        assert error.metric_type is HealthMetricType.STEPS

    @pytest.mark.asyncio
    async def test_invalid_points_become_warnings(
        self, manager: DataSyncManager, store: HealthDataStore
    ) -> None:
        points = [
            make_point(HealthMetricType.HEART_RATE, 70, "bpm"),
            make_point(HealthMetricType.HEART_RATE, 400, "bpm", point_id="bad"),
        ]
        manager.register_connector(FITBIT, FakeConnector(FITBIT, {HealthMetricType.HEART_RATE: points}))
        stats = (await manager.sync_now()).last_sync_stats
        assert stats.total_synced == 1
        (warning,) = stats.warnings
        assert warning.code == INVALID_DATA
        assert "bad" not in store

    @pytest.mark.asyncio
    async def test_anomalies_flagged_and_stored(
        self, manager: DataSyncManager, store: HealthDataStore
    ) -> None:
        points = [
            make_point(HealthMetricType.HEART_RATE, 70, "bpm", timestamp=TEST_NOW - timedelta(minutes=60 - i))
            for i in range(10)
        ]
        spike = make_point(HealthMetricType.HEART_RATE, 180, "bpm", timestamp=TEST_NOW - timedelta(minutes=5))
        manager.register_connector(
            FITBIT, FakeConnector(FITBIT, {HealthMetricType.HEART_RATE: points + [spike]})
        )
        stats = (await manager.sync_now()).last_sync_stats
        assert stats.anomalies_detected == 1
        assert [w.code for w in stats.warnings] == [ANOMALY_DETECTED]
        assert stats.total_synced == 11
        assert spike.id in store

    @pytest.mark.asyncio
    async def test_normalized_before_storing(
        self, manager: DataSyncManager, store: HealthDataStore
    ) -> None:
        manager.register_connector(
            FITBIT,
            FakeConnector(FITBIT, {HealthMetricType.DISTANCE: [make_point(HealthMetricType.DISTANCE, 5, "km")]}),
        )
        await manager.sync_now()
        (stored,) = store.points()
        assert (stored.value, stored.unit) == (5000, "m")


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_sync_runs_once(self, manager: DataSyncManager) -> None:
        connector = FakeConnector(FITBIT, {HealthMetricType.STEPS: _steps(1)}, delay=0.05)
        manager.register_connector(FITBIT, connector)

        await asyncio.gather(manager.sync_now(), manager.sync_now())

        assert len(connector.fetch_calls) == 1

    @pytest.mark.asyncio
    async def test_next_pass_runs_after_first_finishes(self, manager: DataSyncManager) -> None:
        connector = FakeConnector(FITBIT, {HealthMetricType.STEPS: _steps(1)})
        manager.register_connector(FITBIT, connector)
        await manager.sync_now()
        await manager.sync_now()
        assert len(connector.fetch_calls) == 2


class TestBackfill:
    @pytest.mark.asyncio
    async def test_uses_historical_window(self, manager: DataSyncManager) -> None:
        manager.update_config(SyncConfig(historical_data_days=30))
        connector = FakeConnector(FITBIT, {HealthMetricType.STEPS: []})
        manager.register_connector(FITBIT, connector)
        await manager.backfill_history()
        (_, start, _) = connector.fetch_calls[0]
        assert start == TEST_NOW - timedelta(days=30)

    @pytest.mark.asyncio
    async def test_disabled(self, manager: DataSyncManager) -> None:
        manager.update_config(SyncConfig(sync_historical_data=False))
        connector = FakeConnector(FITBIT, {HealthMetricType.STEPS: []})
        manager.register_connector(FITBIT, connector)
        await manager.backfill_history()
        assert connector.fetch_calls == []

    @pytest.mark.asyncio
    async def test_single_platform(self, manager: DataSyncManager) -> None:
        fitbit = FakeConnector(FITBIT, {HealthMetricType.STEPS: []})
        google = FakeConnector(GOOGLE, {HealthMetricType.STEPS: []})
        manager.register_connector(FITBIT, fitbit)
        manager.register_connector(GOOGLE, google)
        await manager.backfill_history(GOOGLE)
        assert fitbit.fetch_calls == []
        assert len(google.fetch_calls) == 1


class TestScheduling:
    @pytest.mark.asyncio
    async def test_start_runs_immediate_pass(self, manager: DataSyncManager) -> None:
        connector = FakeConnector(FITBIT, {HealthMetricType.STEPS: []})
        manager.register_connector(FITBIT, connector)
        await manager.start_sync()
        try:
            assert manager.is_scheduled
            assert len(connector.fetch_calls) == 1
            assert manager.get_status().is_running is True
        finally:
            manager.stop_sync()
        assert manager.get_status().is_running is False
        assert manager.get_status().next_sync_time is None

    @pytest.mark.asyncio
    async def test_scheduled_pass_skipped_on_low_battery(
        self, manager: DataSyncManager, battery_provider: StaticBatteryProvider
    ) -> None:
        connector = FakeConnector(FITBIT, {HealthMetricType.STEPS: []})
        manager.register_connector(FITBIT, connector)
        battery_provider.set(10.0)
        await manager.run_scheduled_pass()
        assert connector.fetch_calls == []

    @pytest.mark.asyncio
    async def test_scheduled_pass_runs_when_charging(
        self, manager: DataSyncManager, battery_provider: StaticBatteryProvider
    ) -> None:
        connector = FakeConnector(FITBIT, {HealthMetricType.STEPS: []})
        manager.register_connector(FITBIT, connector)
        battery_provider.set(10.0, is_charging=True)
        await manager.run_scheduled_pass()
        assert len(connector.fetch_calls) == 1

    @pytest.mark.asyncio
    async def test_manual_sync_ignores_battery(
        self, manager: DataSyncManager, battery_provider: StaticBatteryProvider
    ) -> None:
        connector = FakeConnector(FITBIT, {HealthMetricType.STEPS: []})
        manager.register_connector(FITBIT, connector)
        battery_provider.set(1.0)
        await manager.sync_now()
        assert len(connector.fetch_calls) == 1


class TestBackupAfterSync:
    @pytest.mark.asyncio
    async def test_backup_taken_when_data_synced(
        self, manager: DataSyncManager, local_storage: LocalBackupStorage
    ) -> None:
        manager.register_connector(FITBIT, FakeConnector(FITBIT, {HealthMetricType.STEPS: _steps(1)}))
        await manager.sync_now()
        assert len(local_storage.list()) == 1

    @pytest.mark.asyncio
    async def test_no_backup_when_nothing_synced(
        self, manager: DataSyncManager, local_storage: LocalBackupStorage
    ) -> None:
        manager.register_connector(FITBIT, FakeConnector(FITBIT, {HealthMetricType.STEPS: []}))
        await manager.sync_now()
        assert local_storage.list() == []


class TestPassLevelErrors:
    @pytest.mark.asyncio
    async def test_backup_failure_recorded_and_data_kept(
        self, manager: DataSyncManager, store: HealthDataStore, local_storage: LocalBackupStorage
    ) -> None:
        shutil.rmtree(local_storage.directory)
        manager.register_connector(FITBIT, FakeConnector(FITBIT, {HealthMetricType.STEPS: _steps(2)}))

        status = await manager.sync_now()

        stats = status.last_sync_stats
        assert stats.total_synced == 2
        (error,) = stats.errors
        assert error.code == BACKUP_ERROR
        assert error.source is None
        assert len(store) == 2
        assert status.last_sync_time == TEST_NOW

    @pytest.mark.asyncio
    async def test_unexpected_error_still_yields_status(
        self, manager: DataSyncManager, validator: DataValidator
    ) -> None:
        def broken_rule(point: object) -> bool:
            raise RuntimeError("rule exploded")

        validator.add_validation_rule(HealthMetricType.STEPS, broken_rule)
        connector = FakeConnector(FITBIT, {HealthMetricType.STEPS: _steps(1)})
        manager.register_connector(FITBIT, connector)

        status = await manager.sync_now()

        (error,) = status.last_sync_stats.errors
        assert error.code == UNEXPECTED_ERROR
        assert "rule exploded" in error.message
        assert status.last_sync_time == TEST_NOW

        # The pass released its single-flight guard
        await manager.sync_now()
        assert len(connector.fetch_calls) == 2


class TestNextSyncTime:
    @pytest.mark.asyncio
    async def test_set_while_scheduled(self, manager: DataSyncManager) -> None:
        manager.register_connector(FITBIT, FakeConnector(FITBIT, {HealthMetricType.STEPS: []}))
        await manager.start_sync()
        try:
            assert manager.get_status().next_sync_time == TEST_NOW + timedelta(minutes=30)
        finally:
            manager.stop_sync()

    @pytest.mark.asyncio
    async def test_stop_during_pass_leaves_no_next_time(self, manager: DataSyncManager) -> None:
        def stop_then_return() -> list:
            manager.stop_sync()
            return _steps(1)

        manager.register_connector(FITBIT, FakeConnector(FITBIT, {HealthMetricType.STEPS: stop_then_return}))
        await manager.start_sync()

        status = manager.get_status()
        assert status.is_running is False
        assert status.next_sync_time is None
        assert status.last_sync_stats.total_synced == 1
        assert manager.is_scheduled is False
