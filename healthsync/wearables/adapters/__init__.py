"""Wearable platform connectors for HealthSync.

Each connector implements the WearableConnector ABC and handles:
- Platform setup and availability checks
- Authorization (OAuth2 for REST platforms, local permissions for HealthKit)
- Fetching one metric over a time window as canonical HealthDataPoints

Available connectors:
    AppleHealthConnector — Apple HealthKit (XML export)
    GoogleFitConnector   — Google Fit REST API (OAuth2)
    FitbitConnector      — Fitbit Web API (OAuth2)
    SimulatedConnector   — Synthetic data for any platform (demo mode)
"""

from __future__ import annotations

from typing import Any, Mapping

from healthsync.wearables.adapters.apple_health import AppleHealthConnector
from healthsync.wearables.adapters.fitbit import FitbitConnector
from healthsync.wearables.adapters.google_fit import GoogleFitConnector
from healthsync.wearables.adapters.simulated import SimulatedConnector
from healthsync.wearables.base import (
    UnsupportedPlatformError,
    WearableConnector,
    WearableDataSource,
    utc_now,
)

__all__ = [
    "AppleHealthConnector",
    "GoogleFitConnector",
    "FitbitConnector",
    "SimulatedConnector",
    "CONNECTOR_REGISTRY",
    "create_connector",
]

# Registry: platform → connector class
CONNECTOR_REGISTRY: dict[WearableDataSource, type[WearableConnector]] = {
    WearableDataSource.APPLE_HEALTH: AppleHealthConnector,
    WearableDataSource.GOOGLE_FIT: GoogleFitConnector,
    WearableDataSource.FITBIT: FitbitConnector,
}


def create_connector(
    source: WearableDataSource | str,
    auth_config: Mapping[str, Any] | None = None,
    **kwargs: Any,
) -> WearableConnector:
    """Build an uninitialized connector for a platform.

    Args:
        source:      Platform enum or its string value.
        auth_config: Platform credentials and settings.  ``{"simulate": True}``
                     returns a SimulatedConnector for the platform instead.
        **kwargs:    Passed to the connector (``clock``, ``http_client``,
                     ``export_path``).

    Raises:
        UnsupportedPlatformError: If no connector is registered for ``source``.
    """
    try:
        platform = WearableDataSource(source)
    except ValueError as exc:
        raise UnsupportedPlatformError(
            f"No connector registered for platform '{source}'. "
            f"Available: {[s.value for s in CONNECTOR_REGISTRY]}"
        ) from exc
    if platform not in CONNECTOR_REGISTRY:
        raise UnsupportedPlatformError(f"No connector registered for platform '{platform.value}'")

    connector_cls = CONNECTOR_REGISTRY[platform]
    cfg = dict(auth_config or {})
    if cfg.get("simulate"):
        return SimulatedConnector(
            platform,
            connector_cls.SUPPORTED_METRICS,  # type: ignore[attr-defined]
            cfg,
            clock=kwargs.get("clock", utc_now),
        )
    return connector_cls(cfg, **kwargs)
