"""Wearable sync orchestration for HealthSync.

Modules:
    manager   — DataSyncManager: connector registry, single-flight sync passes
    scheduler — PeriodicSync: asyncio ticker driving scheduled passes
"""
