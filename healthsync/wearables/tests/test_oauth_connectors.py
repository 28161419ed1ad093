"""Tests for the Google Fit and Fitbit connectors against a mocked HTTP transport."""

from __future__ import annotations

import json
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from healthsync.wearables.adapters.fitbit import FitbitConnector
from healthsync.wearables.adapters.google_fit import GoogleFitConnector
from healthsync.wearables.base import (
    ConnectorError,
    ConnectorNotInitializedError,
    HealthMetricType,
    NotAuthorizedError,
    TokenState,
    UnsupportedMetricError,
    WearableDataSource,
)
from healthsync.wearables.tests.conftest import TEST_NOW, FakeClock

_START_MS = int((TEST_NOW - timedelta(hours=2)).timestamp() * 1000)


class Router:
    """Records requests and answers them from a handler map keyed by URL path."""

    def __init__(self, routes: dict[str, object]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        answer = self.routes.get(request.url.path)
        if answer is None:
            return httpx.Response(404, json={"error": "not found"})
        if isinstance(answer, httpx.Response):
            return answer
        return httpx.Response(200, json=answer)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def _token_body(access: str = "new-access") -> dict:
    return {
        "access_token": access,
        "refresh_token": "new-refresh",
        "expires_in": 3600,
        "token_type": "Bearer",
        "user_id": "ABC123",
    }


def _google(router: Router, clock: FakeClock, **auth: object) -> GoogleFitConnector:
    config = {"client_id": "gid", "client_secret": "gsecret", "redirect_uri": "https://app/cb", **auth}
    return GoogleFitConnector(config, http_client=router.client(), clock=clock)


def _fitbit(router: Router, clock: FakeClock, **auth: object) -> FitbitConnector:
    config = {"client_id": "fid", "client_secret": "fsecret", "redirect_uri": "https://app/cb", **auth}
    return FitbitConnector(config, http_client=router.client(), clock=clock)


# ---------------------------------------------------------------------------
# Token lifecycle (shared OAuth base)
# ---------------------------------------------------------------------------


class TestTokenLifecycle:
    def test_authorization_url(self, clock: FakeClock) -> None:
        connector = _google(Router({}), clock)
        url = urlparse(connector.authorization_url("xyz"))
        query = parse_qs(url.query)
        assert url.netloc == "accounts.google.com"
        assert query["state"] == ["xyz"]
        assert query["access_type"] == ["offline"]
        assert "fitness.activity.read" in query["scope"][0]

    @pytest.mark.asyncio
    async def test_authorize_before_initialize_fails(self, clock: FakeClock) -> None:
        router = Router({})
        connector = _google(router, clock, auth_code="code")
        assert await connector.authorize() is False
        assert router.requests == []

    @pytest.mark.asyncio
    async def test_fetch_before_initialize_raises(self, clock: FakeClock) -> None:
        connector = _google(Router({}), clock, access_token="saved")
        with pytest.raises(ConnectorNotInitializedError):
            await connector.fetch_data(HealthMetricType.STEPS)

    @pytest.mark.asyncio
    async def test_code_exchange(self, clock: FakeClock) -> None:
        router = Router({"/token": _token_body()})
        connector = _google(router, clock, auth_code="the-code")
        await connector.initialize()

        assert await connector.authorize() is True
        assert connector.token_state is TokenState.AUTHENTICATED
        assert connector.tokens.access_token == "new-access"
        assert connector.tokens.expires_at == TEST_NOW + timedelta(hours=1)

        form = parse_qs(router.requests[0].content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["the-code"]
        assert form["client_secret"] == ["gsecret"]

    @pytest.mark.asyncio
    async def test_no_code_no_token_fails(self, clock: FakeClock) -> None:
        connector = _google(Router({}), clock)
        await connector.initialize()
        assert await connector.authorize() is False
        assert await connector.is_authorized() is False

    @pytest.mark.asyncio
    async def test_failed_exchange_returns_false(self, clock: FakeClock) -> None:
        router = Router({"/token": httpx.Response(400, json={"error": "invalid_grant"})})
        connector = _google(router, clock, auth_code="bad")
        await connector.initialize()
        assert await connector.authorize() is False
        assert connector.token_state is TokenState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_saved_valid_token_used_without_network(self, clock: FakeClock) -> None:
        router = Router({})
        connector = _google(
            router,
            clock,
            access_token="saved",
            expires_at=(TEST_NOW + timedelta(hours=1)).isoformat(),
        )
        await connector.initialize()
        assert await connector.authorize() is True
        assert router.requests == []

    @pytest.mark.asyncio
    async def test_expired_token_refreshed(self, clock: FakeClock) -> None:
        router = Router({"/token": _token_body("refreshed")})
        connector = _google(
            router,
            clock,
            access_token="stale",
            refresh_token="r1",
            expires_at=(TEST_NOW + timedelta(seconds=30)).timestamp(),
        )
        await connector.initialize()
        assert await connector.is_authorized() is True
        assert connector.tokens.access_token == "refreshed"
        form = parse_qs(router.requests[0].content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["r1"]

    @pytest.mark.asyncio
    async def test_failed_refresh_unauthenticates(self, clock: FakeClock) -> None:
        router = Router({"/token": httpx.Response(401, json={})})
        connector = _google(
            router,
            clock,
            access_token="stale",
            refresh_token="r1",
            expires_at=(TEST_NOW - timedelta(minutes=1)).isoformat(),
        )
        await connector.initialize()
        assert await connector.is_authorized() is False
        assert connector.token_state is TokenState.UNAUTHENTICATED
        with pytest.raises(NotAuthorizedError):
            await connector.fetch_data(HealthMetricType.STEPS)

    @pytest.mark.asyncio
    async def test_revoke_clears_state_even_if_call_fails(self, clock: FakeClock) -> None:
        router = Router({"/revoke": httpx.Response(500)})
        connector = _google(router, clock, access_token="saved")
        await connector.initialize()
        assert await connector.revoke_authorization() is True
        assert connector.tokens is None
        assert await connector.is_authorized() is False

    @pytest.mark.asyncio
    async def test_unsupported_metric(self, clock: FakeClock) -> None:
        connector = _google(Router({}), clock, access_token="saved")
        await connector.initialize()
        with pytest.raises(UnsupportedMetricError):
            await connector.fetch_data(HealthMetricType.ECG)


# ---------------------------------------------------------------------------
# Google Fit data
# ---------------------------------------------------------------------------


class TestGoogleFitData:
    @pytest.mark.asyncio
    async def test_steps_from_aggregate(self, clock: FakeClock) -> None:
        router = Router(
            {
                "/fitness/v1/users/me/dataset:aggregate": {
                    "bucket": [
                        {
                            "startTimeMillis": str(_START_MS),
                            "endTimeMillis": str(_START_MS + 3_600_000),
                            "dataset": [
                                {
                                    "point": [
                                        {
                                            "dataTypeName": "com.google.step_count.delta",
                                            "value": [{"intVal": 812}],
                                        }
                                    ]
                                }
                            ],
                        },
                        {"startTimeMillis": str(_START_MS + 3_600_000), "dataset": [{"point": []}]},
                    ]
                }
            }
        )
        connector = _google(router, clock, access_token="saved")
        await connector.initialize()

        points = await connector.fetch_data(
            HealthMetricType.STEPS, TEST_NOW - timedelta(hours=2), TEST_NOW
        )

        assert len(points) == 1
        point = points[0]
        assert point.source is WearableDataSource.GOOGLE_FIT
        assert point.value == 812
        assert point.unit == "count"
        assert point.timestamp == TEST_NOW - timedelta(hours=2)
        assert point.sync_timestamp == TEST_NOW

        request = router.requests[0]
        assert request.headers["Authorization"] == "Bearer saved"
        body = json.loads(request.content)
        assert body["aggregateBy"] == [{"dataTypeName": "com.google.step_count.delta"}]
        assert body["bucketByTime"] == {"durationMillis": 3_600_000}

    @pytest.mark.asyncio
    async def test_point_ids_stable_across_fetches(self, clock: FakeClock) -> None:
        payload = {
            "bucket": [
                {
                    "startTimeMillis": str(_START_MS),
                    "dataset": [{"point": [{"value": [{"fpVal": 72.4}]}]}],
                }
            ]
        }
        router = Router({"/fitness/v1/users/me/dataset:aggregate": payload})
        connector = _google(router, clock, access_token="saved")
        await connector.initialize()
        first = await connector.fetch_data(HealthMetricType.HEART_RATE)
        clock.advance(minutes=30)
        second = await connector.fetch_data(HealthMetricType.HEART_RATE)
        assert first[0].id == second[0].id

    @pytest.mark.asyncio
    async def test_sleep_sessions(self, clock: FakeClock) -> None:
        router = Router(
            {
                "/fitness/v1/users/me/sessions": {
                    "session": [
                        {
                            "id": "s1",
                            "activityType": 72,
                            "startTimeMillis": str(_START_MS - 8 * 3_600_000),
                            "endTimeMillis": str(_START_MS - 30 * 60_000),
                        },
                        {"id": "run", "activityType": 8, "startTimeMillis": "0", "endTimeMillis": "1"},
                    ]
                }
            }
        )
        connector = _google(router, clock, access_token="saved")
        await connector.initialize()
        (point,) = await connector.fetch_data(HealthMetricType.SLEEP_SESSION)
        assert point.value == 450
        assert point.unit == "min"
        assert router.requests[0].url.params["activityType"] == "72"

    @pytest.mark.asyncio
    async def test_401_becomes_not_authorized(self, clock: FakeClock) -> None:
        router = Router({"/fitness/v1/users/me/dataset:aggregate": httpx.Response(401)})
        connector = _google(router, clock, access_token="saved")
        await connector.initialize()
        with pytest.raises(NotAuthorizedError):
            await connector.fetch_data(HealthMetricType.STEPS)
        assert connector.token_state is TokenState.UNAUTHENTICATED
        assert await connector.is_authorized() is False
        assert connector.tokens is None

    @pytest.mark.asyncio
    async def test_401_keeps_refresh_token_for_silent_refresh(self, clock: FakeClock) -> None:
        router = Router(
            {
                "/fitness/v1/users/me/dataset:aggregate": httpx.Response(401),
                "/token": _token_body("fresh"),
            }
        )
        connector = _google(router, clock, access_token="stale", refresh_token="r1")
        await connector.initialize()
        with pytest.raises(NotAuthorizedError):
            await connector.fetch_data(HealthMetricType.STEPS)
        assert connector.token_state is TokenState.UNAUTHENTICATED
        assert connector.tokens.access_token == ""

        assert await connector.is_authorized() is True
        assert connector.tokens.access_token == "fresh"

    @pytest.mark.asyncio
    async def test_server_error_becomes_connector_error(self, clock: FakeClock) -> None:
        router = Router({"/fitness/v1/users/me/dataset:aggregate": httpx.Response(503)})
        connector = _google(router, clock, access_token="saved")
        await connector.initialize()
        with pytest.raises(ConnectorError, match="503"):
            await connector.fetch_data(HealthMetricType.STEPS)


# ---------------------------------------------------------------------------
# Fitbit data
# ---------------------------------------------------------------------------


class TestFitbit:
    @pytest.mark.asyncio
    async def test_token_request_uses_basic_auth(self, clock: FakeClock) -> None:
        router = Router({"/oauth2/token": _token_body()})
        connector = _fitbit(router, clock, auth_code="code")
        await connector.initialize()
        assert await connector.authorize() is True

        request = router.requests[0]
        assert request.headers["Authorization"].startswith("Basic ")
        assert "client_secret" not in parse_qs(request.content.decode())
        assert connector.fitbit_user_id == "ABC123"

    @pytest.mark.asyncio
    async def test_steps_time_series(self, clock: FakeClock) -> None:
        router = Router(
            {
                "/1/user/-/activities/steps/date/2026-02-22/2026-02-23.json": {
                    "activities-steps": [
                        {"dateTime": "2026-02-22", "value": "10432"},
                        {"dateTime": "2026-02-23", "value": "2210"},
                    ]
                }
            }
        )
        connector = _fitbit(router, clock, access_token="saved")
        await connector.initialize()
        points = await connector.fetch_data(
            HealthMetricType.STEPS, TEST_NOW - timedelta(days=1), TEST_NOW
        )
        assert [p.value for p in points] == [10432, 2210]
        assert points[0].timestamp.isoformat() == "2026-02-22T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_distance_reported_in_km(self, clock: FakeClock) -> None:
        router = Router(
            {
                "/1/user/-/activities/distance/date/2026-02-23/2026-02-23.json": {
                    "activities-distance": [{"dateTime": "2026-02-23", "value": "5.25"}]
                }
            }
        )
        connector = _fitbit(router, clock, access_token="saved")
        await connector.initialize()
        (point,) = await connector.fetch_data(
            HealthMetricType.DISTANCE, TEST_NOW - timedelta(hours=1), TEST_NOW
        )
        assert point.value == 5.25
        assert point.unit == "km"

    @pytest.mark.asyncio
    async def test_resting_heart_rate(self, clock: FakeClock) -> None:
        router = Router(
            {
                "/1/user/-/activities/heart/date/2026-02-22/2026-02-23.json": {
                    "activities-heart": [
                        {"dateTime": "2026-02-22", "value": {"restingHeartRate": 58}},
                        {"dateTime": "2026-02-23", "value": {"heartRateZones": []}},
                    ]
                }
            }
        )
        connector = _fitbit(router, clock, access_token="saved")
        await connector.initialize()
        (point,) = await connector.fetch_data(
            HealthMetricType.HEART_RATE, TEST_NOW - timedelta(days=1), TEST_NOW
        )
        assert point.value == 58
        assert point.metadata["kind"] == "resting"

    @pytest.mark.asyncio
    async def test_sleep_session_and_stages(self, clock: FakeClock) -> None:
        sleep = {
            "sleep": [
                {
                    "logId": 1,
                    "dateOfSleep": "2026-02-23",
                    "startTime": "2026-02-22T23:10:00.000",
                    "minutesAsleep": 412,
                    "levels": {
                        "summary": {
                            "deep": {"minutes": 80},
                            "light": {"minutes": 220},
                            "rem": {"minutes": 112},
                            "wake": {"minutes": 35},
                        }
                    },
                }
            ]
        }
        router = Router({"/1.2/user/-/sleep/date/2026-02-22/2026-02-23.json": sleep})
        connector = _fitbit(router, clock, access_token="saved")
        await connector.initialize()
        start = TEST_NOW - timedelta(days=1)

        (session,) = await connector.fetch_data(HealthMetricType.SLEEP_SESSION, start, TEST_NOW)
        (stages,) = await connector.fetch_data(HealthMetricType.SLEEP_STAGES, start, TEST_NOW)
        assert session.value == 412
        assert stages.value == {"deep": 80, "light": 220, "rem": 112, "wake": 35}
