import pytest
from fastapi.testclient import TestClient

from glucoscope.api import analytics as analytics_api
from glucoscope.core.settings import AnalyticsConfig, Settings, get_settings
from glucoscope.main import app
from glucoscope.models.entries import ActiveProfile, GlucoseReading, ScheduleEntry, Treatment
from glucoscope.models.statistics import GlycemicThresholds
from glucoscope.services.ar2 import Ar2StateStore
from glucoscope.services.rollup import RollupCache, RollupRepository
from glucoscope.services.store import InMemoryStore, StoreError

NOW = 1_700_006_400_000 + 12 * 3_600_000
MIN = 60_000
DAY = 24 * 60 * MIN


class FailingStore(InMemoryStore):
    async def fetch_readings(self, account, start, end):
        raise StoreError("Store returned status 503")

    async def fetch_treatments(self, account, start, end):
        raise StoreError("Store returned status 503")


@pytest.fixture
def store():
    store = InMemoryStore()
    store.add_readings("alice", [GlucoseReading(mills=m, sgv=140) for m in range(NOW - DAY, NOW + 1, 5 * MIN)])
    store.add_treatments(
        "alice",
        [
            Treatment(_id="b1", eventType="Meal Bolus", mills=NOW - 30 * MIN, insulin=3, carbs=40),
            Treatment(_id="tb", eventType="Temp Basal", mills=NOW - 60 * MIN, duration=30, absolute=2.0),
        ],
    )
    store.profiles["alice"] = ActiveProfile(dia=3, basal=[ScheduleEntry(time="00:00", value=1.0)])
    return store


@pytest.fixture
def config():
    return AnalyticsConfig()


@pytest.fixture
def client(store, config):
    cache = RollupCache()
    app.dependency_overrides[analytics_api.get_store] = lambda: store
    app.dependency_overrides[analytics_api.get_config] = lambda: config
    app.dependency_overrides[analytics_api.get_rollup_cache] = lambda: cache
    app.dependency_overrides[analytics_api.get_rollup_repository] = lambda: RollupRepository()
    app.dependency_overrides[analytics_api.get_ar2_store] = lambda: Ar2StateStore(config)
    app.dependency_overrides[get_settings] = lambda: Settings()
    yield TestClient(app)
    app.dependency_overrides = {}


def test_health(client):
    response = client.get("/api/health/")
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert client.head("/api/health/").status_code == 200


def test_full_health_reports_memory_mode(client):
    data = client.get("/api/health/full").json()
    assert data["ok"] is True
    assert data["database"]["mode"] == "memory"
    assert data["store"]["configured"] is False


def test_statistics_uses_legacy_field_names(client, mocker):
    mocker.patch("glucoscope.services.rollup._now_ms", return_value=NOW)
    response = client.get("/api/analytics/alice/statistics")
    assert response.status_code == 200
    data = response.json()

    day = data["lastDay"]
    assert day["hasSufficientData"] is True
    assert day["entryCount"] == 289
    assert day["analytics"]["basicStats"]["mean"] == 140
    assert day["analytics"]["timeInRange"]["percentages"]["target"] == 100
    assert "mage" in day["analytics"]["glycemicVariability"]
    assert day["treatmentSummary"]["totals"]["food"]["carbs"] == 40
    assert data["last3Days"]["periodDays"] == 3
    assert data["lastUpdated"] == NOW


def test_statistics_served_from_cache(client, store, mocker):
    mocker.patch("glucoscope.services.rollup._now_ms", return_value=NOW)
    client.get("/api/analytics/alice/statistics")
    client.get("/api/analytics/alice/statistics")
    assert store.fetch_count == 1

    client.get("/api/analytics/alice/statistics", params={"refresh": True})
    assert store.fetch_count == 2


def test_iob_endpoint(client):
    response = client.get("/api/analytics/alice/iob", params={"at": NOW})
    assert response.status_code == 200
    data = response.json()
    assert 0 < data["iob"]["iob"] < 3
    assert data["iob"]["displayLine"].startswith("IOB: ")
    assert data["iob"]["lastBolus"]["id"] == "b1"
    assert data["iob"]["basaliob"] > 0
    assert "diagnostics" not in data["iob"]
    assert data["cob"]["cob"] > 0
    assert data["cob"]["displayLine"].startswith("COB: ")


def test_basal_endpoint(client):
    response = client.get("/api/analytics/alice/basal", params={"start": NOW - 2 * 60 * MIN, "end": NOW})
    assert response.status_code == 200
    data = response.json()
    assert data["tempbasal"] == 1.0
    assert data["scheduledbasal"] == 1.5
    assert data["totalbasal"] == 2.5
    assert any(segment["kind"] == "temp" for segment in data["segments"])


def test_ar2_endpoint(client):
    response = client.get("/api/analytics/alice/ar2", params={"now": NOW + MIN})
    assert response.status_code == 200
    data = response.json()
    assert data["phase"] == "forecasting"
    assert len(data["predicted"]) == 3
    assert data["predicted"][0]["mgdl"] == 140
    assert data["displayLine"] == "BG 15m: 140 mg/dl"
    assert "avgLoss" in data


def test_ar2_endpoint_stale_data(client):
    data = client.get("/api/analytics/alice/ar2", params={"now": NOW + 2 * 60 * MIN}).json()
    assert data["predicted"] == []
    assert data["phase"] == "idle"


def test_distribution_and_hourly(client, mocker):
    mocker.patch("glucoscope.api.analytics._now_ms", return_value=NOW)
    distribution = client.get("/api/analytics/alice/distribution").json()
    assert distribution == [{"range": "140-150", "count": 289, "percent": 100.0}]
    hourly = client.get("/api/analytics/alice/hourly", params={"days": 1}).json()
    assert len(hourly) == 24
    assert all(hour["mean"] == 140 for hour in hourly)


def test_store_failure_maps_to_502(client):
    app.dependency_overrides[analytics_api.get_store] = lambda: FailingStore()
    response = client.get("/api/analytics/alice/iob", params={"at": NOW})
    assert response.status_code == 502
    assert "503" in response.json()["detail"]


def test_bad_configuration_maps_to_422(client):
    bad = AnalyticsConfig(thresholds=GlycemicThresholds(target_top=300))
    app.dependency_overrides[analytics_api.get_config] = lambda: bad
    response = client.get("/api/analytics/alice/statistics")
    assert response.status_code == 422
    assert "Thresholds" in response.json()["detail"]


def test_statistics_recomputed_after_readings_are_added(client, store, mocker):
    mocker.patch("glucoscope.services.rollup._now_ms", return_value=NOW)
    first = client.get("/api/analytics/alice/statistics").json()["lastDay"]

    # late uploads inside the already computed day
    store.add_readings("alice", [GlucoseReading(mills=NOW - 2 * MIN - i * 5 * MIN, sgv=300) for i in range(10)])
    second = client.get("/api/analytics/alice/statistics").json()["lastDay"]

    assert store.fetch_count == 2
    assert first["entryCount"] == 289
    assert second["entryCount"] == 299
    assert second["analytics"]["basicStats"]["mean"] > first["analytics"]["basicStats"]["mean"]


def test_statistics_recomputed_when_store_has_newer_readings(client, store, mocker):
    now = mocker.patch("glucoscope.services.rollup._now_ms", return_value=NOW)
    client.get("/api/analytics/alice/statistics")

    # written by another process, so no ingestion callback fires
    store.readings["alice"].append(GlucoseReading(mills=NOW + 5 * MIN, sgv=300))
    now.return_value = NOW + 5 * MIN
    data = client.get("/api/analytics/alice/statistics").json()

    assert store.fetch_count == 2
    assert data["lastUpdated"] == NOW + 5 * MIN
    assert data["lastDay"]["analytics"]["basicStats"]["max"] == 300
