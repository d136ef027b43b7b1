import hashlib

import httpx
import pytest
import respx

from glucoscope.core.errors import UpstreamFetchError
from glucoscope.models.entries import GlucoseReading, Treatment
from glucoscope.services.store import InMemoryStore, NightscoutStore, StoreError

BASE = "https://example.com"
T0 = 1_700_006_400_000
MIN = 60_000
DAY_MS = 86_400_000


def make_store(**kwargs) -> NightscoutStore:
    return NightscoutStore(base_url=BASE, client=httpx.AsyncClient(base_url=BASE), **kwargs)


@pytest.mark.asyncio
@respx.mock
async def test_fetch_readings_parses_and_sorts():
    route = respx.get(f"{BASE}/api/v1/entries/sgv.json").mock(
        return_value=httpx.Response(
            200,
            json=[
                {"sgv": 130, "date": T0 + 5 * MIN, "direction": "Flat", "device": "xDrip"},
                {"sgv": 120, "date": T0, "noise": 1},
            ],
        )
    )
    store = make_store()
    readings = await store.fetch_readings("alice", T0, T0 + 10 * MIN)

    assert route.called
    params = route.calls.last.request.url.params
    assert params["find[date][$gte]"] == str(T0)
    assert params["find[date][$lte]"] == str(T0 + 10 * MIN)
    assert [r.sgv for r in readings] == [120, 130]
    assert readings[1].direction == "Flat"


@pytest.mark.asyncio
@respx.mock
async def test_malformed_records_are_skipped():
    respx.get(f"{BASE}/api/v1/entries/sgv.json").mock(
        return_value=httpx.Response(200, json=[{"sgv": 120, "date": T0}, {"direction": "Flat"}])
    )
    readings = await make_store().fetch_readings("alice", T0, T0 + MIN)
    assert len(readings) == 1


@pytest.mark.asyncio
@respx.mock
async def test_fetch_treatments_uses_iso_bounds():
    route = respx.get(f"{BASE}/api/v1/treatments.json").mock(
        return_value=httpx.Response(
            200,
            json=[
                {"_id": "t1", "eventType": "Meal Bolus", "created_at": "2023-11-15T00:00:00Z", "insulin": 2, "carbs": 20}
            ],
        )
    )
    treatments = await make_store().fetch_treatments("alice", T0, T0 + 60 * MIN)
    params = route.calls.last.request.url.params
    assert params["find[created_at][$gte]"] == "2023-11-15T00:00:00Z"
    assert params["find[created_at][$lte]"] == "2023-11-15T01:00:00Z"
    assert treatments[0].id == "t1"
    assert treatments[0].timestamp_ms == T0


@pytest.mark.asyncio
@respx.mock
async def test_http_error_raises_store_error():
    respx.get(f"{BASE}/api/v1/entries/sgv.json").mock(return_value=httpx.Response(500, text="boom"))
    with pytest.raises(StoreError) as excinfo:
        await make_store().fetch_readings("alice", T0, T0 + MIN)
    assert isinstance(excinfo.value, UpstreamFetchError)
    assert "500" in str(excinfo.value)


@pytest.mark.asyncio
@respx.mock
async def test_transport_error_raises_store_error():
    respx.get(f"{BASE}/api/v1/treatments.json").mock(side_effect=httpx.ConnectError("down"))
    with pytest.raises(StoreError):
        await make_store().fetch_treatments("alice", T0, T0 + MIN)


@pytest.mark.asyncio
@respx.mock
async def test_invalid_json_raises_store_error():
    respx.get(f"{BASE}/api/v1/entries/sgv.json").mock(return_value=httpx.Response(200, text="<html>"))
    with pytest.raises(StoreError):
        await make_store().fetch_readings("alice", T0, T0 + MIN)


@pytest.mark.asyncio
@respx.mock
async def test_api_secret_is_sent_hashed():
    route = respx.get(f"{BASE}/api/v1/entries/sgv.json").mock(return_value=httpx.Response(200, json=[]))
    store = NightscoutStore(base_url=BASE, api_secret="plain-secret")
    try:
        assert await store.fetch_readings("alice", T0, T0 + MIN) == []
    finally:
        await store.aclose()
    sent = route.calls.last.request.headers["API-SECRET"]
    assert sent == hashlib.sha1(b"plain-secret").hexdigest()


@pytest.mark.asyncio
@respx.mock
async def test_jwt_token_sent_as_bearer():
    token = "aaaaaaaaaa.bbbbbbbbbbbb.cccccccccc"
    route = respx.get(f"{BASE}/api/v1/entries/sgv.json").mock(return_value=httpx.Response(200, json=[]))
    store = NightscoutStore(base_url=BASE, token=token)
    try:
        await store.fetch_readings("alice", T0, T0 + MIN)
    finally:
        await store.aclose()
    assert route.calls.last.request.headers["Authorization"] == f"Bearer {token}"


@pytest.mark.asyncio
@respx.mock
async def test_fetch_profile_picks_default_profile():
    respx.get(f"{BASE}/api/v1/profile.json").mock(
        return_value=httpx.Response(
            200,
            json=[
                {
                    "defaultProfile": "Work",
                    "store": {
                        "Home": {"dia": 4},
                        "Work": {"dia": 5, "basal": [{"time": "00:00", "value": 0.9}], "carbs_hr": 25},
                    },
                }
            ],
        )
    )
    profile = await make_store().fetch_profile("alice")
    assert profile.dia == 5
    assert profile.carbs_hr == 25
    assert profile.basal_rate_at(T0) == 0.9


@pytest.mark.asyncio
async def test_in_memory_store_filters_by_window():
    store = InMemoryStore()
    store.add_readings("alice", [GlucoseReading(mills=T0 + i * 5 * MIN, sgv=100 + i) for i in range(10)])
    store.add_treatments(
        "alice",
        [
            Treatment(_id="in", eventType="Bolus", mills=T0 + 10 * MIN, insulin=1),
            Treatment(_id="out", eventType="Bolus", mills=T0 - 60 * MIN, insulin=1),
        ],
    )
    readings = await store.fetch_readings("alice", T0 + 10 * MIN, T0 + 20 * MIN)
    assert [r.sgv for r in readings] == [102, 103, 104]
    treatments = await store.fetch_treatments("alice", T0, T0 + 60 * MIN)
    assert [t.id for t in treatments] == ["in"]
    assert await store.fetch_readings("bob", T0, T0 + DAY_MS) == []
    assert store.fetch_count == 2


@pytest.mark.asyncio
@respx.mock
async def test_latest_reading_mills_asks_for_one_entry():
    route = respx.get(f"{BASE}/api/v1/entries/sgv.json").mock(
        return_value=httpx.Response(200, json=[{"sgv": 140, "date": T0 + 30 * MIN}])
    )
    assert await make_store().latest_reading_mills("alice") == T0 + 30 * MIN
    assert route.calls.last.request.url.params["count"] == "1"


@pytest.mark.asyncio
async def test_in_memory_store_notifies_subscribers_of_new_readings():
    store = InMemoryStore()
    seen = []
    store.subscribe(lambda account, mills: seen.append((account, mills)))
    store.add_readings("alice", [GlucoseReading(mills=T0 + 10 * MIN, sgv=120), GlucoseReading(mills=T0, sgv=110)])
    store.add_readings("alice", [])

    assert seen == [("alice", T0)]
    assert await store.latest_reading_mills("alice") == T0 + 10 * MIN
    assert await store.latest_reading_mills("bob") is None
