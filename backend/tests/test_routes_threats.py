from datetime import timedelta

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from threatwatch.api.v1 import routes_threats
from threatwatch.api.v1.routes_health import router as health_router
from threatwatch.schemas.threats import CollectionStatus, KillChainStage

from conftest import BASE_TIME


class FakeScheduler:
    def __init__(self):
        self.triggers = 0
        self.rebackfills = 0
        self.ranges = []
        self.has_collected_once = True

    def trigger_collection(self):
        self.triggers += 1

    def request_rebackfill(self):
        self.rebackfills += 1

    @property
    def status(self):
        return CollectionStatus(
            has_collected_once=True,
            last_sync=BASE_TIME,
            backfill_cursor=BASE_TIME - timedelta(days=3),
            backfill_complete=False,
        )

    async def collect_range(self, start, end, max_pages=50):
        self.ranges.append((start, end, max_pages))
        return 7, 3


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def client(scheduler, repository, monkeypatch) -> TestClient:
    monkeypatch.setattr(routes_threats, "threat_repository", repository)
    app = FastAPI()
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(routes_threats.router, prefix="/api/v1")
    app.state.scheduler = scheduler
    return TestClient(app)


def test_health(client) -> None:
    body = client.get("/api/v1/health").json()

    assert body["status"] == "ok"
    assert body["collector_running"] is True


def test_trigger_collection(client, scheduler) -> None:
    resp = client.post("/api/v1/threats/collect")

    assert resp.status_code == 202
    assert scheduler.triggers == 1


def test_status(client) -> None:
    body = client.get("/api/v1/threats/status").json()

    assert body["has_collected_once"] is True
    assert body["backfill_complete"] is False


def test_collect_range(client, scheduler) -> None:
    resp = client.post(
        "/api/v1/threats/collect-range",
        json={"start": "2024-02-20T00:00:00Z", "end": "2024-02-21T00:00:00Z", "max_pages": 5},
    )

    assert resp.status_code == 200
    assert resp.json() == {"collected": 7, "saved": 3}
    start, end, max_pages = scheduler.ranges[0]
    assert start.tzinfo is None
    assert end - start == timedelta(days=1)
    assert max_pages == 5


def test_collect_range_rejects_inverted_range(client, scheduler) -> None:
    resp = client.post(
        "/api/v1/threats/collect-range",
        json={"start": "2024-02-21T00:00:00", "end": "2024-02-20T00:00:00"},
    )

    assert resp.status_code == 422
    assert scheduler.ranges == []


def test_rebackfill(client, scheduler) -> None:
    assert client.post("/api/v1/threats/rebackfill").status_code == 202
    assert scheduler.rebackfills == 1


def test_list_events_with_filters(client, repository, make_event) -> None:
    repository.save_events(
        [
            make_event(id="a", dest_port=22, kill_chain_stage=KillChainStage.RECONNAISSANCE),
            make_event(id="b", dest_port=80),
        ]
    )

    resp = client.get(
        "/api/v1/threats/events",
        params={
            "start": (BASE_TIME - timedelta(hours=1)).isoformat(),
            "end": (BASE_TIME + timedelta(hours=1)).isoformat(),
            "stage": "reconnaissance",
        },
    )

    assert resp.status_code == 200
    assert [e["id"] for e in resp.json()] == ["a"]


def test_list_sequences(client, repository, make_event) -> None:
    repository.save_events(
        [
            make_event(kill_chain_stage=KillChainStage.RECONNAISSANCE),
            make_event(kill_chain_stage=KillChainStage.POST_EXPLOITATION,
                       timestamp=BASE_TIME + timedelta(minutes=1)),
        ]
    )

    resp = client.get(
        "/api/v1/threats/sequences",
        params={"end": (BASE_TIME + timedelta(hours=1)).isoformat()},
    )

    [sequence] = resp.json()
    assert [s["stage"] for s in sequence["stages"]] == ["reconnaissance", "post_exploitation"]


def test_inverted_query_window_is_rejected(client) -> None:
    resp = client.get(
        "/api/v1/threats/patterns",
        params={"start": BASE_TIME.isoformat(), "end": (BASE_TIME - timedelta(hours=1)).isoformat()},
    )

    assert resp.status_code == 422


def test_missing_scheduler_is_503() -> None:
    app = FastAPI()
    app.include_router(routes_threats.router, prefix="/api/v1")

    resp = TestClient(app).post("/api/v1/threats/collect")

    assert resp.status_code == 503
