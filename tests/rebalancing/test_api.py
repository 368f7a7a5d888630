import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from rebalancing.api import create_app
from rebalancing.models import Holding
from rebalancing.notifications import LoggingNotificationSink, NotificationDispatcher
from rebalancing.repository import InMemoryRepository
from rebalancing.service import RebalancingService
from services.protocols import AdapterRegistry, PaperExecutionAdapter

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}

STRATEGY = {
    "name": "Core",
    "dimension": "asset",
    "target_allocation": [
        {"id": "ETH", "target_percentage": 60},
        {"id": "USDC", "target_percentage": 40},
    ],
}


async def _no_sleep(_delay):
    return None


@pytest.fixture
def client() -> TestClient:
    repository = InMemoryRepository()
    repository.set_holdings("alice", [Holding(asset="ETH", balance_usd=7000), Holding(asset="USDC", balance_usd=3000)])
    service = RebalancingService(
        repository,
        registry=AdapterRegistry(default=PaperExecutionAdapter()),
        dispatcher=NotificationDispatcher(LoggingNotificationSink()),
        sleep=_no_sleep,
    )
    return TestClient(create_app(service))


def _create_strategy(client: TestClient, **overrides) -> dict:
    payload = dict(STRATEGY, **overrides)
    response = client.post("/api/strategies", json=payload, headers=ALICE)
    assert response.status_code == 201
    return response.json()


def test_health_does_not_require_user(client: TestClient):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_missing_user_header_is_rejected(client: TestClient):
    response = client.get("/api/strategies")
    assert response.status_code == 401


def test_strategy_crud_and_ownership(client: TestClient):
    strategy = _create_strategy(client)

    assert strategy["user"] == "alice"
    assert strategy["status"] == "active"
    listed = client.get("/api/strategies", headers=ALICE).json()["strategies"]
    assert [item["id"] for item in listed] == [strategy["id"]]

    assert client.get(f"/api/strategies/{strategy['id']}", headers=ALICE).status_code == 200
    forbidden = client.get(f"/api/strategies/{strategy['id']}", headers=BOB)
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "UNAUTHORIZED"
    missing = client.get("/api/strategies/nope", headers=ALICE)
    assert missing.status_code == 404


def test_invalid_strategy_returns_validation_error(client: TestClient):
    response = client.post(
        "/api/strategies",
        json=dict(STRATEGY, target_allocation=[{"id": "ETH", "target_percentage": 90}]),
        headers=ALICE,
    )

    assert response.status_code == 400
    body = response.json()["error"]
    assert body["code"] == "VALIDATION_ERROR"
    assert body["details"] == {"sum": 90.0}


def test_rebalance_approval_flow(client: TestClient):
    strategy = _create_strategy(client)

    created = client.post(f"/api/strategies/{strategy['id']}/rebalance", headers=ALICE)
    assert created.status_code == 201
    operation = created.json()
    assert operation["status"] == "waiting_approval"
    assert operation["initiated_by"] == "api"
    assert operation["simulation"]["result"] == "success"

    early = client.post(f"/api/operations/{operation['id']}/execute", headers=ALICE)
    assert early.status_code == 409
    assert early.json()["error"]["code"] == "INVALID_TRANSITION"

    missing_flag = client.post(f"/api/operations/{operation['id']}/approve", json={}, headers=ALICE)
    assert missing_flag.status_code == 400

    approved = client.post(
        f"/api/operations/{operation['id']}/approve", json={"approved": True, "reason": "ok"}, headers=ALICE
    )
    assert approved.status_code == 200
    assert approved.json()["status"] == "completed"

    listed = client.get("/api/operations", params={"status": "completed"}, headers=ALICE).json()["operations"]
    assert [item["id"] for item in listed] == [operation["id"]]
    bad_filter = client.get("/api/operations", params={"status": "sideways"}, headers=ALICE)
    assert bad_filter.status_code == 400

    stats = client.get("/api/performance", headers=ALICE).json()
    assert stats["total_operations"] == 1
    assert stats["success_rate"] == 100.0

    metrics = client.get("/api/metrics").json()
    assert any(item["name"] == "operations_total" for item in metrics["counters"])


def test_manual_simulation_and_cancel(client: TestClient):
    strategy = _create_strategy(client)
    operation = client.post(
        f"/api/strategies/{strategy['id']}/rebalance", json={"auto_advance": False}, headers=ALICE
    ).json()
    assert operation["status"] == "pending"

    cancelled = client.post(f"/api/operations/{operation['id']}/cancel", json={"reason": "later"}, headers=ALICE)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"

    again = client.post(f"/api/operations/{operation['id']}/cancel", headers=ALICE)
    assert again.status_code == 409
    assert client.get(f"/api/operations/{operation['id']}", headers=BOB).status_code == 403


def test_trigger_endpoints_return_reports(client: TestClient):
    _create_strategy(client, trigger="threshold")

    threshold = client.post("/api/triggers/threshold").json()
    periodic = client.post("/api/triggers/periodic").json()

    assert (threshold["trigger"], threshold["processed"], threshold["rebalanced"]) == ("threshold", 1, 1)
    assert (periodic["trigger"], periodic["processed"]) == ("periodic", 0)


def test_risk_scoring_and_allocation_endpoints(client: TestClient):
    protocol = client.post(
        "/api/risk/protocols/score",
        json={"protocol": {"id": "perpx", "category": "derivatives", "tvl_usd": 500_000}},
        headers=ALICE,
    )
    assert protocol.status_code == 200
    assert protocol.json()["tier"] == "high"

    invalid = client.post("/api/risk/protocols/score", json={"protocol": {"name": "no id"}}, headers=ALICE)
    assert invalid.status_code == 400

    opportunity = client.post(
        "/api/risk/opportunities/score",
        json={"id": "aave-usdc", "protocol_id": "aave", "apy": 4.0, "tvl_usd": 50_000_000},
        headers=ALICE,
    )
    assert opportunity.status_code == 200

    plan = client.post(
        "/api/allocations",
        json={
            "preference": "medium",
            "total_amount": 1000,
            "opportunities": [{"id": "aave-usdc", "protocol_id": "aave", "apy": 4.0, "tvl_usd": 50_000_000}],
        },
        headers=ALICE,
    )
    assert plan.status_code == 200
    assert plan.json()["status"] == "success"

    bad_preference = client.post("/api/allocations", json={"preference": "yolo", "opportunities": []}, headers=ALICE)
    assert bad_preference.status_code == 400
