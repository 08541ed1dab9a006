"""
HTTP tests for the subscription and billing routers
"""
import pytest
from httpx import ASGITransport, AsyncClient

from database import get_db
from main import app
from routers.dependencies import get_clock, get_gateway
from tests.helpers import FakeGateway

HEADERS = {"X-User-Id": "user-1"}


@pytest.fixture
async def client(test_db, clock):
    gateway = FakeGateway()

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_gateway] = lambda: gateway

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_list_plans(client, free_plan, basic_plan, premium_plan):
    response = await client.get("/api/subscription/plans")

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert [plan["name"] for plan in body["data"]] == ["FREE", "BASIC", "PREMIUM"]
    assert body["data"][2]["is_recurring"] is True


@pytest.mark.asyncio
async def test_requests_without_user_header_are_rejected(client):
    response = await client.get("/api/subscription/current")

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_current_subscription_is_null_on_free_tier(client, free_plan):
    response = await client.get("/api/subscription/current", headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["data"] is None


@pytest.mark.asyncio
async def test_activate_then_read_current(client, basic_plan):
    response = await client.post("/api/subscription/activate", json={"plan_id": basic_plan.id}, headers=HEADERS)

    assert response.status_code == 201
    created = response.json()["data"]
    assert created["status"] == "ACTIVE"
    assert created["plan"]["name"] == "BASIC"
    assert created["days_remaining"] == 31

    current = (await client.get("/api/subscription/current", headers=HEADERS)).json()["data"]
    assert current["id"] == created["id"]


@pytest.mark.asyncio
async def test_activate_unknown_plan_is_404(client):
    response = await client.post("/api/subscription/activate", json={"plan_id": "nope"}, headers=HEADERS)

    assert response.status_code == 404
    assert response.json()["error"] == "PLAN_NOT_FOUND"


@pytest.mark.asyncio
async def test_cancel_and_reactivate_endpoints(client, basic_plan):
    sub_id = (await client.post("/api/subscription/activate", json={"plan_id": basic_plan.id},
                                headers=HEADERS)).json()["data"]["id"]

    response = await client.post(f"/api/subscription/{sub_id}/cancel", json={"reason": "exams over"},
                                 headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["data"]["cancel_at_period_end"] is True

    response = await client.post(f"/api/subscription/{sub_id}/reactivate", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["data"]["cancel_at_period_end"] is False

    response = await client.post(f"/api/subscription/{sub_id}/cancel", json={"at_period_end": False},
                                 headers=HEADERS)
    assert response.json()["data"]["status"] == "CANCELED"

    response = await client.post(f"/api/subscription/{sub_id}/cancel", headers=HEADERS)
    assert response.status_code == 409
    assert response.json()["data"]["current_status"] == "CANCELED"


@pytest.mark.asyncio
async def test_cannot_cancel_someone_elses_subscription(client, basic_plan):
    sub_id = (await client.post("/api/subscription/activate", json={"plan_id": basic_plan.id},
                                headers=HEADERS)).json()["data"]["id"]

    response = await client.post(f"/api/subscription/{sub_id}/cancel", headers={"X-User-Id": "intruder"})

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_feature_check(client, free_plan):
    response = await client.get("/api/subscription/features/ai_tutor", headers=HEADERS)

    assert response.json()["data"] == {"feature": "ai_tutor", "has_access": False}


@pytest.mark.asyncio
async def test_usage_recording_enforces_quota(client, test_db, free_plan):
    free_plan.max_usage_per_period = 2
    await test_db.flush()

    for _ in range(2):
        response = await client.post("/api/subscription/usage", json={"resource_type": "CASE_COMPLETION"},
                                     headers=HEADERS)
        assert response.status_code == 201

    response = await client.post("/api/subscription/usage", json={"resource_type": "CASE_COMPLETION"},
                                 headers=HEADERS)
    assert response.status_code == 429
    assert response.json()["error"] == "USAGE_LIMIT_EXCEEDED"

    # Unenforced writes are still recorded
    response = await client.post(
        "/api/subscription/usage",
        json={"resource_type": "CASE_COMPLETION", "enforce": False, "metadata": {"source": "import"}},
        headers=HEADERS,
    )
    assert response.status_code == 201
    assert response.json()["data"]["metadata"] == {"source": "import"}

    snapshot = (await client.get("/api/subscription/usage/CASE_COMPLETION", headers=HEADERS)).json()["data"]
    assert snapshot == {"used": 3, "limit": 2, "remaining": 0, "percentage": 150, "can_access": False}


@pytest.mark.asyncio
async def test_unknown_resource_type_is_400(client, free_plan):
    response = await client.get("/api/subscription/usage/DOWNLOAD", headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["error"] == "UNKNOWN_RESOURCE_TYPE"


@pytest.mark.asyncio
async def test_usage_summary(client, free_plan):
    await client.post("/api/subscription/usage", json={"resource_type": "AI_REQUEST", "quantity": 2},
                      headers=HEADERS)

    summary = (await client.get("/api/subscription/usage", headers=HEADERS)).json()["data"]

    assert summary["usage"]["AI_REQUEST"] == 2
    assert summary["total"] == 2


@pytest.mark.asyncio
async def test_checkout_endpoint(client, user, basic_plan):
    response = await client.post("/api/billing/checkout", json={"plan_id": basic_plan.id}, headers=HEADERS)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["redirect_url"].startswith("https://checkout.test/pay/")
    assert data["reference"].startswith("SUB_user-1_")


@pytest.mark.asyncio
async def test_checkout_for_unknown_user_is_404(client, basic_plan):
    response = await client.post("/api/billing/checkout", json={"plan_id": basic_plan.id}, headers=HEADERS)

    assert response.status_code == 404
    assert response.json()["error"] == "USER_NOT_FOUND"


@pytest.mark.asyncio
async def test_webhook_always_answers_200(client, monkeypatch):
    from config.settings import settings
    monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")

    response = await client.post("/api/billing/webhook", content=b"{}", headers={"stripe-signature": "bogus"})

    assert response.status_code == 200
    assert response.json()["ok"] is False
    assert response.json()["received"] is True
