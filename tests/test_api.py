"""Tests for the status API routes."""

from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from burnbot.api.app import create_api_app
from burnbot.models import MetricsSnapshot


@pytest_asyncio.fixture
async def client(components):
    app = create_api_app()
    app.state.store = components["store"]
    app.state.orchestrator = components["orchestrator"]
    app.state.reconciler = components["reconciler"]
    app.state.scheduler = components["scheduler"]

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


class TestReadRoutes:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_status_before_any_run(self, client):
        data = (await client.get("/api/status")).json()

        assert data["scheduler_running"] is False
        assert data["pipeline_running"] is False
        assert data["last_run"] is None
        assert data["last_reconcile"] is None

    @pytest.mark.asyncio
    async def test_rewards_after_run(self, client):
        await client.post("/actions/run")

        rewards = (await client.get("/api/rewards")).json()
        burned = (await client.get("/api/rewards", params={"status": "burned"})).json()
        failed = (await client.get("/api/rewards", params={"status": "failed"})).json()

        assert len(rewards) == 1
        assert rewards[0]["reward_amount"] == "1.0"
        assert [r["id"] for r in burned] == [rewards[0]["id"]]
        assert failed == []

    @pytest.mark.asyncio
    async def test_reward_detail_includes_burn(self, client):
        run = (await client.post("/actions/run")).json()
        reward_id = run["reward"]["id"]

        detail = (await client.get(f"/api/rewards/{reward_id}")).json()

        assert detail["status"] == "burned"
        assert detail["burn"]["reward_id"] == reward_id
        assert detail["burn"]["amount"] == run["burn"]["amount"]

    @pytest.mark.asyncio
    async def test_unknown_reward_and_status(self, client):
        assert (await client.get("/api/rewards/missing")).status_code == 404
        response = await client.get("/api/rewards", params={"status": "lost"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_limit_bounds(self, client):
        assert (await client.get("/api/burns", params={"limit": 0})).status_code == 422
        assert (await client.get("/api/burns", params={"limit": 501})).status_code == 422

    @pytest.mark.asyncio
    async def test_metrics(self, client, components):
        assert (await client.get("/api/metrics")).status_code == 404

        await components["store"].append_metrics(
            MetricsSnapshot(
                total_supply=Decimal("1000"),
                circulating_supply=Decimal("700"),
                reserve_wallet_balance=Decimal("300"),
            )
        )

        latest = (await client.get("/api/metrics")).json()
        history = (await client.get("/api/metrics/history")).json()
        assert latest["reserve_wallet_balance"] == "300"
        assert len(history) == 1
        assert (await client.get("/api/milestones")).json() == []


class TestActions:
    @pytest.mark.asyncio
    async def test_run_endpoint(self, client):
        response = await client.post("/actions/run")

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "done"
        assert data["simulated"] is True

        status = (await client.get("/api/status")).json()
        assert status["last_run"]["run_id"] == data["run_id"]

    @pytest.mark.asyncio
    async def test_run_conflict(self, client, components):
        async with components["orchestrator"]._run_lock:
            response = await client.post("/actions/run")

        assert response.status_code == 409
        assert response.json()["reason"] == "run_in_progress"

    @pytest.mark.asyncio
    async def test_failed_run_is_500(self, client, components):
        components["swap_service"].fail_quotes = True

        response = await client.post("/actions/run")

        assert response.status_code == 500
        assert response.json()["failed_step"] == "swap"

    @pytest.mark.asyncio
    async def test_reconcile_endpoint(self, client):
        response = await client.post("/actions/reconcile")

        assert response.status_code == 200
        assert response.json()["recovered"] == 0

    @pytest.mark.asyncio
    async def test_reconcile_conflict(self, client, components):
        async with components["reconciler"]._reconcile_lock:
            response = await client.post("/actions/reconcile")

        assert response.status_code == 409
