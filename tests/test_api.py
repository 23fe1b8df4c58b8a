"""
HTTP tests for the game, cashout, purchase and admin routes.
"""

import httpx
import pytest

from minetoearn.api.dependencies import get_limiter, get_rail, get_verifier
from minetoearn.api.main import app
from minetoearn.core.config import settings
from minetoearn.services.cashout.payment_rail import SimulatedPaymentRail
from minetoearn.services.purchases import SimulatedPaymentVerifier
from minetoearn.services.rate_limiter import InMemoryRateLimiter

from conftest import WALLET, create_player, get_player, set_global_setting


API = "/api/v1"
PLAYER = {"X-Player-Id": "p1"}
TREASURY = "0x" + "ef" * 20


@pytest.fixture
async def client(database, monkeypatch):
    rail = SimulatedPaymentRail()
    limiter = InMemoryRateLimiter()
    verifier = SimulatedPaymentVerifier()
    app.dependency_overrides[get_rail] = lambda: rail
    app.dependency_overrides[get_limiter] = lambda: limiter
    app.dependency_overrides[get_verifier] = lambda: verifier
    monkeypatch.setattr(settings, "treasury_address", TREASURY)
    monkeypatch.setattr(settings, "admin_api_key", "operator-key")

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        http.rail = rail
        yield http

    app.dependency_overrides.clear()


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["services"]["database"] == "healthy"


async def test_state_creates_player(client):
    response = await client.get(f"{API}/game/state", headers=PLAYER)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["player_state"]["player_id"] == "p1"
    assert [m["machine_type"] for m in data["machines"]] == ["mini"]
    assert "machines" in data["config"]


async def test_action_round_trip(client):
    state = (await client.get(f"{API}/game/state", headers=PLAYER)).json()["data"]
    machine_id = state["machines"][0]["id"]

    response = await client.post(
        f"{API}/game/action",
        headers=PLAYER,
        json={"action": "start_machine", "payload": {"machine_id": machine_id}},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["action"] == "start_machine"
    assert body["data"]["result"]["machine_id"] == machine_id


async def test_set_wallet(client):
    response = await client.post(
        f"{API}/game/wallet", headers=PLAYER, json={"wallet_address": WALLET}
    )

    assert response.status_code == 200
    assert (await get_player("p1")).wallet_address is not None

    bad = await client.post(f"{API}/game/wallet", headers=PLAYER, json={"wallet_address": "nope"})
    assert bad.status_code == 400
    assert bad.json()["success"] is False


async def test_domain_errors_map_to_status_codes(client):
    unknown = await client.post(f"{API}/game/action", headers=PLAYER, json={"action": "dance"})
    missing = await client.post(
        f"{API}/game/action",
        headers=PLAYER,
        json={"action": "upgrade_machine", "payload": {"machine_id": "no-such-machine"}},
    )

    assert unknown.status_code == 400
    assert unknown.json()["error_code"] is not None
    assert missing.status_code == 404


async def test_player_header_required(client):
    missing = await client.get(f"{API}/game/state")
    invalid = await client.get(f"{API}/game/state", headers={"X-Player-Id": "bad id!"})

    assert missing.status_code == 422
    assert invalid.status_code == 400


async def test_action_rate_limit(client, monkeypatch):
    monkeypatch.setattr(settings, "rate_limit_enabled", True)
    monkeypatch.setattr(settings, "rate_limit_actions", 1)
    body = {"action": "claim_daily_reward"}

    first = await client.post(f"{API}/game/action", headers=PLAYER, json=body)
    second = await client.post(f"{API}/game/action", headers=PLAYER, json=body)

    assert first.status_code == 200
    assert second.status_code == 429
    assert second.headers["Retry-After"] == str(settings.rate_limit_window)


async def test_cashout_request_and_current_round(client, monkeypatch):
    monkeypatch.setattr(settings, "cashout_immediate_settlement", True)
    await set_global_setting("cashout_pool_mode", "exchange_rate")
    await create_player("p1", diamonds=150)

    response = await client.post(f"{API}/cashout/request", headers=PLAYER, json={"diamonds": 100})

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Cashout paid"
    assert client.rail.transfers[0][1] == pytest.approx(7)
    assert (await get_player("p1")).diamond_balance == 50

    too_many = await client.post(f"{API}/cashout/request", headers=PLAYER, json={"diamonds": 100})
    assert too_many.status_code == 409

    current = (await client.get(f"{API}/cashout/rounds/current", headers=PLAYER)).json()["data"]
    assert current["round"] is not None
    assert [r["diamonds_submitted"] for r in current["requests"]] == [100]


async def test_cashout_rejects_non_positive_amount(client):
    response = await client.post(f"{API}/cashout/request", headers=PLAYER, json={"diamonds": 0})

    assert response.status_code == 422


async def test_oil_purchase_flow(client):
    started = await client.post(
        f"{API}/purchases/oil", headers=PLAYER, json={"token": "WLD", "oil_amount": 2000}
    )
    assert started.status_code == 200
    reference = started.json()["data"]["reference"]

    confirmed = await client.post(
        f"{API}/purchases/confirm",
        headers=PLAYER,
        json={"reference": reference, "transaction_id": "tx-1"},
    )

    assert confirmed.status_code == 200
    assert confirmed.json()["data"]["status"] == "confirmed"
    assert (await get_player("p1")).oil_balance == 2000


async def test_admin_requires_key(client):
    anonymous = await client.get(f"{API}/admin/reconcile")
    wrong = await client.get(f"{API}/admin/reconcile", headers={"Authorization": "Bearer nope"})

    assert anonymous.status_code == 401
    assert wrong.status_code == 401


async def test_admin_settings_and_reconcile(client):
    admin = {"Authorization": "Bearer operator-key"}

    updated = await client.put(
        f"{API}/admin/settings", headers=admin, json={"key": "cashout_tax_rate_percent", "value": 25}
    )
    assert updated.status_code == 200

    listed = (await client.get(f"{API}/admin/settings", headers=admin)).json()["data"]
    assert listed["overrides"]["cashout_tax_rate_percent"] == "25"

    report = await client.get(f"{API}/admin/reconcile", headers=admin)
    assert report.status_code == 200
    assert report.json()["data"]["ok"] is True
