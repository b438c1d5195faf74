from datetime import timedelta

import pytest

from shared.clock import utcnow
from loyalty_api.services.points_ledger import PointsLedger, TX_ADMIN_ADJUSTMENT
from loyalty_api.services.redemption_service import RedemptionService


def _headers(user_id: str) -> dict:
    return {"X-User-Id": user_id}


CASHIER = "cashier"


@pytest.fixture(autouse=True)
def cashier_is_staff(monkeypatch):
    from loyalty_api import dependencies

    monkeypatch.setattr(dependencies, "STAFF_IDS", [CASHIER])


async def _seed_points(session_factory, user_id: str, points: int) -> None:
    async with session_factory() as session:
        await PointsLedger.adjust(session, user_id, points, TX_ADMIN_ADJUSTMENT)
        await session.commit()


@pytest.mark.asyncio
async def test_redeem_flow(client, app_with_db) -> None:
    _, session_factory = app_with_db
    await _seed_points(session_factory, "alice", 450)

    response = await client.post("/rewards/redeem", json={"rewardId": "fruit_tea"}, headers=_headers("alice"))
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["newPointsBalance"] == 0
    assert body["pointsDeducted"] == 450
    assert len(body["redemptionCode"]) == 8

    active = await client.get("/redemptions/active", headers=_headers("alice"))
    assert [item["id"] for item in active.json()["redemptions"]] == [body["redemption"]["id"]]

    rejected = await client.post("/rewards/redeem", json={"rewardId": "fruit_tea"}, headers=_headers("alice"))
    assert rejected.status_code == 400
    assert rejected.json()["errorCode"] == "insufficient_balance"

    consumed = await client.post(f"/redemptions/{body['redemption']['id']}/consume", headers=_headers(CASHIER))
    assert consumed.status_code == 200
    assert consumed.json()["redemption"]["isUsed"] is True

    again = await client.post(f"/redemptions/{body['redemption']['id']}/consume", headers=_headers(CASHIER))
    assert again.status_code == 409
    assert again.json()["errorCode"] == "already_terminal"

    active = await client.get("/redemptions/active", headers=_headers("alice"))
    assert active.json()["redemptions"] == []


@pytest.mark.asyncio
async def test_expire_endpoint_refunds_once(client, app_with_db, redemption_feed, refunds) -> None:
    _, session_factory = app_with_db
    await _seed_points(session_factory, "bob", 450)

    async with session_factory() as session:
        created = await RedemptionService.request_redemption(
            session, "bob", "fruit_tea", now=utcnow() - timedelta(minutes=15, seconds=1),
            feed=redemption_feed
        )

    redemption_id = str(created.redemption.id)

    first = await client.post(f"/redemptions/{redemption_id}/expire", headers=_headers("bob"))
    second = await client.post(f"/redemptions/{redemption_id}/expire", headers=_headers("bob"))

    assert first.status_code == 200
    assert first.json()["pointsRefunded"] == 450
    assert first.json()["alreadyRefunded"] is False
    assert first.json()["newPointsBalance"] == 450
    assert second.json()["pointsRefunded"] == 0
    assert second.json()["alreadyRefunded"] is True
    assert second.json()["newPointsBalance"] == 450
    assert len(refunds) == 1


@pytest.mark.asyncio
async def test_expire_before_deadline_is_noop(client, app_with_db) -> None:
    _, session_factory = app_with_db
    await _seed_points(session_factory, "carol", 250)

    created = await client.post("/rewards/redeem", json={"rewardId": "sauce_or_drink"}, headers=_headers("carol"))
    redemption_id = created.json()["redemption"]["id"]

    response = await client.post(f"/redemptions/{redemption_id}/expire", headers=_headers("carol"))

    assert response.status_code == 200
    assert response.json()["outcome"] == "not_due"
    assert response.json()["newPointsBalance"] == 0


@pytest.mark.asyncio
async def test_validation_errors_map_to_status_codes(client) -> None:
    unknown_reward = await client.post("/rewards/redeem", json={"rewardId": "caviar"}, headers=_headers("dave"))
    assert unknown_reward.status_code == 404
    assert unknown_reward.json()["errorCode"] == "unknown_reward"

    bad_id = await client.post("/redemptions/not-a-uuid/consume", headers=_headers(CASHIER))
    assert bad_id.status_code == 422
    assert bad_id.json()["errorCode"] == "invalid_redemption_id"

    missing = await client.post(
        "/redemptions/00000000-0000-0000-0000-000000000000/expire", headers=_headers("dave")
    )
    assert missing.status_code == 404

    anonymous = await client.get("/points/balance")
    assert anonymous.status_code == 401


@pytest.mark.asyncio
async def test_referral_endpoints(client) -> None:
    created = await client.post("/referrals/create", headers=_headers("alice"))
    assert created.status_code == 200
    code = created.json()["code"]

    own = await client.post("/referrals/accept", json={"code": code}, headers=_headers("alice"))
    assert own.status_code == 400
    assert own.json()["errorCode"] == "self_referral"

    accepted = await client.post("/referrals/accept", json={"code": code}, headers=_headers("bob"))
    assert accepted.status_code == 200
    assert accepted.json()["pointsAwarded"] == 50
    assert accepted.json()["newPointsBalance"] == 50

    again = await client.post("/referrals/accept", json={"code": code}, headers=_headers("bob"))
    assert again.status_code == 400
    assert again.json()["errorCode"] == "already_referred"

    unknown = await client.post("/referrals/accept", json={"code": "ZZZZZZ"}, headers=_headers("carol"))
    assert unknown.status_code == 404

    stats = await client.get("/referrals/stats", headers=_headers("alice"))
    assert stats.json()["referralCode"] == code
    assert stats.json()["referralsCount"] == 1
    assert stats.json()["totalEarned"] == 50

    balance = await client.get("/points/balance", headers=_headers("alice"))
    assert balance.json()["points"] == 50


@pytest.mark.asyncio
async def test_referral_create_rate_limit(client) -> None:
    statuses = []
    for _ in range(8):
        response = await client.post("/referrals/create", headers=_headers("erin"))
        statuses.append(response.status_code)

    assert statuses == [200] * 5 + [429] * 3


@pytest.mark.asyncio
async def test_points_history(client, app_with_db) -> None:
    _, session_factory = app_with_db
    await _seed_points(session_factory, "frank", 300)
    await client.post("/rewards/redeem", json={"rewardId": "sauce_or_drink"}, headers=_headers("frank"))

    response = await client.get("/points/history", headers=_headers("frank"))

    transactions = response.json()["transactions"]
    assert {tx["type"] for tx in transactions} == {"admin_adjustment", "reward_redeemed"}
    assert sum(tx["amount"] for tx in transactions) == 50


@pytest.mark.asyncio
async def test_admin_endpoints_require_admin(client, monkeypatch) -> None:
    from loyalty_api import dependencies

    monkeypatch.setattr(dependencies, "ADMIN_IDS", ["root"])

    forbidden = await client.post(
        "/admin/points/adjust", json={"userId": "gina", "delta": 100}, headers=_headers("gina")
    )
    assert forbidden.status_code == 403

    adjusted = await client.post(
        "/admin/points/adjust", json={"userId": "gina", "delta": 100, "reason": "goodwill"},
        headers=_headers("root")
    )
    assert adjusted.status_code == 200
    assert adjusted.json()["newPointsBalance"] == 100

    overdraw = await client.post(
        "/admin/points/adjust", json={"userId": "gina", "delta": -500}, headers=_headers("root")
    )
    assert overdraw.status_code == 400

    reconciled = await client.post("/admin/redemptions/reconcile", headers=_headers("root"))
    assert reconciled.status_code == 200
    assert reconciled.json()["checked"] == 0


@pytest.mark.asyncio
async def test_health(client) -> None:
    response = await client.get("/health/all")

    assert response.status_code == 200
    assert response.json()["services"] == {"postgresql": "healthy", "redis": "healthy"}


@pytest.mark.asyncio
async def test_consume_requires_staff(client, app_with_db) -> None:
    _, session_factory = app_with_db
    await _seed_points(session_factory, "gary", 250)

    created = await client.post("/rewards/redeem", json={"rewardId": "sauce_or_drink"}, headers=_headers("gary"))
    redemption_id = created.json()["redemption"]["id"]

    anonymous = await client.post(f"/redemptions/{redemption_id}/consume")
    assert anonymous.status_code == 401

    owner = await client.post(f"/redemptions/{redemption_id}/consume", headers=_headers("gary"))
    assert owner.status_code == 403

    stranger = await client.post(f"/redemptions/{redemption_id}/consume", headers=_headers("mallory"))
    assert stranger.status_code == 403

    active = await client.get("/redemptions/active", headers=_headers("gary"))
    assert [item["id"] for item in active.json()["redemptions"]] == [redemption_id]

    cashier = await client.post(f"/redemptions/{redemption_id}/consume", headers=_headers(CASHIER))
    assert cashier.status_code == 200


@pytest.mark.asyncio
async def test_health_reports_unavailable_redis(client, app_with_db) -> None:
    from shared.redis_client import get_redis

    app, _ = app_with_db

    class UnreachableRedis:
        async def ping(self):
            raise ConnectionError("connection refused")

    async def override_get_redis():
        return UnreachableRedis()

    app.dependency_overrides[get_redis] = override_get_redis

    redis_only = await client.get("/health/redis")
    assert redis_only.status_code == 503
    assert redis_only.json()["status"] == "unhealthy"

    everything = await client.get("/health/all")
    assert everything.status_code == 503
    assert everything.json()["services"]["postgresql"] == "healthy"
    assert everything.json()["services"]["redis"].startswith("unhealthy")

    database = await client.get("/health/db")
    assert database.status_code == 200
