from __future__ import annotations
from datetime import timedelta
import stripe
from app.config import settings
from app.models.match import Match
from app.models.user import User
from conftest import auth, load, now_utc, png_bytes


def _challenge_body(**kw):
    body = {
        "gameType": "pubg_mobile",
        "scheduledAt": (now_utc() + timedelta(hours=1)).isoformat(),
        "entryFee": 50,
        "prizePool": 500,
        "roomCredentials": {"roomId": "R1", "roomPassword": "pw"},
    }
    body.update(kw)
    return body


async def test_challenge_create_and_accept_over_http(client, make_user, publisher):
    creator = await make_user(balance=1000)
    opponent = await make_user(balance=200)

    r = await client.post("/matches/create-challenge", json=_challenge_body(), headers=auth(creator))
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["isChallenge"] is True and body["filledSlots"] == 1
    assert body["status"] == "registration_open"
    assert "roomId" not in body and "roomPassword" not in body
    match_id = body["id"]

    r = await client.get("/wallet", headers=auth(creator))
    assert r.json()["balance"] == 500
    assert r.json()["recent"][0]["reference"] == {"referenceType": "match", "matchId": match_id}

    r = await client.post(f"/matches/{match_id}/join", json={"inGameId": "77", "inGameName": "opp"}, headers=auth(opponent))
    assert r.status_code == 200, r.text
    assert r.json() == {"slotNumber": 2, "roomRevealed": True, "roomCredentials": {"roomId": "R1", "roomPassword": "pw"}}
    assert (await client.get("/wallet", headers=auth(opponent))).json()["balance"] == 150

    topic, event = publisher.events[-1]
    assert topic == f"match:{match_id}"
    assert event["event"] == "slot_update" and event["room_revealed"] is True

    r = await client.get(f"/matches/{match_id}/credentials", headers=auth(opponent))
    assert r.json() == {"roomId": "R1", "roomPassword": "pw"}


async def test_challenge_needs_funds_and_credentials(client, make_user):
    poor = await make_user(balance=10)
    r = await client.post("/matches/create-challenge", json=_challenge_body(), headers=auth(poor))
    assert r.status_code == 402
    assert r.json()["code"] == "insufficient_funds"

    rich = await make_user(balance=1000)
    body = _challenge_body()
    del body["roomCredentials"]
    r = await client.post("/matches/create-challenge", json=body, headers=auth(rich))
    assert r.status_code == 422


async def test_roles_are_enforced(client, make_user, make_match):
    player = await make_user(balance=500)
    admin = await make_user(role="admin")
    host = await make_user(role="host")
    m = await make_match(host)

    r = await client.post(f"/matches/{m.id}/cancel", json={"reason": "nope"}, headers=auth(player))
    assert r.status_code == 403
    r = await client.post(f"/matches/{m.id}/join", json={"inGameId": "1", "inGameName": "a"}, headers=auth(admin))
    assert r.status_code == 403
    r = await client.get("/ledger/summary", headers=auth(host))
    assert r.status_code == 403
    r = await client.get(f"/matches/{m.id}")
    assert r.status_code in (401, 403)


async def test_other_hosts_cannot_run_my_match(client, make_user, make_match):
    owner = await make_user(role="host")
    rival = await make_user(role="host")
    m = await make_match(owner, status="registration_closed")
    r = await client.post(f"/matches/{m.id}/start", headers=auth(rival))
    assert r.status_code == 403


async def test_duplicate_screenshot_is_409_and_flag_persists(client, session_factory, make_user, make_match, uploader, enqueued):
    host = await make_user(role="host")
    a = await make_user(balance=500)
    b = await make_user(balance=500)
    m = await make_match(host)
    for p in (a, b):
        r = await client.post(f"/matches/{m.id}/join", json={"inGameId": "1", "inGameName": "x"}, headers=auth(p))
        assert r.status_code == 200, r.text
    async with session_factory() as s:
        match = await s.get(Match, m.id)
        match.status = "live"
        await s.commit()

    data = png_bytes()
    files = {"file": ("proof.png", data, "image/png")}
    r = await client.post(f"/matches/{m.id}/screenshot", files=files, headers=auth(a))
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "pending"
    assert len(enqueued) == 1

    r = await client.post(f"/matches/{m.id}/screenshot", files=files, headers=auth(b))
    assert r.status_code == 409
    assert r.json()["detail"] == "Duplicate screenshot detected"
    assert len(enqueued) == 1

    r = await client.get(f"/matches/{m.id}/me", headers=auth(b))
    assert r.json()["slot"]["screenshotStatus"] == "flagged"


async def test_operator_declares_winners(client, make_user, make_match):
    admin = await make_user(role="admin")
    host = await make_user(role="host")
    a = await make_user(balance=500)
    b = await make_user(balance=500)
    m = await make_match(host, max_slots=2, room_id="R", room_password="p", per_kill_prize=5)
    for p in (a, b):
        await client.post(f"/matches/{m.id}/join", json={"inGameId": "1", "inGameName": "x"}, headers=auth(p))

    r = await client.post(f"/matches/{m.id}/start", headers=auth(host))
    assert r.json()["status"] == "live"
    r = await client.post(
        f"/matches/{m.id}/declare-winners",
        json={"winners": [{"userId": str(a.id), "position": 1, "kills": 3}, {"userId": str(b.id), "position": 2}]},
        headers=auth(admin),
    )
    assert r.status_code == 200, r.text
    assert r.json() == {"status": "completed", "winnersCount": 2, "completed": True, "totalPaid": 255}

    r = await client.get("/ledger/transactions", params={"direction": "credit"}, headers=auth(a))
    page = r.json()
    assert page["total"] == 1
    assert page["items"][0]["category"] == "match_prize" and page["items"][0]["amount"] == 165

    r = await client.get("/ledger/summary", headers=auth(admin))
    assert r.json()["credits"] == 255 and r.json()["debits"] == 200


async def test_leave_and_cancel_amounts(client, make_user, make_match):
    admin = await make_user(role="admin")
    host = await make_user(role="host")
    a = await make_user(balance=100)
    b = await make_user(balance=100)
    m = await make_match(host)
    for p in (a, b):
        await client.post(f"/matches/{m.id}/join", json={"inGameId": "1", "inGameName": "x"}, headers=auth(p))

    r = await client.post(f"/matches/{m.id}/leave", headers=auth(a))
    assert r.json() == {"refundAmount": 90}
    r = await client.post(f"/matches/{m.id}/cancel", json={"reason": "weather"}, headers=auth(admin))
    assert r.json() == {"status": "cancelled", "refundsProcessed": True}

    assert (await _balance(client, a)) == 90
    assert (await _balance(client, b)) == 100


async def _balance(client, user: User) -> int:
    return (await client.get("/wallet", headers=auth(user))).json()["balance"]


async def test_stripe_deposit_credits_once(client, session_factory, make_user, monkeypatch):
    u = await make_user(balance=0)
    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test")
    monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")
    event = {
        "type": "checkout.session.completed",
        "data": {"object": {
            "payment_status": "paid",
            "payment_intent": "pi_123",
            "client_reference_id": str(u.id),
            "amount_total": 2500,
        }},
    }
    monkeypatch.setattr(stripe.Webhook, "construct_event", lambda payload, sig_header, secret: event)

    first = await client.post("/stripe/webhook", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"})
    second = await client.post("/stripe/webhook", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"})
    assert first.json() == {"ok": True, "credited": True}
    assert second.json() == {"ok": True, "credited": False}
    assert (await load(session_factory, User, u.id)).wallet_balance == 2500


async def test_prize_rule_admin_and_preview(client, make_user, make_match):
    admin = await make_user(role="admin")
    host = await make_user(role="host")
    m = await make_match(host)

    r = await client.post("/prize-rules", headers=auth(admin), json={
        "name": "house promo",
        "distributionType": "position_based",
        "config": {"positions": [{"position": 1, "prize": 42}]},
        "priority": 3,
    })
    assert r.status_code == 201, r.text
    rule_id = r.json()["id"]

    r = await client.get(f"/prize-rules/resolve/{m.id}", headers=auth(admin))
    spec = r.json()
    assert spec["source"] == "rule" and spec["ruleId"] == rule_id
    assert spec["config"]["positions"][0]["prize"] == 42

    r = await client.get("/prize-rules", headers=auth(host))
    assert r.status_code == 403


async def test_bad_token_is_401(client, make_user, make_match):
    host = await make_user(role="host")
    m = await make_match(host)
    r = await client.get(f"/matches/{m.id}", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401
    assert r.json()["code"] == "unauthorized"
