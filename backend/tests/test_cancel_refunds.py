from __future__ import annotations
from datetime import timedelta
import pytest
from sqlalchemy import select, func
from app.errors import Forbidden, StateError
from app.models.ledger import Transaction
from app.models.match import Match
from app.models.user import User
from app.services import matches as svc
from app.services.escrow import create_challenge, cancel_challenge
from conftest import load, now_utc


async def _joined_match(session_factory, make_user, make_match, n=3):
    host = await make_user(role="host")
    players = [await make_user(balance=500) for _ in range(n)]
    m = await make_match(host, max_slots=n + 1)
    for p in players:
        async with session_factory() as s:
            match = await svc.load_match(s, m.id, for_update=True)
            await svc.join_match(s, match, await s.get(User, p.id), in_game_id="1", in_game_name="x")
            await s.commit()
    return host, players, m


async def test_one_failed_refund_does_not_block_the_others(session_factory, make_user, make_match, monkeypatch):
    host, players, m = await _joined_match(session_factory, make_user, make_match)
    unlucky = players[1]
    real = svc.record_transaction

    async def flaky(session, **kw):
        if kw["user_id"] == unlucky.id:
            raise RuntimeError("wallet service hiccup")
        return await real(session, **kw)

    monkeypatch.setattr(svc, "record_transaction", flaky)
    async with session_factory() as s:
        match = await svc.load_match(s, m.id, for_update=True)
        assert await svc.cancel_match(s, match, reason="no host", actor_id=host.id) is False
        await s.commit()

    assert (await load(session_factory, User, players[0].id)).wallet_balance == 500
    assert (await load(session_factory, User, players[2].id)).wallet_balance == 500
    assert (await load(session_factory, User, unlucky.id)).wallet_balance == 400
    stored = await load(session_factory, Match, m.id)
    assert stored.status == "cancelled" and stored.refunds_processed is False

    monkeypatch.setattr(svc, "record_transaction", real)
    async with session_factory() as s:
        match = await svc.load_match(s, m.id, for_update=True)
        assert await svc.retry_refunds(s, match) is True
        await s.commit()
    # a second retry is a no-op
    async with session_factory() as s:
        match = await svc.load_match(s, m.id, for_update=True)
        assert await svc.retry_refunds(s, match) is True

    for p in players:
        assert (await load(session_factory, User, p.id)).wallet_balance == 500
    async with session_factory() as s:
        n = await s.scalar(select(func.count()).select_from(Transaction).where(Transaction.category == "match_refund"))
    assert n == 3


async def test_retry_refunds_only_for_cancelled(session_factory, make_user, make_match):
    host, _, m = await _joined_match(session_factory, make_user, make_match, n=1)
    async with session_factory() as s:
        match = await svc.load_match(s, m.id, for_update=True)
        with pytest.raises(StateError):
            await svc.retry_refunds(s, match)


async def _challenge(session_factory, creator_id, **extra):
    async with session_factory() as s:
        data = {
            "game_type": "free_fire",
            "scheduled_at": now_utc() + timedelta(hours=1),
            "entry_fee": 20,
            "prize_pool": 300,
            "room_id": "R1",
            "room_password": "pw",
        }
        data.update(extra)
        match = await create_challenge(s, creator=await s.get(User, creator_id), data=data)
        await s.commit()
        return match.id


async def test_cancel_challenge_returns_escrow(session_factory, make_user):
    creator = await make_user(balance=400)
    match_id = await _challenge(session_factory, creator.id)
    assert (await load(session_factory, User, creator.id)).wallet_balance == 100

    async with session_factory() as s:
        match = await svc.load_match(s, match_id, for_update=True)
        assert await cancel_challenge(s, match, await s.get(User, creator.id)) is True
        await s.commit()

    assert (await load(session_factory, User, creator.id)).wallet_balance == 400
    async with session_factory() as s:
        tx = await s.scalar(select(Transaction).where(Transaction.idempotency_key == svc.escrow_refund_key(match_id)))
    assert tx.amount == 300 and tx.category == "match_refund"


async def test_only_creator_cancels_and_only_before_acceptance(session_factory, make_user):
    creator = await make_user(balance=400)
    opponent = await make_user(balance=100)
    match_id = await _challenge(session_factory, creator.id)

    async with session_factory() as s:
        match = await svc.load_match(s, match_id, for_update=True)
        with pytest.raises(Forbidden):
            await cancel_challenge(s, match, await s.get(User, opponent.id))

    async with session_factory() as s:
        match = await svc.load_match(s, match_id, for_update=True)
        await svc.join_match(s, match, await s.get(User, opponent.id), in_game_id="2", in_game_name="o")
        await s.commit()

    async with session_factory() as s:
        match = await svc.load_match(s, match_id, for_update=True)
        with pytest.raises(StateError):
            await cancel_challenge(s, match, await s.get(User, creator.id))
