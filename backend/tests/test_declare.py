from __future__ import annotations
import pytest
from sqlalchemy import select, func
from app.errors import Conflict, StateError, ValidationError
from app.models.ledger import Transaction
from app.models.match import Match
from app.models.user import User
from app.services import matches as svc
from app.services.matches import ResultEntry
from conftest import load


async def _played_match(session_factory, make_user, make_match, n=3, status="live", **kw):
    host = await make_user(role="host")
    players = [await make_user(balance=500) for _ in range(n)]
    m = await make_match(host, max_slots=max(n, 2) + 1, **kw)
    for p in players:
        async with session_factory() as s:
            match = await svc.load_match(s, m.id, for_update=True)
            await svc.join_match(s, match, await s.get(User, p.id), in_game_id="1", in_game_name="x")
            await s.commit()
    async with session_factory() as s:
        match = await s.get(Match, m.id)
        match.status = status
        await s.commit()
    return host, players, m


async def _declare(session_factory, match_id, entries, actor_id):
    async with session_factory() as s:
        match = await svc.load_match(s, match_id, for_update=True)
        out = await svc.declare_results(s, match, entries, actor_id=actor_id)
        await s.commit()
        return out


async def test_scenario_position_plus_kills(session_factory, make_user, make_match):
    host, (winner, other), m = await _played_match(
        session_factory, make_user, make_match, n=2,
        prize_pool=200, per_kill_prize=5, prize_distribution=[{"position": 1, "prize": 200}],
    )
    out = await _declare(session_factory, m.id, [ResultEntry(winner.id, 1, 5), ResultEntry(other.id, 2, 0)], host.id)
    assert out["total_paid"] == 225
    assert (await load(session_factory, User, winner.id)).wallet_balance == 400 + 225


async def test_declare_pays_completes_and_updates_stats(session_factory, make_user, make_match):
    host, (a, b, c), m = await _played_match(session_factory, make_user, make_match, per_kill_prize=5)
    out = await _declare(session_factory, m.id, [ResultEntry(a.id, 1, 2), ResultEntry(b.id, 2, 0)], host.id)
    assert out == {"status": "completed", "winners_count": 2, "completed": True, "total_paid": 250}

    ua, ub, uc = [await load(session_factory, User, p.id) for p in (a, b, c)]
    assert (ua.wallet_balance, ub.wallet_balance, uc.wallet_balance) == (560, 490, 400)
    assert (ua.matches_won, ua.total_earnings, ua.xp) == (1, 160, 170)
    assert [u.matches_played for u in (ua, ub, uc)] == [1, 1, 1]
    assert uc.matches_won == 0 and uc.xp == 0

    async with session_factory() as s:
        match = await svc.load_match(s, m.id)
        assert match.slot_for(c.id).screenshot_status == "rejected"
        assert [r["position"] for r in match.results] == [1, 2]
        assert match.result_declared_at is not None


async def test_declaring_twice_never_pays_twice(session_factory, make_user, make_match):
    host, (a, b), m = await _played_match(session_factory, make_user, make_match, n=2)
    entries = [ResultEntry(a.id, 1), ResultEntry(b.id, 2)]
    await _declare(session_factory, m.id, entries, host.id)
    with pytest.raises(StateError):
        await _declare(session_factory, m.id, entries, host.id)

    assert (await load(session_factory, User, a.id)).wallet_balance == 400 + 150
    async with session_factory() as s:
        n = await s.scalar(select(func.count()).select_from(Transaction).where(Transaction.category == "match_prize"))
    assert n == 2


@pytest.mark.parametrize("bad", ["dup_position", "dup_user", "stranger", "empty"])
async def test_bad_winner_lists_are_rejected(session_factory, make_user, make_match, bad):
    host, (a, b), m = await _played_match(session_factory, make_user, make_match, n=2)
    stranger = await make_user()
    entries = {
        "dup_position": [ResultEntry(a.id, 1), ResultEntry(b.id, 1)],
        "dup_user": [ResultEntry(a.id, 1), ResultEntry(a.id, 2)],
        "stranger": [ResultEntry(stranger.id, 1)],
        "empty": [],
    }[bad]
    with pytest.raises(ValidationError):
        await _declare(session_factory, m.id, entries, host.id)
    assert (await load(session_factory, Match, m.id)).status == "live"


async def test_payout_above_cap_is_refused(session_factory, make_user, make_match):
    host, (a, b), m = await _played_match(
        session_factory, make_user, make_match, n=2, prize_distribution=[{"position": 1, "prize": 5000}],
    )
    with pytest.raises(ValidationError):
        await _declare(session_factory, m.id, [ResultEntry(a.id, 1)], host.id)
    assert (await load(session_factory, User, a.id)).wallet_balance == 400


async def test_declare_before_match_starts_is_refused(session_factory, make_user, make_match):
    host, (a, b), m = await _played_match(session_factory, make_user, make_match, n=2, status="registration_open")
    with pytest.raises(StateError):
        await _declare(session_factory, m.id, [ResultEntry(a.id, 1)], host.id)


async def _verify(session_factory, match_id, user_id, actor_id, **kw):
    args = dict(position=None, kills=0, approve=True, reject_reason=None)
    args.update(kw)
    async with session_factory() as s:
        match = await svc.load_match(s, match_id, for_update=True)
        out = await svc.verify_result(s, match, user_id=user_id, actor_id=actor_id, **args)
        await s.commit()
        return out


async def test_verify_one_by_one_until_complete(session_factory, make_user, make_match):
    host, (a, b, c), m = await _played_match(
        session_factory, make_user, make_match, status="result_pending", per_kill_prize=5,
    )
    out = await _verify(session_factory, m.id, a.id, host.id, position=1, kills=1)
    assert out == {"approved": True, "prize": 155, "match_completed": False}

    with pytest.raises(Conflict):
        await _verify(session_factory, m.id, a.id, host.id, position=1, kills=1)
    with pytest.raises(ValidationError):
        await _verify(session_factory, m.id, b.id, host.id, position=1)

    await _verify(session_factory, m.id, b.id, host.id, approve=False, reject_reason="blurry")
    out = await _verify(session_factory, m.id, c.id, host.id, position=2)
    assert out == {"approved": True, "prize": 90, "match_completed": True}

    stored = await load(session_factory, Match, m.id)
    assert stored.status == "completed"
    assert (await load(session_factory, User, a.id)).wallet_balance == 400 + 155
    assert (await load(session_factory, User, b.id)).wallet_balance == 400


async def _prize_rows(session_factory, match_id):
    async with session_factory() as s:
        rows = (await s.execute(
            select(Transaction.user_id, Transaction.amount)
            .where(Transaction.category == "match_prize", Transaction.reference_id == str(match_id))
        )).all()
    return rows


async def test_declare_cannot_move_a_verified_player(session_factory, make_user, make_match):
    host, (a, b, c), m = await _played_match(session_factory, make_user, make_match, status="result_pending")
    await _verify(session_factory, m.id, a.id, host.id, position=1)

    with pytest.raises(Conflict):
        await _declare(session_factory, m.id, [ResultEntry(a.id, 2), ResultEntry(b.id, 1), ResultEntry(c.id, 3)], host.id)
    with pytest.raises(Conflict):
        await _declare(session_factory, m.id, [ResultEntry(b.id, 1), ResultEntry(c.id, 2)], host.id)

    rows = await _prize_rows(session_factory, m.id)
    assert [(u, amt) for u, amt in rows] == [(a.id, 150)]
    assert (await load(session_factory, User, b.id)).wallet_balance == 400
    async with session_factory() as s:
        match = await svc.load_match(s, m.id)
        slot = match.slot_for(a.id)
        assert (slot.position, slot.prize_won, match.status) == (1, 150, "result_pending")


async def test_declare_after_verify_pays_only_the_rest(session_factory, make_user, make_match):
    host, (a, b, c), m = await _played_match(session_factory, make_user, make_match, status="result_pending")
    await _verify(session_factory, m.id, a.id, host.id, position=1)

    # a is left off the list but keeps the verified result
    out = await _declare(session_factory, m.id, [ResultEntry(b.id, 2), ResultEntry(c.id, 3)], host.id)
    assert out["completed"] is True
    assert out["total_paid"] == 150

    rows = await _prize_rows(session_factory, m.id)
    per_user = {u: amt for u, amt in rows}
    assert len(rows) == len(per_user) == 3
    assert per_user == {a.id: 150, b.id: 90, c.id: 60}
    assert sum(per_user.values()) <= 300

    ua = await load(session_factory, User, a.id)
    assert (ua.wallet_balance, ua.matches_won, ua.xp, ua.matches_played) == (550, 1, 150, 1)
    async with session_factory() as s:
        match = await svc.load_match(s, m.id)
        assert match.slot_for(a.id).screenshot_status == "verified"
        assert [(r["position"], r["prize"]) for r in match.results] == [(1, 150), (2, 90), (3, 60)]


async def test_declare_repeating_a_verified_result_does_not_repay(session_factory, make_user, make_match):
    host, (a, b, c), m = await _played_match(session_factory, make_user, make_match, status="result_pending")
    await _verify(session_factory, m.id, a.id, host.id, position=1)

    await _declare(session_factory, m.id, [ResultEntry(a.id, 1), ResultEntry(b.id, 2)], host.id)

    rows = await _prize_rows(session_factory, m.id)
    assert sorted(amt for _, amt in rows) == [90, 150]
    assert (await load(session_factory, User, a.id)).wallet_balance == 550
    async with session_factory() as s:
        match = await svc.load_match(s, m.id)
        assert match.status == "completed"
        assert match.slot_for(c.id).screenshot_status == "rejected"


async def test_cap_counts_prizes_already_paid(session_factory, make_user, make_match):
    host, (a, b), m = await _played_match(
        session_factory, make_user, make_match, n=2, status="result_pending",
        prize_distribution=[{"position": 1, "prize": 200}, {"position": 2, "prize": 150}],
    )
    await _verify(session_factory, m.id, a.id, host.id, position=1)

    # 150 fits the 300 pool alone, but not on top of the 200 already paid
    with pytest.raises(ValidationError):
        await _declare(session_factory, m.id, [ResultEntry(b.id, 2)], host.id)
    assert (await load(session_factory, User, b.id)).wallet_balance == 400
    assert len(await _prize_rows(session_factory, m.id)) == 1
