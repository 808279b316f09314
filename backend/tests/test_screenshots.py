from __future__ import annotations
import io
import pytest
from PIL import Image
from PIL.PngImagePlugin import PngInfo
from sqlalchemy import select
from app.errors import Conflict, Forbidden, StateError, ValidationError
from app.jobs.analyze_screenshot import annotate
from app.models.match import Match
from app.models.screenshot import ScreenshotHash
from app.models.user import User
from app.services import matches as svc
from app.services.screenshots import submit_screenshot, hash_bytes, DUPLICATE_REASON
from conftest import load, png_bytes


async def _live_match(session_factory, make_user, make_match, players=2):
    host = await make_user(role="host")
    users = [await make_user(balance=500) for _ in range(players)]
    m = await make_match(host, max_slots=players + 2)
    for u in users:
        async with session_factory() as s:
            match = await svc.load_match(s, m.id, for_update=True)
            await svc.join_match(s, match, await s.get(User, u.id), in_game_id="1", in_game_name="x")
            await s.commit()
    async with session_factory() as s:
        match = await s.get(Match, m.id)
        match.status = "live"
        await s.commit()
    return m, users


async def _submit(session_factory, uploader, match_id, user_id, data):
    async with session_factory() as s:
        match = await svc.load_match(s, match_id, for_update=True)
        out = await submit_screenshot(s, match, await s.get(User, user_id), data, uploader=uploader)
        await s.commit()
        return out


@pytest.mark.parametrize("first", [0, 1])
async def test_same_bytes_from_another_player_are_flagged(session_factory, make_user, make_match, uploader, first):
    m, users = await _live_match(session_factory, make_user, make_match)
    data = png_bytes()
    original_uploader, copier = users[first], users[1 - first]

    ok = await _submit(session_factory, uploader, m.id, original_uploader.id, data)
    assert ok.status == "pending" and not ok.is_duplicate
    assert ok.record.content_hash == hash_bytes(data)
    assert len(uploader.objects) == 1

    dup = await _submit(session_factory, uploader, m.id, copier.id, data)
    assert dup.is_duplicate
    assert dup.duplicate_of_id == ok.record.id
    # nothing new stored for the copy
    assert len(uploader.objects) == 1

    async with session_factory() as s:
        match = await svc.load_match(s, m.id)
        assert match.slot_for(copier.id).screenshot_status == "flagged"
        assert match.slot_for(copier.id).screenshot_rejection_reason == DUPLICATE_REASON
        assert match.slot_for(original_uploader.id).screenshot_status == "pending"
        rows = (await s.execute(select(ScreenshotHash).where(ScreenshotHash.content_hash == hash_bytes(data)))).scalars().all()
        assert sorted(r.is_duplicate for r in rows) == [False, True]


async def test_reuse_across_matches_is_flagged(session_factory, make_user, make_match, uploader):
    m1, users1 = await _live_match(session_factory, make_user, make_match, players=1)
    m2, users2 = await _live_match(session_factory, make_user, make_match, players=1)
    data = png_bytes(color=(10, 120, 240))

    await _submit(session_factory, uploader, m1.id, users1[0].id, data)
    dup = await _submit(session_factory, uploader, m2.id, users2[0].id, data)
    assert dup.is_duplicate


async def test_different_images_are_both_accepted(session_factory, make_user, make_match, uploader):
    m, users = await _live_match(session_factory, make_user, make_match)
    a = await _submit(session_factory, uploader, m.id, users[0].id, png_bytes(color=(1, 2, 3)))
    b = await _submit(session_factory, uploader, m.id, users[1].id, png_bytes(color=(3, 2, 1)))
    assert a.status == b.status == "pending"
    assert len(uploader.objects) == 2


async def test_upload_preconditions(session_factory, make_user, make_match, uploader):
    m, users = await _live_match(session_factory, make_user, make_match, players=1)
    outsider = await make_user(balance=500)

    with pytest.raises(Forbidden):
        await _submit(session_factory, uploader, m.id, outsider.id, png_bytes())
    with pytest.raises(ValidationError):
        await _submit(session_factory, uploader, m.id, users[0].id, b"definitely not an image")

    host = await make_user(role="host")
    early = await make_match(host)
    async with session_factory() as s:
        match = await svc.load_match(s, early.id, for_update=True)
        await svc.join_match(s, match, await s.get(User, outsider.id), in_game_id="1", in_game_name="o")
        await s.commit()
    with pytest.raises(StateError):
        await _submit(session_factory, uploader, early.id, outsider.id, png_bytes())


async def test_verified_slot_cannot_resubmit(session_factory, make_user, make_match, uploader):
    m, users = await _live_match(session_factory, make_user, make_match, players=1)
    async with session_factory() as s:
        match = await svc.load_match(s, m.id)
        match.slot_for(users[0].id).screenshot_status = "verified"
        await s.commit()
    with pytest.raises(Conflict):
        await _submit(session_factory, uploader, m.id, users[0].id, png_bytes())


async def test_rejected_slot_cannot_reupload_after_completion(session_factory, make_user, make_match, uploader):
    m, users = await _live_match(session_factory, make_user, make_match, players=1)
    async with session_factory() as s:
        match = await svc.load_match(s, m.id)
        match.slot_for(users[0].id).screenshot_status = "rejected"
        match.status = "completed"
        await s.commit()
    with pytest.raises(StateError):
        await _submit(session_factory, uploader, m.id, users[0].id, png_bytes())

    async with session_factory() as s:
        match = await svc.load_match(s, m.id)
        assert match.slot_for(users[0].id).screenshot_status == "rejected"
        assert uploader.objects == {}


def _pattern_png(note: str | None = None) -> bytes:
    img = Image.new("L", (64, 64), 0)
    for x in range(64):
        for y in range(64):
            if (x // 16 + y // 8) % 2:
                img.putpixel((x, y), 255)
    info = None
    if note:
        info = PngInfo()
        info.add_text("note", note)
    buf = io.BytesIO()
    img.save(buf, format="PNG", pnginfo=info)
    return buf.getvalue()


async def test_analysis_flags_visually_identical_reupload(session_factory, make_user, make_match, uploader):
    m, users = await _live_match(session_factory, make_user, make_match)
    first, second = _pattern_png(), _pattern_png(note="re-saved")
    assert hash_bytes(first) != hash_bytes(second)

    a = await _submit(session_factory, uploader, m.id, users[0].id, first)
    b = await _submit(session_factory, uploader, m.id, users[1].id, second)
    assert not b.is_duplicate

    async with session_factory() as s:
        rec_a = await s.get(ScreenshotHash, a.record.id)
        assert await annotate(s, rec_a, first) == []
        await s.commit()
    async with session_factory() as s:
        rec_b = await s.get(ScreenshotHash, b.record.id)
        near = await annotate(s, rec_b, second)
        await s.commit()

    assert near == [str(a.record.id)]
    stored = await load(session_factory, ScreenshotHash, b.record.id)
    assert stored.meta_json["flags"] == ["phash_near_duplicate"]
    assert stored.meta_json["storage_key"].startswith(f"matches/{m.id}/")
