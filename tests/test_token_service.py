"""Token store behaviour with an injected ``now``."""

import threading
from datetime import timedelta

import pytest
from sqlmodel import Session, select

from server.config import settings
from server.database import engine
from server.models.registration import DeviceRegistration
from server.models.token import DeviceToken
from server.services import pairing_service, token_service
from server.services.errors import AlreadyLinked, Expired, Invalid, NotFound, Pending
from server.utils.clock import as_utc, utcnow


def _pair(session, user_id="svc-user", fingerprint="fp-svc"):
    reg = pairing_service.register(fingerprint, session)
    pairing_service.link(reg.code, user_id, f"{user_id}@example.com", session)
    return pairing_service.exchange(reg.device_id, reg.code, session, fingerprint=fingerprint)


def test_exchange_states(session):
    reg = pairing_service.register("fp-states", session)
    with pytest.raises(Pending):
        pairing_service.exchange(reg.device_id, reg.code, session)

    pairing_service.link(reg.code, "svc-states", "s@example.com", session)
    with pytest.raises(AlreadyLinked):
        pairing_service.link(reg.code, "svc-other", "o@example.com", session)

    with pytest.raises(NotFound):
        pairing_service.exchange("dev_unknown", reg.code, session)

    later = utcnow() + timedelta(seconds=settings.registration_ttl_seconds + 1)
    with pytest.raises(Expired):
        pairing_service.exchange(reg.device_id, reg.code, session, now=later)


def test_link_expired_code_is_not_found(session):
    past = utcnow() - timedelta(seconds=settings.registration_ttl_seconds + 60)
    reg = pairing_service.register("fp-old", session, now=past)
    with pytest.raises(NotFound):
        pairing_service.link(reg.code, "svc-late", "late@example.com", session)


def test_validate_and_refresh_without_overlap(session):
    issued = _pair(session)
    ctx = token_service.validate(issued.token, session)
    assert ctx.device_id == issued.device_id
    assert ctx.user_id == "svc-user"

    rotated = token_service.refresh(issued.token, session)
    assert rotated.device_id == issued.device_id

    with pytest.raises(Invalid):
        token_service.validate(issued.token, session)
    assert token_service.validate(rotated.token, session).device_id == issued.device_id

    row = session.exec(select(DeviceToken).where(DeviceToken.device_id == issued.device_id)).one()
    assert row.rotated_at is not None
    assert as_utc(row.issued_at) <= as_utc(row.rotated_at)


def test_validate_rejects_expired_token(session):
    issued = _pair(session, user_id="svc-expiry")
    later = utcnow() + timedelta(seconds=settings.token_ttl_seconds + 1)
    with pytest.raises(Invalid):
        token_service.validate(issued.token, session, now=later)
    with pytest.raises(Invalid):
        token_service.refresh(issued.token, session, now=later)


def test_validate_rejects_garbage(session):
    for raw in ("", "x", "not a token at all!", "a" * 300):
        with pytest.raises(Invalid):
            token_service.validate(raw, session)


def test_last_used_moves_forward_only(session):
    issued = _pair(session, user_id="svc-touch")
    now = utcnow()
    later = now + timedelta(seconds=10)

    assert token_service.validate(issued.token, session, now=later).last_used_at == later
    # an older request finishing late does not move it back, and still validates
    ctx = token_service.validate(issued.token, session, now=now)
    assert ctx.last_used_at == later

    for _ in range(3):
        token_service.validate(issued.token, session, now=later)
    assert token_service.validate(issued.token, session).device_id == issued.device_id


def test_re_exchange_replaces_device_token(session):
    reg = pairing_service.register("fp-twice", session)
    pairing_service.link(reg.code, "svc-twice", "t@example.com", session)
    first = pairing_service.exchange(reg.device_id, reg.code, session)
    second = pairing_service.exchange(reg.device_id, reg.code, session)

    rows = session.exec(select(DeviceToken).where(DeviceToken.device_id == reg.device_id)).all()
    assert len(rows) == 1
    with pytest.raises(Invalid):
        token_service.validate(first.token, session)
    token_service.validate(second.token, session)


def test_device_management(session):
    issued = _pair(session, user_id="svc-manage")
    devices = token_service.list_devices("svc-manage", session)
    assert [d.device_id for d in devices] == [issued.device_id]

    renamed = token_service.rename_device(issued.device_id, "svc-manage", "  Hall TV ", session)
    assert renamed.device_name == "Hall TV"
    with pytest.raises(ValueError):
        token_service.rename_device(issued.device_id, "svc-manage", "   ", session)
    with pytest.raises(NotFound):
        token_service.rename_device(issued.device_id, "someone-else", "Mine", session)

    with pytest.raises(NotFound):
        token_service.revoke_device(issued.device_id, "someone-else", session)
    token_service.revoke_device(issued.device_id, "svc-manage", session)
    with pytest.raises(Invalid):
        token_service.validate(issued.token, session)


def test_cleanup_removes_only_expired(session):
    past = utcnow() - timedelta(seconds=settings.registration_ttl_seconds + 60)
    stale = pairing_service.register("fp-stale", session, now=past)
    fresh = pairing_service.register("fp-fresh", session)
    live = _pair(session, user_id="svc-cleanup")

    regs, _ = token_service.cleanup_expired(session)
    assert regs >= 1

    remaining = {
        r.device_id for r in session.exec(select(DeviceRegistration)).all()
    }
    assert stale.device_id not in remaining
    assert fresh.device_id in remaining
    token_service.validate(live.token, session)

    later = utcnow() + timedelta(seconds=settings.token_ttl_seconds + 1)
    _, toks = token_service.cleanup_expired(session, now=later)
    assert toks >= 1
    with pytest.raises(Invalid):
        token_service.validate(live.token, session)


def test_sweeper_disabled_by_zero_interval():
    from server.services.cleanup import ExpirySweeper

    sweeper = ExpirySweeper(0)
    assert sweeper.start() is False
    regs, toks = sweeper.sweep_once()
    assert regs >= 0 and toks >= 0
    sweeper.stop()


def test_revoked_device_cannot_exchange_again(session):
    reg = pairing_service.register("fp-revoke", session)
    pairing_service.link(reg.code, "svc-revoke", "r@example.com", session)
    issued = pairing_service.exchange(reg.device_id, reg.code, session, fingerprint="fp-revoke")

    token_service.revoke_device(issued.device_id, "svc-revoke", session)
    with pytest.raises(NotFound):
        pairing_service.exchange(reg.device_id, reg.code, session, fingerprint="fp-revoke")
    assert token_service.list_devices("svc-revoke", session) == []


def test_logged_out_device_cannot_exchange_again(session):
    reg = pairing_service.register("fp-logout", session)
    pairing_service.link(reg.code, "svc-logout", "l@example.com", session)
    issued = pairing_service.exchange(reg.device_id, reg.code, session)

    assert token_service.logout(issued.token, session) is True
    assert token_service.logout(issued.token, session) is False
    with pytest.raises(NotFound):
        pairing_service.exchange(reg.device_id, reg.code, session)


def test_concurrent_links_have_exactly_one_winner():
    with Session(engine) as s:
        reg = pairing_service.register("fp-race", s)

    barrier = threading.Barrier(2)
    outcomes = {}

    def attempt(user_id):
        with Session(engine) as s:
            barrier.wait()
            try:
                pairing_service.link(reg.code, user_id, f"{user_id}@example.com", s)
                outcomes[user_id] = "linked"
            except AlreadyLinked:
                outcomes[user_id] = "conflict"

    threads = [threading.Thread(target=attempt, args=(u,)) for u in ("race-a", "race-b")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(outcomes.values()) == ["conflict", "linked"]
    winner = next(u for u, outcome in outcomes.items() if outcome == "linked")
    with Session(engine) as s:
        row = s.exec(select(DeviceRegistration).where(DeviceRegistration.device_id == reg.device_id)).one()
    assert row.user_id == winner


def test_connections_use_wal_and_wait_for_locks():
    with engine.connect() as conn:
        assert conn.exec_driver_sql("PRAGMA journal_mode").scalar() == "wal"
        assert conn.exec_driver_sql("PRAGMA busy_timeout").scalar() == 15000
