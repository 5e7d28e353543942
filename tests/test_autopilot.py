import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

import autopilot
from conftest import set_balance, get_profile
from models import BetProcessingSchedule, Referral, ReferralStatus, utcnow


def _schedule(db, when, direction="a_favor"):
    s = BetProcessingSchedule(
        scheduled_date=when.date(), scheduled_time=when.strftime("%H:%M"),
        winning_direction=direction, is_processed=False,
    )
    db.add(s)
    db.commit()
    return s


def _bet(client, headers, amount, direction):
    r = client.post("/bets", headers=headers, json={
        "asset": "SOL", "amount": amount, "type": "buy", "direction": direction,
    })
    assert r.status_code == 200, r.text


class TestTick:
    def test_due_schedule_is_settled_with_stored_direction(self, client, db, alice):
        set_balance(alice[1]["id"], 100)
        _bet(client, alice[0], 100, "en_contra")
        due = _schedule(db, utcnow() - timedelta(minutes=1), "en_contra")

        res = autopilot.tick(db)
        assert res["settlement"]["winning_bets"] == 1
        assert float(get_profile(alice[1]["id"]).balance) == pytest.approx(101.7)

        db.refresh(due)
        assert due.is_processed is True
        nxt = db.query(BetProcessingSchedule).filter(BetProcessingSchedule.is_processed == False).one()
        assert nxt.scheduled_date == due.scheduled_date + timedelta(days=1)
        assert nxt.winning_direction == "en_contra"

    def test_future_schedule_is_left_alone(self, client, db, alice):
        set_balance(alice[1]["id"], 100)
        _bet(client, alice[0], 100, "a_favor")
        _schedule(db, utcnow() + timedelta(hours=2))

        assert autopilot.tick(db)["settlement"] is None
        assert float(get_profile(alice[1]["id"]).balance) == 0

    def test_empty_due_schedule_still_advances(self, db):
        due = _schedule(db, utcnow() - timedelta(minutes=1))
        assert autopilot.tick(db)["settlement"] is None
        db.refresh(due)
        assert due.is_processed is True
        assert db.query(BetProcessingSchedule).count() == 2

    def test_promotes_matured_referrals(self, db, alice, bob):
        db.add(Referral(
            user_id=alice[1]["id"], referred_user_id=bob[1]["id"], amount=Decimal(5),
            status=ReferralStatus.PENDING, deposit_date=utcnow() - timedelta(days=30),
        ))
        db.commit()
        assert autopilot.tick(db)["referrals_promoted"] == 1
        assert db.query(Referral).one().status == ReferralStatus.AVAILABLE


class TestLoop:
    def test_loop_survives_tick_errors(self, monkeypatch):
        ticks = []

        def boom(db, now=None):
            ticks.append(1)
            raise RuntimeError("db down")

        async def stop_after_two(_seconds):
            if len(ticks) >= 2:
                raise asyncio.CancelledError

        monkeypatch.setattr(autopilot, "tick", boom)
        monkeypatch.setattr(autopilot.asyncio, "sleep", stop_after_two)
        with pytest.raises(asyncio.CancelledError):
            asyncio.run(autopilot.autopilot_loop())
        assert len(ticks) == 2
