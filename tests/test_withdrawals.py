from datetime import timedelta

import pytest

from conftest import set_balance, get_profile
from models import Profile, Withdrawal, RequestStatus, utcnow
from withdrawals import withdrawal_stats, WITHDRAWAL_WINDOW_DAYS


def _withdraw(client, headers, amount=20):
    return client.post("/withdrawals", headers=headers, json={
        "amount": amount, "method": "crypto", "crypto_address": "0xabc", "crypto_type": "USDT",
    })


class TestCreateWithdrawal:
    def test_debits_on_request(self, client, alice):
        set_balance(alice[1]["id"], 100)
        r = _withdraw(client, alice[0], 40)
        assert r.status_code == 200, r.text
        assert r.json()["item"]["status"] == "pending"
        assert r.json()["item"]["user_email"] == "alice@example.com"
        assert float(get_profile(alice[1]["id"]).balance) == pytest.approx(60)

    def test_minimum_amount(self, client, alice):
        set_balance(alice[1]["id"], 100)
        r = _withdraw(client, alice[0], 9.99)
        assert r.status_code == 400
        assert "mínimo" in r.json()["detail"]
        assert float(get_profile(alice[1]["id"]).balance) == pytest.approx(100)

    def test_insufficient_balance(self, client, alice):
        set_balance(alice[1]["id"], 15)
        r = _withdraw(client, alice[0], 20)
        assert r.status_code == 400
        assert r.json()["detail"] == "No tienes saldo suficiente para realizar este retiro."
        assert client.get("/withdrawals", headers=alice[0]).json()["items"] == []

    def test_vip_slot_limit_enforced(self, client, alice):
        # level 0 allows a single withdrawal per window
        set_balance(alice[1]["id"], 100)
        assert _withdraw(client, alice[0], 20).status_code == 200
        r = _withdraw(client, alice[0], 20)
        assert r.status_code == 400
        assert "límite" in r.json()["detail"]
        assert float(get_profile(alice[1]["id"]).balance) == pytest.approx(80)

    def test_higher_vip_gets_more_slots(self, client, alice, db):
        p = db.get(Profile, alice[1]["id"])
        p.vip_level = 1
        db.commit()
        set_balance(alice[1]["id"], 100)
        assert _withdraw(client, alice[0], 20).status_code == 200
        assert _withdraw(client, alice[0], 20).status_code == 200
        assert _withdraw(client, alice[0], 20).status_code == 400

    def test_rejected_withdrawal_frees_its_slot(self, client, admin, alice):
        set_balance(alice[1]["id"], 100)
        wid = _withdraw(client, alice[0], 20).json()["item"]["id"]
        client.post(f"/admin/withdrawals/{wid}/reject", headers=admin[0])
        assert _withdraw(client, alice[0], 20).status_code == 200


class TestWithdrawalStats:
    def test_rolling_window(self, client, alice, db):
        set_balance(alice[1]["id"], 100)
        wid = _withdraw(client, alice[0], 25).json()["item"]["id"]

        stats = client.get("/withdrawals/stats", headers=alice[0]).json()
        assert stats["monthly_withdrawals_used"] == 1
        assert stats["monthly_withdrawal_amount"] == pytest.approx(25)
        assert stats["available_withdrawals"] == 0
        assert stats["max_withdrawals"] == 1
        assert [w["id"] for w in stats["withdrawals_by_date"]] == [wid]

        # the slot frees up once the withdrawal is older than the window
        w = db.get(Withdrawal, wid)
        w.created_at = utcnow() - timedelta(days=WITHDRAWAL_WINDOW_DAYS, minutes=1)
        db.commit()
        stats = client.get("/withdrawals/stats", headers=alice[0]).json()
        assert stats["monthly_withdrawals_used"] == 0
        assert stats["available_withdrawals"] == 1

    def test_expiry_date_reported(self, db, alice):
        created = utcnow() - timedelta(days=3)
        db.add(Withdrawal(
            user_id=alice[1]["id"], user_name="Alice", user_email="alice@example.com",
            amount=50, method="crypto", status=RequestStatus.APPROVED, created_at=created,
        ))
        db.commit()
        stats = withdrawal_stats(db, db.get(Profile, alice[1]["id"]))
        assert stats["withdrawals_by_date"][0]["expires_at"] == created + timedelta(days=WITHDRAWAL_WINDOW_DAYS)
