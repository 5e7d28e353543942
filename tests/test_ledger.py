from decimal import Decimal

import pytest

from conftest import set_balance
from ledger import (
    LedgerError, InsufficientFunds, ProfileNotFound, adjust_balance, claim_row, record_transaction, to_money
)
from models import Deposit, Profile, RequestStatus, Transaction, TxType


class TestToMoney:
    def test_quantizes_to_eight_places(self):
        assert to_money("1.123456789") == Decimal("1.12345679")
        assert to_money(0.1) == Decimal("0.10000000")

    @pytest.mark.parametrize("bad", ["abc", None, "NaN", "Infinity"])
    def test_rejects_non_numbers(self, bad):
        with pytest.raises(LedgerError):
            to_money(bad)


class TestAdjustBalance:
    def test_credit_and_debit(self, db, alice):
        uid = alice[1]["id"]
        set_balance(uid, 10)
        assert adjust_balance(db, uid, 5) == Decimal("15")
        assert adjust_balance(db, uid, "-15") == Decimal("0")
        db.commit()
        assert db.get(Profile, uid).balance == 0

    def test_overdraw_refused_and_balance_untouched(self, db, alice):
        uid = alice[1]["id"]
        set_balance(uid, 10)
        with pytest.raises(InsufficientFunds):
            adjust_balance(db, uid, -10.01)
        db.rollback()
        assert db.get(Profile, uid).balance == Decimal("10")

    def test_unknown_profile(self, db):
        with pytest.raises(ProfileNotFound):
            adjust_balance(db, 4242, 1)

    def test_sees_unflushed_changes(self, db, alice):
        uid = alice[1]["id"]
        p = db.get(Profile, uid)
        p.balance = Decimal(3)
        # staged but not flushed; the debit must still see it
        assert adjust_balance(db, uid, -3) == 0


class TestClaimRow:
    def test_only_first_claim_wins(self, db, alice):
        d = Deposit(user_id=alice[1]["id"], amount=Decimal(5), method="crypto")
        db.add(d)
        db.commit()

        assert claim_row(db, Deposit, d.id, RequestStatus.PENDING, status=RequestStatus.APPROVED) is True
        assert claim_row(db, Deposit, d.id, RequestStatus.PENDING, status=RequestStatus.REJECTED) is False
        db.commit()
        assert db.get(Deposit, d.id).status == RequestStatus.APPROVED

    def test_extra_conditions(self, db, alice):
        d = Deposit(user_id=alice[1]["id"], amount=Decimal(5), method="crypto")
        db.add(d)
        db.commit()
        assert not claim_row(db, Deposit, d.id, RequestStatus.PENDING,
                             where=(Deposit.method == "bank",), status=RequestStatus.APPROVED)


class TestRecordTransaction:
    def test_approved_at_follows_approver(self, db, alice):
        uid = alice[1]["id"]
        plain = record_transaction(db, user_id=uid, type=TxType.BET_LOSS, amount=0, status="completed")
        approved = record_transaction(db, user_id=uid, type=TxType.DEPOSIT, amount="12.5",
                                      status="approved", approved_by=uid)
        db.commit()
        assert plain.approved_at is None
        assert approved.approved_at is not None
        assert db.query(Transaction).count() == 2
