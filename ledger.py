"""Balance movements and status transitions shared by every money-moving router.

All helpers work inside the caller's transaction; they never commit. A router
commits once after the whole movement is staged, or rolls back on error.
"""
from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from models import Profile, Transaction, TxType, utcnow

logger = logging.getLogger(__name__)

MONEY_QUANT = Decimal("0.00000001")


class LedgerError(ValueError):
    """Raised when a balance movement cannot be applied (safe to bubble to API)."""

class InsufficientFunds(LedgerError):
    pass

class ProfileNotFound(LedgerError):
    pass


def to_money(value: Any) -> Decimal:
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise LedgerError(f"invalid amount: {value!r}")
    if not d.is_finite():
        raise LedgerError(f"invalid amount: {value!r}")
    return d.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def to_positive_money(value: Any) -> Decimal:
    """Like ``to_money`` but refuses anything that rounds to zero or below."""
    d = to_money(value)
    if d <= 0:
        raise LedgerError("El monto debe ser mayor a 0")
    return d


def adjust_balance(db: Session, user_id: int, amount: Any) -> Decimal:
    """Add ``amount`` (negative to debit) to a profile balance.

    The update is one conditional statement, so two concurrent debits can't
    both pass the funds check. Returns the new balance.
    """
    amt = to_money(amount)
    db.flush()

    stmt = update(Profile).where(Profile.id == user_id)
    if amt < 0:
        stmt = stmt.where(Profile.balance + amt >= 0)
    stmt = stmt.values(balance=Profile.balance + amt, updated_at=utcnow())

    res = db.execute(stmt.execution_options(synchronize_session=False))
    if res.rowcount != 1:
        if db.get(Profile, user_id) is None:
            raise ProfileNotFound(f"profile {user_id} not found")
        raise InsufficientFunds("Saldo insuficiente")

    p = db.get(Profile, user_id, populate_existing=True)
    logger.debug("[ledger] user=%s delta=%s balance=%s", user_id, amt, p.balance)
    return to_money(p.balance)


def claim_row(db: Session, model, row_id: int, expected: Any, *, column: str = "status", where=(), **values) -> bool:
    """Move ``model`` row ``row_id`` out of ``expected`` state.

    Only the caller whose UPDATE matched gets True; everybody else sees the
    row already moved and must not touch money.
    """
    db.flush()
    col = getattr(model, column)
    if "updated_at" in model.__table__.c and "updated_at" not in values:
        values["updated_at"] = utcnow()
    res = db.execute(
        update(model)
        .where(model.id == row_id, col == expected, *where)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        return False
    db.get(model, row_id, populate_existing=True)
    return True


def record_transaction(
    db: Session,
    *,
    user_id: int,
    type: TxType,
    amount: Any,
    status: str,
    user_name: Optional[str] = None,
    user_email: Optional[str] = None,
    method: Optional[str] = None,
    method_name: Optional[str] = None,
    reference_table: Optional[str] = None,
    reference_id: Optional[int] = None,
    approved_by: Optional[int] = None,
    notes: Optional[str] = None,
) -> Transaction:
    tx = Transaction(
        user_id=user_id,
        user_name=user_name,
        user_email=user_email,
        type=type,
        amount=to_money(amount),
        status=status,
        method=method,
        method_name=method_name,
        reference_table=reference_table,
        reference_id=reference_id,
        approved_by=approved_by,
        approved_at=utcnow() if approved_by is not None else None,
        notes=notes,
    )
    db.add(tx)
    return tx
