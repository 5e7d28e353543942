from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth import require_user
from db_core import get_db
from models import WatchlistItem, Profile


class WatchlistIn(BaseModel):
    crypto_id: str = Field(..., min_length=1)
    crypto_symbol: str = Field(..., min_length=1)
    crypto_name: str = Field(..., min_length=1)


router = APIRouter(prefix="/watchlist", tags=["watchlist"])


@router.get("")
def get_watchlist(db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    rows = (
        db.query(WatchlistItem)
        .filter(WatchlistItem.user_id == user.id)
        .order_by(WatchlistItem.created_at.desc(), WatchlistItem.id.desc())
        .all()
    )
    return {"items": [
        {
            "id": w.id,
            "crypto_id": w.crypto_id,
            "crypto_symbol": w.crypto_symbol,
            "crypto_name": w.crypto_name,
            "created_at": w.created_at,
        }
        for w in rows
    ]}


@router.post("")
def add_to_watchlist(body: WatchlistIn, db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    w = WatchlistItem(
        user_id=user.id,
        crypto_id=body.crypto_id,
        crypto_symbol=body.crypto_symbol.upper(),
        crypto_name=body.crypto_name,
    )
    db.add(w)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(409, "Esta criptomoneda ya está en tu lista de seguimiento")
    return {"ok": True, "item": {"id": w.id, "crypto_id": w.crypto_id}}


@router.delete("/{crypto_id}")
def remove_from_watchlist(crypto_id: str, db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    n = (
        db.query(WatchlistItem)
        .filter(WatchlistItem.user_id == user.id, WatchlistItem.crypto_id == crypto_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    if not n:
        raise HTTPException(404, "No está en tu lista de seguimiento")
    return {"ok": True}
