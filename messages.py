import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth import require_user, require_admin
from db_core import get_db
from models import BroadcastMessage, UserMessageRead, Profile

logger = logging.getLogger(__name__)


class MessageIn(BaseModel):
    subject: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1)


router = APIRouter(tags=["messages"])


def _read_ids(db: Session, user_id: int) -> set:
    return {
        mid for (mid,) in db.query(UserMessageRead.message_id).filter(UserMessageRead.user_id == user_id).all()
    }


def _mark_read(db: Session, user_id: int, message_id: int) -> bool:
    db.add(UserMessageRead(user_id=user_id, message_id=message_id))
    try:
        db.commit()
    except IntegrityError:
        # a parallel request got there first
        db.rollback()
        return False
    return True


@router.get("/messages")
def get_messages(db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    read = _read_ids(db, user.id)
    rows = db.query(BroadcastMessage).order_by(BroadcastMessage.created_at.desc(), BroadcastMessage.id.desc()).all()
    items = [
        {
            "id": m.id,
            "subject": m.subject,
            "content": m.content,
            "created_at": m.created_at,
            "is_read": m.id in read,
        }
        for m in rows
    ]
    return {"items": items, "unread": sum(1 for i in items if not i["is_read"])}


@router.post("/messages/{message_id}/read")
def mark_message_as_read(message_id: int, db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    if db.get(BroadcastMessage, message_id) is None:
        raise HTTPException(404, "Mensaje no encontrado")
    if message_id not in _read_ids(db, user.id):
        _mark_read(db, user.id, message_id)
    return {"ok": True}


@router.post("/messages/read-all")
def mark_all_messages_as_read(db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    read = _read_ids(db, user.id)
    unread = [mid for (mid,) in db.query(BroadcastMessage.id).all() if mid not in read]
    marked = sum(1 for mid in unread if _mark_read(db, user.id, mid))
    return {"ok": True, "marked": marked}


@router.post("/admin/messages")
def send_broadcast_message(body: MessageIn, db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    m = BroadcastMessage(subject=body.subject.strip(), content=body.content)
    db.add(m)
    db.commit()
    logger.info("[messages] admin %s broadcast message %s", admin.id, m.id)
    return {"ok": True, "item": {"id": m.id, "subject": m.subject, "content": m.content, "created_at": m.created_at}}
