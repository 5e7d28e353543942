import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth import require_user, require_admin
from db_core import get_db
from models import Profile, Role

logger = logging.getLogger(__name__)


def role_out(p: Profile) -> dict:
    return {
        "user_id": p.id,
        "email": p.email,
        "name": p.name,
        "role": p.role,
        "created_at": p.created_at,
    }


class RoleIn(BaseModel):
    role: Literal["user", "admin"]

class AdminEmailIn(BaseModel):
    email: str


router = APIRouter(tags=["roles"])


@router.get("/roles/me")
def get_my_role(user: Profile = Depends(require_user)):
    return {"role": user.role, "is_admin": user.role == Role.ADMIN}


@router.get("/admin/roles")
def get_all_users_with_roles(db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    rows = db.query(Profile).order_by(Profile.created_at.desc(), Profile.id.desc()).all()
    return {"items": [role_out(p) for p in rows]}


@router.get("/admin/admins")
def get_admin_users(db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    rows = db.query(Profile).filter(Profile.role == Role.ADMIN).order_by(Profile.email.asc()).all()
    return {"items": [role_out(p) for p in rows]}


@router.put("/admin/roles/{user_id}")
def update_user_role(
    user_id: int,
    body: RoleIn,
    db: Session = Depends(get_db),
    admin: Profile = Depends(require_admin),
):
    if user_id == admin.id:
        raise HTTPException(400, "No puedes cambiar tu propio rol")
    p = db.get(Profile, user_id)
    if p is None:
        raise HTTPException(404, "Usuario no encontrado")
    p.role = Role(body.role)
    db.commit()
    logger.info("[roles] admin %s set role of %s to %s", admin.id, p.id, p.role.value)
    return {"ok": True, "item": role_out(p)}


@router.post("/admin/roles/by-email")
def assign_admin_role_by_email(body: AdminEmailIn, db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    email = body.email.strip().lower()
    p = db.query(Profile).filter(Profile.email == email).first()
    if p is None:
        raise HTTPException(404, "Usuario no encontrado")
    if p.role == Role.ADMIN:
        raise HTTPException(409, "El usuario ya es administrador")
    p.role = Role.ADMIN
    db.commit()
    logger.info("[roles] admin %s granted admin to %s", admin.id, email)
    return {"ok": True, "item": role_out(p)}


@router.delete("/admin/roles/by-email/{email}")
def remove_admin_role_by_email(email: str, db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    email = email.strip().lower()
    if email == admin.email:
        raise HTTPException(400, "No puedes quitarte el rol de administrador")
    p = db.query(Profile).filter(Profile.email == email).first()
    if p is None:
        raise HTTPException(404, "Usuario no encontrado")
    p.role = Role.USER
    db.commit()
    logger.info("[roles] admin %s revoked admin from %s", admin.id, email)
    return {"ok": True, "item": role_out(p)}
