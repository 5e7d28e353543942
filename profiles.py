import os
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, UploadFile, File
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

import storage
from auth import require_user, require_admin, profile_out
from db_core import get_db
from models import Profile, ProfilePhoto

logger = logging.getLogger(__name__)

MAX_AVATAR_BYTES = int(os.getenv("MAX_AVATAR_BYTES") or 8 * 1024 * 1024)
AVATAR_MIME_TYPES = {"image/jpeg", "image/png", "image/jpg", "image/webp"}
MAX_VIP_LEVEL = 10


def photo_out(ph: ProfilePhoto) -> dict:
    return {
        "id": ph.id,
        "photo_url": ph.photo_url,
        "file_name": ph.file_name,
        "file_size": ph.file_size,
        "mime_type": ph.mime_type,
        "is_active": ph.is_active,
        "created_at": ph.created_at,
    }


# only these fields are user-editable; balance, role and VIP go through their own flows
class ProfilePatch(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    avatar_url: Optional[str] = None

class VipLevelIn(BaseModel):
    vip_level: int = Field(..., ge=0, le=MAX_VIP_LEVEL)


router = APIRouter(tags=["profiles"])


@router.get("/profiles/me")
def get_user_profile(user: Profile = Depends(require_user)):
    return {"item": profile_out(user)}


@router.patch("/profiles/me")
def update_user_profile(body: ProfilePatch, db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    for field, value in body.model_dump(exclude_unset=True).items():
        if field == "name" and value is not None:
            value = value.strip()
            if not value:
                raise HTTPException(400, "El nombre no puede estar vacío")
        setattr(user, field, value)
    db.commit()
    return {"ok": True, "item": profile_out(user)}


@router.get("/profiles/by-referral/{code}")
def get_profile_by_referral_code(code: str, db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    p = db.query(Profile).filter(Profile.referral_code == code.strip()).first()
    if p is None:
        raise HTTPException(404, "Código de referido no encontrado")
    # public subset only
    return {"item": {"id": p.id, "name": p.name, "referral_code": p.referral_code}}


@router.post("/profiles/me/avatar")
async def upload_profile_photo(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user: Profile = Depends(require_user),
):
    data = await file.read()
    content_type = file.content_type or ""
    try:
        storage.check_upload(data, content_type, MAX_AVATAR_BYTES, AVATAR_MIME_TYPES)
        path = f"{user.id}/{uuid.uuid4().hex}.{storage.file_ext(content_type)}"
        url = storage.upload(storage.AVATAR_BUCKET, path, data)
    except storage.StorageError as e:
        raise HTTPException(400, str(e))

    db.query(ProfilePhoto).filter(
        ProfilePhoto.user_id == user.id, ProfilePhoto.is_active == True
    ).update({"is_active": False}, synchronize_session=False)
    ph = ProfilePhoto(
        user_id=user.id,
        photo_url=url,
        storage_path=path,
        file_name=file.filename or path.rsplit("/", 1)[-1],
        file_size=len(data),
        mime_type=content_type,
        is_active=True,
    )
    db.add(ph)
    user.avatar_url = url
    db.commit()
    logger.info("[profiles] user %s uploaded avatar %s (%d bytes)", user.id, path, len(data))
    return {"ok": True, "item": photo_out(ph), "avatar_url": url}


@router.get("/profiles/me/photos")
def get_user_profile_photos(db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    rows = (
        db.query(ProfilePhoto)
        .filter(ProfilePhoto.user_id == user.id)
        .order_by(ProfilePhoto.created_at.desc(), ProfilePhoto.id.desc())
        .all()
    )
    return {"items": [photo_out(ph) for ph in rows]}


@router.delete("/profiles/me/photos/{photo_id}")
def delete_profile_photo(photo_id: int, db: Session = Depends(get_db), user: Profile = Depends(require_user)):
    ph = db.query(ProfilePhoto).filter(ProfilePhoto.id == photo_id, ProfilePhoto.user_id == user.id).first()
    if ph is None:
        raise HTTPException(404, "Foto no encontrada")
    storage.remove(storage.AVATAR_BUCKET, ph.storage_path)
    if ph.is_active and user.avatar_url == ph.photo_url:
        user.avatar_url = None
    db.delete(ph)
    db.commit()
    return {"ok": True}


@router.get("/admin/profiles")
def get_all_profiles(db: Session = Depends(get_db), admin: Profile = Depends(require_admin)):
    rows = db.query(Profile).order_by(Profile.created_at.desc(), Profile.id.desc()).all()
    return {"items": [profile_out(p) for p in rows]}


@router.put("/admin/profiles/{user_id}/vip-level")
def update_user_vip_level(
    user_id: int,
    body: VipLevelIn,
    db: Session = Depends(get_db),
    admin: Profile = Depends(require_admin),
):
    p = db.get(Profile, user_id)
    if p is None:
        raise HTTPException(404, "Usuario no encontrado")
    old = p.vip_level
    p.vip_level = body.vip_level
    db.commit()
    logger.info("[profiles] admin %s set VIP of %s: %s -> %s", admin.id, p.id, old, p.vip_level)
    return {"ok": True, "item": profile_out(p)}
