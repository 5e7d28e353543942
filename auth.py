import os
import base64
import hashlib
import hmac
import logging
import random
import secrets
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Header
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from db_core import get_db
from models import Profile, AuthSession, Role, utcnow

logger = logging.getLogger(__name__)

# ---------- config ----------
SESSION_TTL_HOURS = int(os.getenv("SESSION_TTL_HOURS") or 168)
PBKDF2_ITERATIONS = int(os.getenv("PBKDF2_ITERATIONS") or 120_000)
ADMIN_EMAILS = {
    e.strip().lower() for e in (os.getenv("ADMIN_EMAILS") or "").split(",") if e.strip()
}


# ---------- password hashing ----------
def hash_password(password: str) -> str:
    salt = base64.urlsafe_b64encode(os.urandom(16)).decode()
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), PBKDF2_ITERATIONS)
    return f"pbkdf2${PBKDF2_ITERATIONS}${salt}${base64.b64encode(dk).decode()}"

def verify_password(stored: str, password: str) -> bool:
    try:
        _algo, iters_s, salt, h64 = stored.split("$", 3)
        dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), int(iters_s))
    except (ValueError, TypeError):
        return False
    return hmac.compare_digest(base64.b64decode(h64), dk)


def generate_referral_code() -> str:
    return "REF" + str(random.randint(0, 999_999)).zfill(6)

def unique_referral_code(db: Session) -> str:
    code = generate_referral_code()
    while db.query(Profile.id).filter(Profile.referral_code == code).first():
        code = generate_referral_code()
    return code


# ---------- session lookup ----------
def _bearer(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip() or None
    return None

def optional_user(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Optional[Profile]:
    token = _bearer(authorization)
    if not token:
        return None
    s = db.query(AuthSession).filter(AuthSession.token == token).first()
    if not s:
        return None
    if s.expires_at <= utcnow():
        db.delete(s)
        db.commit()
        return None
    return s.user

def require_user(user: Optional[Profile] = Depends(optional_user)) -> Profile:
    if user is None:
        raise HTTPException(status_code=401, detail="Usuario no autenticado")
    return user

def require_admin(user: Profile = Depends(require_user)) -> Profile:
    if user.role != Role.ADMIN:
        logger.warning("[auth] non-admin user %s attempted admin access", user.email)
        raise HTTPException(status_code=403, detail="No autorizado")
    return user


def profile_out(p: Profile) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "email": p.email,
        "role": p.role,
        "balance": p.balance,
        "status": p.status,
        "referral_code": p.referral_code,
        "referred_by": p.referred_by,
        "vip_level": p.vip_level,
        "avatar_url": p.avatar_url,
        "referral_earnings": p.referral_earnings,
        "created_at": p.created_at,
        "updated_at": p.updated_at,
    }


# ---------- API payloads ----------
class RegisterIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=6)
    referral_code: Optional[str] = None

class LoginIn(BaseModel):
    email: str
    password: str


# ========================
# Router
# ========================
router = APIRouter(prefix="/auth", tags=["auth"])


def _open_session(db: Session, p: Profile) -> AuthSession:
    s = AuthSession(
        token=secrets.token_urlsafe(32),
        user_id=p.id,
        expires_at=utcnow() + timedelta(hours=SESSION_TTL_HOURS),
    )
    db.add(s)
    return s


@router.post("/register")
def register(body: RegisterIn, db: Session = Depends(get_db)):
    email = body.email.strip().lower()
    if "@" not in email:
        raise HTTPException(400, "Correo electrónico inválido")
    if db.query(Profile.id).filter(Profile.email == email).first():
        raise HTTPException(400, "Este correo electrónico ya está registrado")

    referred_by = (body.referral_code or "").strip() or None
    if referred_by and not db.query(Profile.id).filter(Profile.referral_code == referred_by).first():
        raise HTTPException(400, "Código de referido inválido")

    p = Profile(
        email=email,
        name=body.name.strip(),
        password_hash=hash_password(body.password),
        role=Role.ADMIN if email in ADMIN_EMAILS else Role.USER,
        balance=0,
        status="En espera",
        referral_code=unique_referral_code(db),
        referred_by=referred_by,
        vip_level=0,
        referral_earnings=0,
    )
    db.add(p)
    db.flush()
    s = _open_session(db, p)
    db.commit()
    logger.info("[auth] registered user %s (role=%s, referred_by=%s)", p.id, p.role.value, referred_by)
    return {"ok": True, "token": s.token, "user": profile_out(p)}


@router.post("/login")
def login(body: LoginIn, db: Session = Depends(get_db)):
    email = body.email.strip().lower()
    p = db.query(Profile).filter(Profile.email == email).first()
    if not p:
        raise HTTPException(401, "Usuario no registrado")
    if not verify_password(p.password_hash, body.password):
        raise HTTPException(401, "Error de Contraseña")
    s = _open_session(db, p)
    db.commit()
    return {"ok": True, "token": s.token, "user": profile_out(p)}


@router.post("/logout")
def logout(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)):
    token = _bearer(authorization)
    if not token:
        raise HTTPException(401, "Usuario no autenticado")
    db.query(AuthSession).filter(AuthSession.token == token).delete()
    db.commit()
    return {"ok": True}


@router.get("/me")
def me(user: Profile = Depends(require_user)):
    return {"user": profile_out(user)}
