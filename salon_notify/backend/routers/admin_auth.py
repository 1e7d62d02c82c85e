"""Admin login."""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from salon_notify.backend.auth import (
    create_access_token,
    get_current_admin,
    get_password_hash,
    verify_password,
)
from salon_notify.backend.config import get_settings
from salon_notify.backend.deps import get_db
from salon_notify.backend.models.admin import AdminUser
from salon_notify.backend.utils.api_errors import ok

router = APIRouter()


class LoginRequest(BaseModel):
    email: str
    password: str


def ensure_admin_user(db: Session) -> None:
    """Seed the default admin on first login."""
    s = get_settings()
    existing = db.execute(select(AdminUser).where(AdminUser.email == s.admin_default_email)).scalar_one_or_none()
    if existing:
        return
    db.add(AdminUser(email=s.admin_default_email, password_hash=get_password_hash(s.admin_default_password)))
    db.commit()


@router.post("/login")
def login(data: LoginRequest, db: Session = Depends(get_db)):
    ensure_admin_user(db)
    user = db.execute(select(AdminUser).where(AdminUser.email == data.email)).scalar_one_or_none()
    if not user or not verify_password(data.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not user.is_active:
        raise HTTPException(status_code=401, detail="User is disabled")
    token = create_access_token({"sub": str(user.id), "email": user.email})
    return ok({"access_token": token, "token_type": "bearer"})


@router.get("/me")
def me(payload: dict = Depends(get_current_admin)):
    return ok({"id": payload.get("sub"), "email": payload.get("email")})
