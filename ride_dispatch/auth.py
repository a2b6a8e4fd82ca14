import datetime as dt
import hashlib
import secrets
import uuid
from typing import Optional

import jwt
from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .database import SessionLocal
from .errors import Unauthenticated, Unauthorized
from .models import User


bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, phone: str) -> str:
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": str(user_id),
        "phone": phone,
        "iat": int(now.timestamp()),
        "exp": int((now + settings.jwt_expires_delta).timestamp()),
    }
    # Sign with current secret (first in list)
    return jwt.encode(payload, settings.JWT_SECRETS[0], algorithm="HS256")


def decode_access_token(token: str) -> dict:
    last_err: Optional[Exception] = None
    # Try every configured HS256 secret (rotation)
    for sec in settings.JWT_SECRETS:
        try:
            return jwt.decode(token, sec, algorithms=["HS256"])
        except jwt.ExpiredSignatureError:
            raise Unauthenticated("Token expired")
        except jwt.InvalidTokenError as e:
            last_err = e
    raise Unauthenticated(f"Invalid token: {last_err}" if last_err else "Invalid token")


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    if creds is None or not creds.credentials:
        raise Unauthenticated("Missing Authorization header")
    payload = decode_access_token(creds.credentials)
    user_id = payload.get("sub")
    phone = payload.get("phone")
    if not user_id and not phone:
        raise Unauthenticated("Invalid token payload")
    user = None
    if user_id:
        try:
            user = db.get(User, uuid.UUID(str(user_id)))
        except ValueError:
            raise Unauthenticated("Invalid token subject")
    if user is None and phone:
        # Map by phone (single-login). Create on first sight.
        user = db.execute(select(User).where(User.phone == phone)).scalar_one_or_none()
        if user is None:
            user = User(phone=phone, role="rider")
            if user_id:
                user.id = uuid.UUID(str(user_id))
            db.add(user)
            db.flush()
    if user is None:
        raise Unauthenticated("User not found")
    return user


def require_admin(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    token = (x_admin_token or "").strip()
    if not token:
        raise Unauthorized("Admin token required")
    if settings.ADMIN_TOKEN and secrets.compare_digest(token, settings.ADMIN_TOKEN):
        return
    digest = hashlib.sha256(token.encode()).hexdigest()
    if any(secrets.compare_digest(digest, h) for h in settings.admin_token_hashes):
        return
    raise Unauthorized("Invalid admin token")
