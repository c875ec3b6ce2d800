"""
Identity store and authentication.

Users sign in with email/password or with a Google ID token; either way they get
back an HS256 bearer token carrying their user id in ``sub``.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import Depends, Header
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from jose import JWTError, jwt
from passlib.hash import pbkdf2_sha256
from pymongo.database import Database

import policy
from config import Settings, get_settings
from database import create_document, get_db, serialize, utcnow
from errors import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    ServerConfigError,
    UpstreamAuthError,
    ValidationError,
)
from schemas import User

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_password(password: str) -> str:
    return pbkdf2_sha256.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        # Google-only accounts have no password to match.
        return False
    return pbkdf2_sha256.verify(password, password_hash)


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    d = serialize(user)
    d.pop("password_hash", None)
    return d


def auth_payload(user: Dict[str, Any], settings: Settings) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "name": user["name"],
        "email": user["email"],
        "role": user.get("role", "member"),
        "avatar": user.get("avatar"),
        "token": create_access_token(str(user["_id"]), settings),
    }


# -----------------------------
# Bearer tokens
# -----------------------------
def create_access_token(user_id: str, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    if not settings.jwt_secret:
        logger.error("JWT_SECRET is not configured")
        raise ServerConfigError("Server misconfigured: missing JWT secret")
    expire = utcnow() + (expires_delta or timedelta(minutes=settings.jwt_expires_minutes))
    return jwt.encode({"sub": user_id, "exp": expire}, settings.jwt_secret, algorithm=ALGORITHM)


def decode_access_token(token: str, settings: Settings) -> str:
    if not settings.jwt_secret:
        logger.error("JWT_SECRET is not configured")
        raise ServerConfigError("Server misconfigured: missing JWT secret")
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[ALGORITHM])
    except JWTError:
        logger.warning("Bearer token rejected")
        raise AuthenticationError("Not authorized, token failed")
    sub = payload.get("sub")
    if not sub or not ObjectId.is_valid(sub):
        raise AuthenticationError("Not authorized, token failed")
    return sub


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    if not authorization:
        raise AuthenticationError("Not authorized, token missing")
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationError("Not authorized, bad authorization format")
    user_id = decode_access_token(parts[1], settings)
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise AuthenticationError("User not found")
    return user


def require_role(*roles: str):
    def dependency(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if not policy.has_role(user, *roles):
            raise AuthorizationError("Forbidden: insufficient role")
        return user

    return dependency


# -----------------------------
# Registration and login
# -----------------------------
def register_user(db: Database, name: str, email: str, password: str, role: str = "member") -> Dict[str, Any]:
    email = normalize_email(email)
    name = name.strip()
    if not name or not email or not password:
        raise ValidationError("Please provide name, email and password")
    if db["user"].find_one({"email": email}):
        raise ValidationError("User with that email already exists")
    doc = User(name=name, email=email, password_hash=hash_password(password), role=role).model_dump()
    inserted = create_document(db, "user", doc)
    return db["user"].find_one({"_id": inserted})


def authenticate_user(db: Database, email: str, password: str) -> Dict[str, Any]:
    user = db["user"].find_one({"email": normalize_email(email)})
    if not user or not verify_password(password, user.get("password_hash")):
        raise AuthenticationError("Invalid email or password")
    return user


def verify_google_token(token: str, client_id: str) -> Dict[str, Any]:
    """Ask Google to validate an ID token and return its verified claims."""
    return google_id_token.verify_oauth2_token(token, google_requests.Request(), client_id)


def google_login(db: Database, token: str, settings: Settings) -> Dict[str, Any]:
    if not settings.google_client_id:
        raise ServerConfigError("Server misconfigured: missing Google client id")
    try:
        claims = verify_google_token(token, settings.google_client_id)
    except Exception as exc:
        logger.warning("Google token verification failed: %s", exc)
        message = "Google authentication failed"
        if settings.debug:
            message = f"{message}: {exc}"
        raise UpstreamAuthError(message)

    if not claims or not claims.get("email"):
        raise ValidationError("Google payload missing email")

    email = normalize_email(claims["email"])
    google_id = claims.get("sub")
    picture = claims.get("picture")

    user = db["user"].find_one({"email": email})
    if user:
        changes: Dict[str, Any] = {}
        if google_id and user.get("google_id") != google_id:
            changes["google_id"] = google_id
        if picture and not user.get("avatar"):
            changes["avatar"] = picture
        if changes:
            changes["updated_at"] = utcnow()
            db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
            user = db["user"].find_one({"_id": user["_id"]})
        return user

    # Upsert so two concurrent first logins end up with one account.
    now = utcnow()
    doc = User(
        name=claims.get("name") or email.split("@")[0],
        email=email,
        google_id=google_id,
        avatar=picture,
    ).model_dump()
    doc.update({"created_at": now, "updated_at": now})
    db["user"].update_one({"email": email}, {"$setOnInsert": doc}, upsert=True)
    return db["user"].find_one({"email": email})


# -----------------------------
# Admin
# -----------------------------
def set_user_role(db: Database, user_id: ObjectId, role: str) -> Dict[str, Any]:
    res = db["user"].update_one({"_id": user_id}, {"$set": {"role": role, "updated_at": utcnow()}})
    if res.matched_count == 0:
        raise NotFoundError("User not found")
    return db["user"].find_one({"_id": user_id})
