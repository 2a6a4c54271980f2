"""
Identity: password hashing, bearer tokens and the request-level gate.

``get_current_user`` resolves exactly one active user from the bearer
credential or raises Unauthenticated. ``require_roles`` layers role
membership on top of it. Ownership checks live in permissions.py.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import JWT_ALGO, JWT_EXPIRES_DAYS, JWT_SECRET
from database import get_db, utcnow
from errors import Forbidden, Unauthenticated
from schemas import Role

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


# ----------------------- Passwords -----------------------
def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


# ----------------------- Tokens -----------------------
def create_token(user: dict) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "id": str(user["_id"]),
        "role": user["role"],
        "jti": uuid.uuid4().hex,
        "iat": now,
        "exp": now + timedelta(days=JWT_EXPIRES_DAYS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthenticated("Not authorized, token failed")


def revoke_token(db: Database, payload: dict):
    expires_at = datetime.fromtimestamp(payload["exp"], tz=timezone.utc).replace(tzinfo=None)
    try:
        db["revoked_token"].insert_one({"jti": payload["jti"], "expires_at": expires_at, "revoked_at": utcnow()})
    except DuplicateKeyError:
        # already revoked
        pass


def is_revoked(db: Database, jti: Optional[str]) -> bool:
    return db["revoked_token"].find_one({"jti": jti}) is not None


# ----------------------- Gate -----------------------
def get_token_payload(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> dict:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise Unauthenticated("Not authorized, no token")
    return decode_token(credentials.credentials)


def get_current_user(payload: dict = Depends(get_token_payload), db: Database = Depends(get_db)) -> dict:
    user_id = payload.get("id")
    if not user_id or not payload.get("jti"):
        raise Unauthenticated("Invalid token payload")
    if is_revoked(db, payload["jti"]):
        raise Unauthenticated("Token has been revoked")

    try:
        user = db["user"].find_one({"_id": ObjectId(user_id)}, {"password_hash": 0})
    except InvalidId:
        raise Unauthenticated("Invalid token payload")
    if not user:
        raise Unauthenticated("User not found")
    if not user.get("is_active", True):
        raise Unauthenticated("User account is deactivated")

    now = utcnow()
    try:
        db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login": now}})
        user["last_login"] = now
    except PyMongoError as e:
        logger.warning("Could not update last_login for %s: %s", user_id, e)
    return user


def user_role(user: dict) -> Role:
    return Role(user["role"])


def check_roles(user: dict, roles) -> None:
    if user_role(user) not in roles:
        required = " or ".join(r.value for r in roles)
        raise Forbidden(f"Access denied. Required role: {required}")


def require_roles(*roles: Role):
    """Dependency factory: the caller must hold one of ``roles``."""

    def dependency(user: dict = Depends(get_current_user)) -> dict:
        check_roles(user, roles)
        return user

    return dependency


def public_user(user: dict) -> dict:
    user = dict(user)
    user.pop("password_hash", None)
    return user
