import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

import config
from database import get_db, serialize_doc, to_obj_id
from errors import Forbidden, NotAuthenticated

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

_PBKDF2_ROUNDS = 120_000


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), _PBKDF2_ROUNDS).hex()
    return f"{salt}${digest}"


def verify_password(password: str, password_hash: str) -> bool:
    salt, _, expected = (password_hash or "").partition("$")
    if not salt or not expected:
        return False
    return hmac.compare_digest(hash_password(password, salt), password_hash)


def create_token(payload: dict) -> str:
    exp = datetime.now(timezone.utc) + timedelta(days=config.JWT_EXPIRE_DAYS)
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=config.JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise NotAuthenticated("Token expired")
    except jwt.InvalidTokenError:
        raise NotAuthenticated("Not authorized, token failed")


def public_user(doc: dict) -> dict:
    """Account as returned by every read path; the password hash never leaves."""
    user = serialize_doc(doc)
    user.pop("password_hash", None)
    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db=Depends(get_db),
):
    if credentials is None or not credentials.credentials:
        raise NotAuthenticated("Not authorized to access this route")
    payload = decode_token(credentials.credentials)
    user_id = to_obj_id(payload.get("id"))
    if user_id is None:
        raise NotAuthenticated("Invalid token payload")
    user = db["user"].find_one({"_id": user_id})
    if not user:
        raise NotAuthenticated("User not found")
    return public_user(user)


def is_privileged(role: Optional[str], allowed: Iterable[str] = None) -> bool:
    allowed = config.PRIVILEGED_ROLES if allowed is None else allowed
    return role in set(allowed)


def require_roles(*roles: str):
    """Dependency admitting only callers whose role is on the allow-list.

    With no roles given the configured PRIVILEGED_ROLES list applies, read at
    request time.
    """

    async def dependency(user=Depends(get_current_user)):
        if not is_privileged(user.get("role"), roles or None):
            logger.warning("Role %r denied on privileged route for user %s", user.get("role"), user.get("id"))
            raise Forbidden("Access denied. Admin privileges required.")
        return user

    return dependency


require_admin = require_roles()
