"""Password hashing, token issuance and the owner-auth dependency."""
import logging
from datetime import datetime, timedelta
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.database import Database

import config
from database import USERS, get_db, utcnow
from errors import AuthenticationError, InvalidTokenError

logger = logging.getLogger(__name__)

TOKEN_LIFETIME = timedelta(hours=1)

bearer_scheme = HTTPBearer(auto_error=False)

# Compared against when the username is unknown so both paths cost one bcrypt check.
_UNKNOWN_USER_HASH = bcrypt.hashpw(b"unknown-user", bcrypt.gensalt()).decode()


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        bcrypt.checkpw(password.encode(), _UNKNOWN_USER_HASH.encode())
        return False
    return bcrypt.checkpw(password.encode(), password_hash.encode())


def authenticate(db: Database, username: str, password: str) -> bool:
    user = db[USERS].find_one({"username": username})
    return verify_password(password, user["password_hash"] if user else None)


def create_access_token(username: str, now: Optional[datetime] = None) -> str:
    issued = now or utcnow()
    payload = {"sub": username, "iat": issued, "exp": issued + TOKEN_LIFETIME}
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str) -> str:
    """Return the username a token was issued to."""
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise InvalidTokenError("Token expired")
    except jwt.InvalidTokenError:
        raise InvalidTokenError("Invalid token")
    username = payload.get("sub")
    if not username:
        raise InvalidTokenError("Invalid token")
    return username


def require_owner(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Database = Depends(get_db),
) -> str:
    if credentials is None:
        raise AuthenticationError("Access denied. No token provided.")
    username = decode_access_token(credentials.credentials)
    if db[USERS].find_one({"username": username}) is None:
        logger.warning("Token presented for unknown user %s", username)
        raise InvalidTokenError("Invalid token")
    return username
