import hashlib
from typing import Optional

from passlib.context import CryptContext

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return _pwd_context.verify(password, hashed)


def needs_rehash(hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return _pwd_context.needs_update(hashed)


def hash_session_token(token: str) -> str:
    # Sessions are stored as a one-way hash so a DB leak doesn't grant access.
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()


def username_from_email(email: str) -> str:
    base = (email or "").split("@", 1)[0].strip().lower()
    return base or "user"
