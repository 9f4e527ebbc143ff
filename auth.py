"""
Credential hashing and session tokens.

Passwords are hashed here before they reach the user repository, and a
signed token carries the caller's identity into each request. The token
resolves to a `Session` value that handlers pass on explicitly.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

import config
from schemas import Session, User, UserCreate
from users import create_user, get_user_by_email

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # stored value is not a hash this context knows
        return False


def register(data: UserCreate) -> User:
    """Create a customer account with a hashed credential."""
    return create_user(data.model_copy(update={"password": hash_password(data.password)}))


def authenticate(email: str, password: str) -> Optional[User]:
    user = get_user_by_email(email)
    if user is None or not verify_password(password, user.password):
        return None
    return user


def create_access_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": user.id, "admin": user.is_admin, "exp": expire}
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def decode_session(token: str) -> Optional[Session]:
    """Return the session a token stands for, or None if it is invalid or expired."""
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    except JWTError:
        return None
    user_id = payload.get("sub")
    if user_id is None:
        return None
    return Session(user_id=user_id, is_admin=bool(payload.get("admin", False)))
