"""
User repository: registration, lookups and the administrator bootstrap.

The password field is an opaque credential: it is stored exactly as handed
in. Hashing happens before this layer (see auth.py).
"""

import logging
from typing import Optional

from pydantic import ValidationError

from database import get_store
from errors import Conflict, ValidationFailure
from schemas import User, UserCreate, new_id, utcnow

logger = logging.getLogger(__name__)


def _build(data, is_admin: bool) -> User:
    try:
        fields = data if isinstance(data, UserCreate) else UserCreate.model_validate(data)
    except ValidationError as exc:
        raise ValidationFailure(f"Invalid user data: {exc.errors()[0]['msg']}") from exc
    return User(id=new_id(), is_admin=is_admin, created_at=utcnow(), **fields.model_dump())


def create_user(data) -> User:
    """Register a customer. Raises Conflict when the email is already taken."""
    user = _build(data, is_admin=False)
    get_store().insert_user(user.model_dump())
    logger.info("Created user %s", user.id)
    return user


def get_user_by_email(email: str) -> Optional[User]:
    doc = get_store().find_user(email=email)
    return User.model_validate(doc) if doc else None


def get_user_by_id(user_id: str) -> Optional[User]:
    doc = get_store().find_user(id=user_id)
    return User.model_validate(doc) if doc else None


def ensure_admin(email: str, password: str, name: str = "Admin",
                 mobile: str = "1234567890", address: str = "Horizon Stores HQ") -> User:
    """Create the administrator account unless it already exists."""
    existing = get_user_by_email(email)
    if existing is not None:
        return existing
    admin = _build({"name": name, "email": email, "mobile": mobile,
                    "address": address, "password": password}, is_admin=True)
    try:
        get_store().insert_user(admin.model_dump())
    except Conflict:
        # another process seeded it first
        return get_user_by_email(email)
    logger.info("Seeded administrator %s", email)
    return admin
