import pytest

from errors import Conflict, ValidationFailure
from users import create_user, ensure_admin, get_user_by_email, get_user_by_id


def test_create_user_forces_customer_role(store):
    user = create_user({
        "name": "Asha", "email": "a@x.com", "mobile": "1", "address": "here",
        "password": "pw", "is_admin": True,
    })
    assert user.is_admin is False
    assert get_user_by_id(user.id).is_admin is False


def test_password_is_stored_as_given(store, make_user):
    user = make_user()
    assert get_user_by_id(user.id).password == "secret1"


def test_duplicate_email_conflicts(store, make_user):
    first = make_user(email="a@x.com", name="First")
    with pytest.raises(Conflict):
        make_user(email="a@x.com", name="Second")
    found = get_user_by_email("a@x.com")
    assert found.id == first.id
    assert found.name == "First"


def test_lookups_return_none_when_absent(store):
    assert get_user_by_email("nobody@x.com") is None
    assert get_user_by_id("missing") is None


def test_email_lookup_is_exact(store, make_user):
    make_user(email="Case@x.com")
    assert get_user_by_email("Case@x.com") is not None
    assert get_user_by_email("case@x.com") is None


def test_invalid_user_data_fails_validation(store):
    with pytest.raises(ValidationFailure):
        create_user({"name": "No Email", "password": "pw"})


def test_ensure_admin_is_idempotent(store):
    first = ensure_admin("admin@horizonstores.com", "hashed")
    second = ensure_admin("admin@horizonstores.com", "other")
    assert first.is_admin is True
    assert second.id == first.id
    assert get_user_by_email("admin@horizonstores.com").password == "hashed"
