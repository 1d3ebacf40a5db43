import pytest
from pydantic import ValidationError

from autovault.api.schemas import (
    AccountStatusRequest,
    LoginRequest,
    MFALoginRequest,
    PasswordChangeRequest,
    PasswordConfirmRequest,
    RegisterRequest,
)


def test_register_normalizes_email():
    body = RegisterRequest(username="alice", email="  Alice@Example.COM ", password="Abcdef12")
    assert body.email == "alice@example.com"


@pytest.mark.parametrize("email", ["invalid-email", "a@b", "a@-x.com", "@x.com"])
def test_register_rejects_bad_email(email):
    with pytest.raises(ValidationError):
        RegisterRequest(username="alice", email=email, password="Abcdef12")


@pytest.mark.parametrize("username", ["ab", "x" * 33, "has space", "semi;colon"])
def test_register_rejects_bad_username(username):
    with pytest.raises(ValidationError):
        RegisterRequest(username=username, email="a@x.com", password="Abcdef12")


def test_zero_width_characters_are_stripped():
    body = RegisterRequest(username="al\u200bice", email="a@x.com", password="Abcdef12")
    assert body.username == "alice"


def test_login_identity_aliases():
    assert LoginRequest(email="a@x.com", password="p").identity == "a@x.com"
    assert LoginRequest(username="alice", password="p").identity == "alice"
    assert LoginRequest(identity=" alice ", password="p").identity == "alice"


def test_camel_case_aliases():
    assert MFALoginRequest(userId="u1", code="123456").user_id == "u1"
    change = PasswordChangeRequest(currentPassword="Old12345", newPassword="New12345")
    assert change.current_password == "Old12345"
    assert change.new_password == "New12345"


def test_password_confirm_defaults_empty():
    assert PasswordConfirmRequest().password == ""


def test_status_is_lowercased_and_checked():
    assert AccountStatusRequest(status="Suspended").status == "suspended"
    with pytest.raises(ValidationError):
        AccountStatusRequest(status="banished")
