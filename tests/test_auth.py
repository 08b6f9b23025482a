import time

import pytest

from dds_ai import app_db, auth
from dds_ai.config import TOKEN_TTL_S
from dds_ai.errors import Forbidden, Unauthorized, ValidationError


def test_signup_token_resolves_to_new_user(db):
    user, token = auth.signup(email="Ada@Example.com ", password="secret1", name="Ada")

    identity = auth.verify(token)

    assert user["email"] == "ada@example.com"
    assert identity.user_id == user["id"]
    assert identity.email == "ada@example.com"
    assert identity.name == "Ada"


def test_signin_issues_token_for_same_user(db):
    user, first = auth.signup(email="ada@example.com", password="secret1", name="Ada")
    again, second = auth.signin(email="ADA@example.com", password="secret1")

    assert again == user
    assert auth.verify(first).user_id == auth.verify(second).user_id == user["id"]


def test_signin_with_wrong_password_is_unauthorized(db):
    auth.signup(email="ada@example.com", password="secret1", name="Ada")
    with pytest.raises(Unauthorized):
        auth.signin(email="ada@example.com", password="wrong-pass")
    with pytest.raises(Unauthorized):
        auth.signin(email="nobody@example.com", password="secret1")


def test_duplicate_email_rejected(db):
    auth.signup(email="ada@example.com", password="secret1", name="Ada")
    with pytest.raises(ValidationError):
        auth.signup(email="ADA@example.com", password="another1", name="Ada 2")
    assert app_db.count_users() == 1


@pytest.mark.parametrize(
    "email,password,name",
    [
        ("", "secret1", "Ada"),
        ("ada@example.com", "", "Ada"),
        ("ada@example.com", "secret1", " "),
        ("not-an-email", "secret1", "Ada"),
        ("ada@example.com", "12345", "Ada"),
    ],
)
def test_signup_field_checks(db, email, password, name):
    with pytest.raises(ValidationError):
        auth.signup(email=email, password=password, name=name)


def test_missing_credential_is_unauthorized(db):
    with pytest.raises(Unauthorized):
        auth.verify(None)
    with pytest.raises(Unauthorized):
        auth.verify("")


def test_unknown_credential_is_forbidden(db):
    with pytest.raises(Forbidden):
        auth.verify("definitely-not-a-token")


def test_expired_credential_is_forbidden(db):
    user, _ = auth.signup(email="ada@example.com", password="secret1", name="Ada")
    stale = auth.issue_token(app_db.get_user(user["id"]), ttl_s=-60)

    with pytest.raises(Forbidden):
        auth.verify(stale)


def test_token_decodes_to_user_id_and_expiry(db):
    user, token = auth.signup(email="ada@example.com", password="secret1", name="Ada")
    claims = auth.decode_token(token)

    assert claims["sub"] == user["id"]
    assert claims["exp"] - time.time() == pytest.approx(TOKEN_TTL_S, abs=5)


def test_tampered_credential_is_forbidden(db):
    _, token = auth.signup(email="ada@example.com", password="secret1", name="Ada")
    body, signature = token.rsplit(".", 1)
    forged = auth.encode_token({"sub": "someone-else", "exp": int(time.time()) + 60}).rsplit(".", 1)[0]

    with pytest.raises(Forbidden):
        auth.verify(f"{forged}.{signature}")
    with pytest.raises(Forbidden):
        auth.verify(f"{body}.{'0' * len(signature)}")
    with pytest.raises(Forbidden):
        auth.verify("!!!not-base64!!!.abc")


def test_verify_does_not_use_the_store(db, monkeypatch):
    _, token = auth.signup(email="ada@example.com", password="secret1", name="Ada")
    db_bytes = db.read_bytes()

    def no_store(*args, **kwargs):
        raise AssertionError("verify must not open the database")

    monkeypatch.setattr(app_db, "_connect", no_store)
    identity = auth.verify(token)
    auth.verify(token)

    assert identity.email == "ada@example.com"
    assert db.read_bytes() == db_bytes


@pytest.mark.parametrize(
    "header,expected",
    [
        ("Bearer abc", "abc"),
        ("bearer   abc ", "abc"),
        ("Token abc", None),
        ("Bearer", None),
        ("", None),
        (None, None),
    ],
)
def test_bearer_token_parsing(header, expected):
    assert auth.bearer_token(header) == expected


def test_password_hash_round_trip():
    stored = auth.hash_password("secret1")
    assert stored.startswith("pbkdf2_sha256$")
    assert auth.verify_password("secret1", stored)
    assert not auth.verify_password("secret2", stored)
    assert not auth.verify_password("secret1", "garbage")
