import pytest

from errors import Unauthenticated
from security import (
    bearer_token,
    hash_password,
    issue_token,
    read_token,
    verify_password,
)


def test_password_hash_round_trip():
    hashed = hash_password("s3cret-pass", rounds=4)
    assert hashed != "s3cret-pass"
    assert verify_password("s3cret-pass", hashed)
    assert not verify_password("wrong-pass", hashed)


def test_verify_password_rejects_malformed_hash():
    assert not verify_password("anything", "not-a-bcrypt-hash")


def test_token_carries_user_id_and_role():
    token = issue_token(42, "user", secret_key="k1")
    data = read_token(token, max_age_secs=60, secret_key="k1")
    assert data == {"id": 42, "role": "user"}


def test_token_signed_with_other_key_is_rejected():
    token = issue_token(42, "user", secret_key="k1")
    with pytest.raises(Unauthenticated):
        read_token(token, max_age_secs=60, secret_key="k2")


def test_expired_token_is_rejected():
    token = issue_token(42, "user", secret_key="k1")
    with pytest.raises(Unauthenticated) as exc_info:
        read_token(token, max_age_secs=-1, secret_key="k1")
    assert exc_info.value.message == "Invalid or expired token"


@pytest.mark.parametrize("token", [None, "", "garbage.token.value"])
def test_missing_or_malformed_token_is_rejected(token):
    with pytest.raises(Unauthenticated):
        read_token(token, max_age_secs=60, secret_key="k1")


def test_bearer_token_parsing():
    assert bearer_token("Bearer abc.def") == "abc.def"
    assert bearer_token("bearer abc") == "abc"
    assert bearer_token("Basic abc") is None
    assert bearer_token("Bearer ") is None
    assert bearer_token(None) is None
