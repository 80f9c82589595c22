import pytest
from jose import jwt

from config import settings
from services.session_token import create_session_token, decode_session_token


def test_trainer_token_carries_role():
    issued = create_session_token("trainer-ada", "trainer", email="ada@example.com")
    payload = decode_session_token(issued["token"])
    assert payload["sub"] == "trainer-ada"
    assert payload["role"] == "trainer"
    assert payload["email"] == "ada@example.com"


def test_unknown_role_is_refused():
    with pytest.raises(ValueError):
        create_session_token("someone", "admin")


def test_foreign_token_type_is_rejected():
    token = jwt.encode(
        {"sub": "student-sam", "role": "student", "type": "password_reset"},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    with pytest.raises(ValueError, match="type"):
        decode_session_token(token)


def test_tampered_token_is_rejected():
    token = create_session_token("student-sam")["token"]
    with pytest.raises(ValueError):
        decode_session_token(token[:-2] + ("AA" if not token.endswith("AA") else "BB"))
