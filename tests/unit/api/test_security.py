"""Tests for access token handling."""

from datetime import timedelta
from uuid import uuid4

from jose import jwt

from labflow.core.config import get_settings
from labflow.core.security import create_access_token, decode_token


def test_round_trip():
    user_id = uuid4()
    assert decode_token(create_access_token(user_id)) == user_id


def test_expired_token():
    token = create_access_token(uuid4(), expires_delta=timedelta(seconds=-10))
    assert decode_token(token) is None


def test_garbage_token():
    assert decode_token("not-a-jwt") is None


def test_wrong_token_type():
    settings = get_settings()
    token = jwt.encode({"sub": str(uuid4()), "type": "refresh"}, settings.secret_key, algorithm=settings.algorithm)
    assert decode_token(token) is None


def test_subject_must_be_uuid():
    settings = get_settings()
    token = jwt.encode({"sub": "alice", "type": "access"}, settings.secret_key, algorithm=settings.algorithm)
    assert decode_token(token) is None
