"""
tests/test_jwt_startup — JWT Secret Validation at Startup
===========================================================
The API must refuse to start when JWT_SECRET is missing, blank, too short,
or a known weak default.  Also covers token decoding and the admin claim.
"""

from __future__ import annotations

import os
from unittest.mock import patch

import jwt
import pytest
from jwt import InvalidTokenError

from conftest import make_token
from startorigin.api import deps


class TestJWTSecretValidation:
    """_load_jwt_secret() rejects bad secrets and accepts good ones."""

    def test_rejects_missing_secret(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("JWT_SECRET", None)
            with pytest.raises(RuntimeError, match="JWT_SECRET environment variable is not set"):
                deps._load_jwt_secret()

    def test_rejects_empty_secret(self):
        with patch.dict(os.environ, {"JWT_SECRET": ""}):
            with pytest.raises(RuntimeError, match="JWT_SECRET environment variable is not set"):
                deps._load_jwt_secret()

    def test_rejects_known_weak_default(self):
        weak = "super-secret-jwt-token-with-at-least-32-characters-long"
        with patch.dict(os.environ, {"JWT_SECRET": weak}):
            with pytest.raises(RuntimeError, match="known weak default"):
                deps._load_jwt_secret()

    def test_rejects_short_secret(self):
        with patch.dict(os.environ, {"JWT_SECRET": "tooshort"}):
            with pytest.raises(RuntimeError, match="too short"):
                deps._load_jwt_secret()

    def test_accepts_strong_secret(self):
        good_secret = "a" * 64
        with patch.dict(os.environ, {"JWT_SECRET": good_secret}):
            assert deps._load_jwt_secret() == good_secret

    def test_rejects_change_me_variant(self):
        with patch.dict(os.environ, {"JWT_SECRET": "change-me"}):
            with pytest.raises(RuntimeError, match="known weak default"):
                deps._load_jwt_secret()


class TestDecodeToken:
    def test_valid_token(self):
        claims = deps.decode_token(make_token("user-1"))
        assert claims["sub"] == "user-1"
        assert deps.is_admin(claims) is False

    def test_admin_role_claim(self):
        assert deps.is_admin(deps.decode_token(make_token("user-1", admin=True)))
        assert deps.is_admin({"app_metadata": {"role": "admin"}})

    def test_wrong_secret_rejected(self):
        forged = jwt.encode({"sub": "user-1"}, "x" * 64, algorithm="HS256")
        with pytest.raises(InvalidTokenError):
            deps.decode_token(forged)

    def test_missing_subject_rejected(self):
        token = jwt.encode({"role": "authenticated"}, deps.JWT_SECRET, algorithm="HS256")
        with pytest.raises(InvalidTokenError):
            deps.decode_token(token)
