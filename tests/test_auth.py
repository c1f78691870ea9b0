"""
Tests for caller authentication.
"""

import time

import jwt
import pytest

from funnelcore.completion.auth import (
    CallerIdentity,
    JwtCallerResolver,
    StaticCallerResolver,
    extract_bearer_token,
)

SECRET = "test-secret-that-is-long-enough-for-hs256"


def _token(claims, secret=SECRET):
    return jwt.encode(claims, secret, algorithm="HS256")


class TestExtractBearerToken:

    def test_valid(self):
        assert extract_bearer_token("Bearer abc") == "abc"

    def test_rejects_other_schemes(self):
        assert extract_bearer_token("Basic abc") is None
        assert extract_bearer_token("abc") is None
        assert extract_bearer_token("Bearer   ") is None
        assert extract_bearer_token(None) is None


class TestJwtCallerResolver:

    def test_valid_token(self):
        resolver = JwtCallerResolver(SECRET)
        caller = resolver.resolve_caller(f"Bearer {_token({'sub': 'user-1'})}")
        assert caller == CallerIdentity(user_id="user-1")

    def test_expired_token(self):
        resolver = JwtCallerResolver(SECRET)
        token = _token({"sub": "user-1", "exp": int(time.time()) - 60})
        assert resolver.resolve_caller(f"Bearer {token}") is None

    def test_wrong_secret(self):
        resolver = JwtCallerResolver(SECRET)
        token = _token({"sub": "user-1"}, secret="some-other-secret-of-decent-length")
        assert resolver.resolve_caller(f"Bearer {token}") is None

    def test_garbage_token(self):
        assert JwtCallerResolver(SECRET).resolve_caller("Bearer not.a.jwt") is None

    def test_missing_sub(self):
        resolver = JwtCallerResolver(SECRET)
        assert resolver.resolve_caller(f"Bearer {_token({'role': 'patient'})}") is None

    def test_audience_checked_when_configured(self):
        resolver = JwtCallerResolver(SECRET, audience="funnelcore")
        good = _token({"sub": "user-1", "aud": "funnelcore"})
        bad = _token({"sub": "user-1", "aud": "elsewhere"})
        assert resolver.resolve_caller(f"Bearer {good}").user_id == "user-1"
        assert resolver.resolve_caller(f"Bearer {bad}") is None

    def test_audience_ignored_when_not_configured(self):
        resolver = JwtCallerResolver(SECRET)
        token = _token({"sub": "user-1", "aud": "anything"})
        assert resolver.resolve_caller(f"Bearer {token}").user_id == "user-1"

    def test_no_bearer_prefix(self):
        resolver = JwtCallerResolver(SECRET)
        assert resolver.resolve_caller(_token({"sub": "user-1"})) is None

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            JwtCallerResolver("")


class TestStaticCallerResolver:

    def test_lookup(self):
        resolver = StaticCallerResolver({"tok": "user-9"})
        assert resolver.resolve_caller("Bearer tok").user_id == "user-9"
        assert resolver.resolve_caller("Bearer other") is None

    def test_add_token(self):
        resolver = StaticCallerResolver()
        assert resolver.resolve_caller("Bearer new") is None
        resolver.add_token("new", "user-3")
        assert resolver.resolve_caller("Bearer new") == CallerIdentity(user_id="user-3")
