#!/usr/bin/env python3
"""
Tests for optional operator authentication.

Run with: pytest tests/test_auth.py -v
"""

from datetime import timedelta
from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from auth import ANONYMOUS, is_auth_enabled, require_operator, verify_token
from conftest import make_token
from settings import Settings


def _request(settings, cookies=None, headers=None):
    return SimpleNamespace(
        app=SimpleNamespace(state=SimpleNamespace(settings=settings)),
        cookies=cookies or {},
        headers=headers or {},
    )


@pytest.fixture
def auth_settings():
    return Settings(auth_enabled=True, jwt_secret="s3cret")


class TestTokens:

    def test_round_trip(self):
        token = make_token("operator-7", "s3cret")
        assert verify_token(token, "s3cret") == "operator-7"

    def test_wrong_secret(self):
        token = make_token("operator-7", "s3cret")
        assert verify_token(token, "other") is None

    def test_expired(self):
        token = make_token("operator-7", "s3cret", expires_delta=timedelta(seconds=-10))
        assert verify_token(token, "s3cret") is None

    def test_garbage(self):
        assert verify_token("not-a-jwt", "s3cret") is None


class TestIsAuthEnabled:

    def test_disabled_by_default(self):
        assert is_auth_enabled(Settings()) is False

    def test_enabled_without_secret_stays_disabled(self):
        assert is_auth_enabled(Settings(auth_enabled=True)) is False

    def test_enabled(self, auth_settings):
        assert is_auth_enabled(auth_settings) is True


class TestRequireOperator:

    @pytest.mark.asyncio
    async def test_anonymous_when_disabled(self):
        assert await require_operator(_request(Settings())) == ANONYMOUS

    @pytest.mark.asyncio
    async def test_missing_token(self, auth_settings):
        with pytest.raises(HTTPException) as exc_info:
            await require_operator(_request(auth_settings))
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_cookie(self, auth_settings):
        token = make_token("operator-7", "s3cret")
        request = _request(auth_settings, cookies={"access_token": token})
        assert await require_operator(request) == "operator-7"

    @pytest.mark.asyncio
    async def test_bearer_header(self, auth_settings):
        token = make_token("operator-9", "s3cret")
        request = _request(auth_settings, headers={"authorization": f"Bearer {token}"})
        assert await require_operator(request) == "operator-9"

    @pytest.mark.asyncio
    async def test_invalid_token(self, auth_settings):
        request = _request(auth_settings, headers={"authorization": "Bearer junk"})
        with pytest.raises(HTTPException) as exc_info:
            await require_operator(request)
        assert exc_info.value.status_code == 401
