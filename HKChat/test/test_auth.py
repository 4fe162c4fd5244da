"""
Tests for connect-time authentication.
"""

from types import SimpleNamespace

import jwt
import pytest
from websockets.datastructures import Headers

from HKChat.core.server.auth import AuthenticationMiddleware, DefaultTokenExtractor, JWTAuthenticator
from HKChat.test.conftest import TestDataGenerator

SECRET = "test-secret"


def _websocket(path="/", headers=None):
    return SimpleNamespace(request=SimpleNamespace(path=path, headers=Headers(headers or {})))


class TestJWTAuthenticator:
    """Test token validation."""

    def setup_method(self):
        self.auth = JWTAuthenticator(secret=SECRET, algorithm="HS256")

    @pytest.mark.asyncio
    async def test_id_claim(self):
        token = TestDataGenerator.generate_jwt_token(5, secret=SECRET)
        result = await self.auth.authenticate(token)
        assert result.success and result.user_id == 5

    @pytest.mark.asyncio
    async def test_sub_claim_fallback(self):
        token = TestDataGenerator.generate_jwt_token("u-5", secret=SECRET, claim="sub")
        result = await self.auth.authenticate(token)
        assert result.success and result.user_id == "u-5"

    @pytest.mark.asyncio
    async def test_expired_token(self):
        token = TestDataGenerator.generate_jwt_token(5, secret=SECRET, expires_in=-60)
        result = await self.auth.authenticate(token)
        assert not result.success
        assert result.error_code == "TOKEN_EXPIRED"

    @pytest.mark.asyncio
    async def test_wrong_secret(self):
        token = TestDataGenerator.generate_jwt_token(5, secret="other-secret")
        result = await self.auth.authenticate(token)
        assert result.error_code == "INVALID_TOKEN"

    @pytest.mark.asyncio
    async def test_missing_identity(self):
        token = jwt.encode({"name": "x"}, SECRET, algorithm="HS256")
        result = await self.auth.authenticate(token)
        assert result.error_code == "INVALID_PAYLOAD"


class TestDefaultTokenExtractor:
    """Test the three credential locations."""

    def setup_method(self):
        self.extractor = DefaultTokenExtractor()

    def test_query_parameter(self):
        assert self.extractor.extract(_websocket("/?token=abc")) == "abc"

    def test_bearer_header(self):
        assert self.extractor.extract(_websocket(headers={"Authorization": "Bearer abc"})) == "abc"

    def test_cookie(self):
        ws = _websocket(headers={"Cookie": "theme=dark; authToken=abc"})
        assert self.extractor.extract(ws) == "abc"

    def test_query_wins(self):
        ws = _websocket("/?token=q", headers={"Authorization": "Bearer h"})
        assert self.extractor.extract(ws) == "q"

    def test_nothing(self):
        assert self.extractor.extract(_websocket()) is None


class TestAuthenticationMiddleware:
    @pytest.mark.asyncio
    async def test_no_token(self):
        middleware = AuthenticationMiddleware(JWTAuthenticator(secret=SECRET))
        result = await middleware.authenticate_connection(_websocket())
        assert not result.success
        assert result.error_code == "NO_TOKEN"

    @pytest.mark.asyncio
    async def test_valid_token(self):
        token = TestDataGenerator.generate_jwt_token(3, secret=SECRET)
        middleware = AuthenticationMiddleware(JWTAuthenticator(secret=SECRET, algorithm="HS256"))
        result = await middleware.authenticate_connection(_websocket(f"/?token={token}"))
        assert result.success and result.user_id == 3
