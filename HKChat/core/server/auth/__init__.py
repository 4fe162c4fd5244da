"""
Authentication module for the relay.

Validates the JWT supplied at connect time. The token may arrive as a
``token`` query parameter, an ``Authorization: Bearer`` header or an
``authToken`` cookie.
"""

import logging
from typing import Any, List, Optional
from urllib.parse import parse_qs

import jwt

from HKChat.config import config
from HKChat.core.server.interfaces import Authenticator, AuthResult

logger = logging.getLogger(__name__)


class JWTAuthenticator:
    """
    JWT-based authenticator implementation.

    The user identity is read from the ``id`` claim, falling back to
    ``sub``.
    """

    def __init__(
        self,
        secret: str = None,
        algorithm: str = None,
        token_extractor=None
    ):
        """
        Initialize JWT authenticator.

        Args:
            secret: JWT secret key (defaults to config.JWT_SECRET)
            algorithm: JWT algorithm (defaults to config.JWT_ALGORITHM)
            token_extractor: Optional custom token extractor
        """
        self._secret = secret or config.JWT_SECRET
        self._algorithm = algorithm or config.JWT_ALGORITHM
        self._token_extractor = token_extractor or DefaultTokenExtractor()

    async def authenticate(self, token: str) -> AuthResult:
        """
        Validate a JWT token.

        Args:
            token: JWT token string

        Returns:
            AuthResult with authentication status and user id
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm]
            )
        except jwt.ExpiredSignatureError:
            logger.warning("Authentication failed: Token expired")
            return AuthResult(
                success=False,
                error_message="Token has expired",
                error_code="TOKEN_EXPIRED"
            )
        except jwt.InvalidTokenError as e:
            logger.warning("Authentication failed: Invalid token - %s", e)
            return AuthResult(
                success=False,
                error_message="Invalid token",
                error_code="INVALID_TOKEN"
            )

        user_id = payload.get("id")
        if user_id is None:
            user_id = payload.get("sub")
        if user_id is None or user_id == "":
            return AuthResult(
                success=False,
                error_message="No user identity in token payload",
                error_code="INVALID_PAYLOAD"
            )

        return AuthResult(success=True, user_id=user_id)

    def extract_token(self, transport_context: Any) -> Optional[str]:
        return self._token_extractor.extract(transport_context)


class DefaultTokenExtractor:
    """
    Extracts the credential from a websockets server connection.

    Supports:
    - URL query parameters (?token=xxx)
    - Authorization header (Bearer xxx)
    - Cookie headers (authToken=xxx)
    """

    def extract(self, websocket: Any) -> Optional[str]:
        return (
            self._extract_from_query(websocket)
            or self._extract_from_authorization(websocket)
            or self._extract_from_cookie(websocket)
        )

    def _extract_from_query(self, websocket: Any) -> Optional[str]:
        path = self._get_path(websocket)
        if path and "?" in path:
            _, query = path.split("?", 1)
            tokens = parse_qs(query).get("token", [])
            if tokens:
                return tokens[0]
        return None

    def _extract_from_authorization(self, websocket: Any) -> Optional[str]:
        for header in self._get_header_values(websocket, "Authorization"):
            if header.startswith("Bearer "):
                return header[len("Bearer "):].strip() or None
        return None

    def _extract_from_cookie(self, websocket: Any) -> Optional[str]:
        for cookie_header in self._get_header_values(websocket, "Cookie"):
            for cookie in cookie_header.split(";"):
                name, _, value = cookie.strip().partition("=")
                if name == "authToken" and value:
                    return value.strip()
        return None

    # noinspection PyMethodMayBeStatic
    def _get_path(self, websocket: Any) -> Optional[str]:
        request = getattr(websocket, "request", None)
        if request is not None:
            path = getattr(request, "path", None)
            if path:
                return path
        return getattr(websocket, "path", None)

    # noinspection PyMethodMayBeStatic
    def _get_header_values(self, websocket: Any, name: str) -> List[str]:
        request = getattr(websocket, "request", None)
        headers = getattr(request, "headers", None)
        if headers is None:
            return []
        # websockets Headers may repeat a name
        if hasattr(headers, "get_all"):
            return list(headers.get_all(name))
        value = headers.get(name)
        return [value] if value else []


class AuthenticationMiddleware:
    """
    Runs extraction and validation for a new connection.
    """

    def __init__(self, authenticator: Authenticator):
        self._authenticator = authenticator

    async def authenticate_connection(self, transport_context: Any) -> AuthResult:
        """
        Authenticate a connection.

        Args:
            transport_context: Transport-specific context

        Returns:
            AuthResult with authentication status
        """
        token = self._authenticator.extract_token(transport_context)

        if not token:
            return AuthResult(
                success=False,
                error_message="Authentication required",
                error_code="NO_TOKEN"
            )

        return await self._authenticator.authenticate(token)


__all__ = [
    'JWTAuthenticator',
    'DefaultTokenExtractor',
    'AuthenticationMiddleware',
]
