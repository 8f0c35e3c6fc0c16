"""
Bearer-token providers.

Token acquisition itself (sign-in, refresh) belongs to the host application;
the transport only asks for the current token before each handshake call.
"""
from __future__ import annotations

import inspect
from typing import Awaitable, Callable, Optional, Protocol, Union

from .errors import AuthenticationRequired


class TokenProvider(Protocol):
    async def get_access_token(self) -> str:
        """Return the current bearer token or raise AuthenticationRequired."""
        ...


class StaticTokenProvider:
    """A fixed token, e.g. from CONVERSATION_ACCESS_TOKEN."""

    def __init__(self, token: Optional[str]):
        self._token = token

    async def get_access_token(self) -> str:
        if not self._token:
            raise AuthenticationRequired("Authentication required for conversation")
        return self._token


class CallableTokenProvider:
    """Adapts a sync or async callable (e.g. an auth client's session getter)."""

    def __init__(self, fn: Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]):
        self._fn = fn

    async def get_access_token(self) -> str:
        token = self._fn()
        if inspect.isawaitable(token):
            token = await token
        if not token:
            raise AuthenticationRequired("Authentication required for conversation")
        return token
