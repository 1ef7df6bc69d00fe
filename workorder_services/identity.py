"""
Identity providers.

The kernel acts on an ``Actor`` and never sees credentials. A provider
turns whatever the caller holds (session token, API key) into an Actor or
raises ``UnauthenticatedError``.
"""

from __future__ import annotations

from typing import Mapping, Protocol, runtime_checkable

from workorder_kernel.domain.roles import Actor
from workorder_kernel.exceptions import UnauthenticatedError
from workorder_kernel.logging_config import get_logger

logger = get_logger("services.identity")


@runtime_checkable
class IdentityProvider(Protocol):
    def authenticate(self, credential: str) -> Actor: ...


class StaticTokenIdentityProvider:
    """Fixed token -> Actor table, for development and tests."""

    def __init__(self, tokens: Mapping[str, Actor]):
        self._tokens = dict(tokens)

    def authenticate(self, credential: str) -> Actor:
        actor = self._tokens.get(credential or "")
        if actor is None:
            logger.warning("authentication_failed")
            raise UnauthenticatedError()
        return actor
