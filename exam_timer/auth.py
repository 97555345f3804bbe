"""Token verification against the school backend.

The service never interprets tokens itself. It asks the backend whether a
token belongs to a teacher or a student and caches the answer briefly.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from .errors import Unauthorized

logger = logging.getLogger(__name__)

TEACHER = "teacher"
STUDENT = "student"

# (role, path) pairs tried in order
VERIFY_ENDPOINTS = (
    (TEACHER, "/users/verifyTeacherToken"),
    (STUDENT, "/students/verifyStudentToken"),
)


@dataclass(frozen=True)
class Identity:
    valid: bool
    role: str | None = None
    user: dict[str, Any] = field(default_factory=dict)


INVALID = Identity(valid=False)


class Authenticator(Protocol):
    async def verify(self, token: str) -> Identity: ...


def extract_bearer(authorization: str | None) -> str | None:
    """Pull the token out of an ``Authorization: Bearer ...`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def require_role(
    authenticator: Authenticator, token: str | None, roles: list[str]
) -> Identity:
    """Verify a credential and check its role, raising ``Unauthorized``."""
    if not token:
        raise Unauthorized("Token required")
    identity = await authenticator.verify(token)
    if not identity.valid:
        raise Unauthorized("Invalid token")
    if identity.role not in roles:
        raise Unauthorized(f"Only {', '.join(roles)} accounts may control exams")
    return identity


class IdentityGateway:
    """Verifies tokens over HTTP, caching results for ``cache_ttl`` seconds."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        cache_ttl: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.cache_ttl = cache_ttl
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )
        self._cache: dict[str, tuple[Identity, float]] = {}

    async def verify(self, token: str) -> Identity:
        cached = self._cache.get(token)
        now = time.monotonic()
        if cached is not None and cached[1] > now:
            return cached[0]

        identity = INVALID
        backend_failed = False
        for role, path in VERIFY_ENDPOINTS:
            result = await self._verify_with(role, path, token)
            if result is None:
                backend_failed = True
                continue
            if result.valid:
                identity = result
                break

        # Outages are not remembered as rejections
        if identity.valid or not backend_failed:
            self._cache[token] = (identity, now + self.cache_ttl)
        self._evict_expired(now)
        return identity

    async def _verify_with(self, role: str, path: str, token: str) -> Identity | None:
        try:
            response = await self._client.get(
                path, headers={"Authorization": f"Bearer {token}"}
            )
            if response.is_client_error:
                return INVALID
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Token verification via %s failed: %s", path, e)
            return None

        if not isinstance(data, dict) or not data.get("valid"):
            return INVALID
        user = data.get("user")
        return Identity(valid=True, role=role, user=user if isinstance(user, dict) else {})

    def _evict_expired(self, now: float):
        expired = [token for token, (_, expires) in self._cache.items() if expires <= now]
        for token in expired:
            del self._cache[token]

    async def aclose(self):
        await self._client.aclose()
