"""OAuth2 client_credentials grant with a signed JWT client assertion.

Access tokens for the LTI Advantage services are requested from the platform
token endpoint. A short per-platform, per-scope-set cache avoids one token
round trip per service call; set ``LTI_TOKEN_CACHE_TTL=0`` to disable it.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Iterable

from .errors import LTIUpstreamError
from .keys import ToolKeySet
from .platform_store import PlatformStore
from .urls import LMSHttp, ensure_success, response_json


logger = logging.getLogger(__name__)


CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
ASSERTION_TTL_SECONDS = 5 * 60

# margin kept between the platform expiry and our cache expiry
_EXPIRY_MARGIN_SECONDS = 30


@dataclass(slots=True)
class _CachedToken:
    access_token: str
    expires_at: float


class AssertionClient:
    def __init__(
        self,
        key_set: ToolKeySet,
        platforms: PlatformStore,
        http: LMSHttp,
        *,
        cache_ttl: int = 240,
    ) -> None:
        self._key_set = key_set
        self._platforms = platforms
        self._http = http
        self._cache_ttl = cache_ttl
        self._cache: dict[tuple[str, tuple[str, ...]], _CachedToken] = {}
        self._locks: dict[tuple[str, tuple[str, ...]], asyncio.Lock] = {}

    async def get_access_token(self, platform_id: str, scopes: Iterable[str]) -> str:
        scope_list = list(dict.fromkeys(scope for scope in scopes if scope))
        if self._cache_ttl <= 0:
            token, _ = await self._request_token(platform_id, scope_list)
            return token

        cache_key = (platform_id, tuple(sorted(scope_list)))
        lock = self._locks.setdefault(cache_key, asyncio.Lock())
        async with lock:
            cached = self._cache.get(cache_key)
            if cached is not None and cached.expires_at > time.monotonic():
                return cached.access_token
            token, expires_in = await self._request_token(platform_id, scope_list)
            ttl = self._cache_ttl
            if expires_in is not None:
                ttl = min(ttl, expires_in - _EXPIRY_MARGIN_SECONDS)
            if ttl > 0:
                self._cache[cache_key] = _CachedToken(token, time.monotonic() + ttl)
            return token

    def build_assertion(self, client_id: str, token_endpoint: str) -> str:
        payload = {
            "iss": client_id,
            "sub": client_id,
            "aud": token_endpoint,
            "jti": str(uuid.uuid4()),
        }
        return self._key_set.sign(payload, ASSERTION_TTL_SECONDS, kid=self._key_set.key_id)

    async def _request_token(self, platform_id: str, scopes: list[str]) -> tuple[str, int | None]:
        platform = self._platforms.require(platform_id)
        form_data = {
            "grant_type": "client_credentials",
            "client_assertion_type": CLIENT_ASSERTION_TYPE,
            "client_assertion": self.build_assertion(platform.client_id, platform.token_endpoint),
            "scope": " ".join(scopes),
        }
        response = await self._http.post(
            platform.token_endpoint,
            data=form_data,
            headers={"Accept": "application/json"},
        )
        ensure_success(response, "Demande de jeton d'accès")
        data = response_json(response, "Demande de jeton d'accès")
        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            raise LTIUpstreamError(
                "La plateforme n'a pas renvoyé d'access_token.",
                status_code=response.status_code,
                body=response.text,
            )
        expires_in = data.get("expires_in")
        logger.debug("Jeton d'accès obtenu pour %s (scopes=%s)", platform.issuer, form_data["scope"])
        return access_token, expires_in if isinstance(expires_in, int) else None


__all__ = ["ASSERTION_TTL_SECONDS", "AssertionClient", "CLIENT_ASSERTION_TYPE"]
