"""Composition root wiring keys, platform registry and protocol clients."""

from __future__ import annotations

import logging

import httpx

from .ags import AGSClient
from .config import LTISettings
from .errors import LTIAuthenticationError
from .keys import ToolKeySet
from .launch import LaunchHandshake
from .nrps import NRPSClient
from .oauth import AssertionClient
from .platform_store import PlatformStore
from .registration import DynamicRegistration
from .sessions import SessionBackend, SessionPayload, build_session_backend
from .urls import LMSHttp, UrlRewriter


logger = logging.getLogger(__name__)


class LTIEngine:
    """Owns every collaborator of the LTI flows for one tool deployment.

    Built once at application start and handed to the HTTP adapter. Tests
    pass an ``httpx.MockTransport`` to stand in for the LMS.
    """

    def __init__(
        self,
        settings: LTISettings,
        key_set: ToolKeySet,
        *,
        platform_store: PlatformStore | None = None,
        session_backend: SessionBackend | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.key_set = key_set
        self.platforms = platform_store or PlatformStore(settings.platform_store_path)
        self.rewriter = UrlRewriter(settings.rewrites)
        self.http = LMSHttp(self.rewriter, timeout=settings.http_timeout, transport=transport)
        self.sessions = session_backend or build_session_backend(settings.session_backend, key_set)
        self.tokens = AssertionClient(key_set, self.platforms, self.http, cache_ttl=settings.token_cache_ttl)
        self.launch = LaunchHandshake(
            key_set,
            self.platforms,
            self.http,
            self.sessions,
            redirect_uri=settings.launch_url,
        )
        self.registration = DynamicRegistration(settings, self.platforms, self.http)
        self.ags = AGSClient(self.tokens, self.platforms, self.http)
        self.nrps = NRPSClient(self.tokens, self.http, max_pages=settings.nrps_max_pages)
        if self.rewriter.rules:
            logger.info("Réécriture des URL LMS active (%d règles)", len(self.rewriter.rules))

    @classmethod
    def from_env(cls) -> "LTIEngine":
        return cls(LTISettings.from_env(), ToolKeySet.from_env())

    def jwks_document(self) -> dict:
        return self.key_set.jwks_document()

    def load_session(self, token: str | None) -> SessionPayload:
        if not token:
            raise LTIAuthenticationError("Jeton de session LTI manquant.")
        return self.sessions.load(token)


__all__ = ["LTIEngine"]
