"""Launch state and session tokens.

A session is the verified launch context. By default it travels as a signed
JWT presented as a bearer credential (nothing stored server side). The memory
backend keeps the same payload behind an opaque identifier instead, for
deployments that prefer not to hand claims to the browser.
"""

from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import LTIAuthenticationError, MalformedTokenError, TokenExpiredError
from .keys import ToolKeySet


STATE_TTL_SECONDS = 10 * 60
SESSION_TTL_SECONDS = 24 * 60 * 60

RESOURCE_LINK_REQUEST = "LtiResourceLinkRequest"
DEEP_LINKING_REQUEST = "LtiDeepLinkingRequest"


class LtiContext(BaseModel):
    id: str = "unknown"
    title: str | None = None
    label: str | None = None
    type: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    @field_validator("type", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


class AgsEndpoint(BaseModel):
    lineitems: str | None = None
    lineitem: str | None = None
    scope: list[str] = Field(default_factory=list)

    @field_validator("scope", mode="before")
    @classmethod
    def _split_scope(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [item for item in value.split() if item]
        return value


class NrpsEndpoint(BaseModel):
    context_memberships_url: str
    service_versions: list[str] = Field(default_factory=lambda: ["2.0"])


class SessionPayload(BaseModel):
    sub: str
    name: str = ""
    email: str = ""
    roles: list[str] = Field(default_factory=list)
    context: LtiContext = Field(default_factory=LtiContext)
    issuer: str
    client_id: str = Field(alias="clientId")
    deployment_id: str | None = Field(default=None, alias="deploymentId")
    platform_id: str = Field(alias="platformId")
    message_type: str = Field(default=RESOURCE_LINK_REQUEST, alias="messageType")
    ags: AgsEndpoint | None = None
    nrps: NrpsEndpoint | None = None
    iat: int | None = None
    exp: int | None = None

    model_config = ConfigDict(populate_by_name=True)

    def claims(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"iat", "exp"})


@dataclass(slots=True)
class StatePayload:
    nonce: str
    platform_id: str
    iat: int | None = None
    exp: int | None = None


def create_state_token(key_set: ToolKeySet, nonce: str, platform_id: str) -> str:
    return key_set.sign({"nonce": nonce, "platformId": platform_id}, STATE_TTL_SECONDS)


def verify_state_token(key_set: ToolKeySet, token: str) -> StatePayload:
    payload = key_set.verify_self(token)
    nonce = payload.get("nonce")
    platform_id = payload.get("platformId")
    if not isinstance(nonce, str) or not isinstance(platform_id, str):
        raise MalformedTokenError("Jeton state incomplet (nonce ou platformId manquant).")
    return StatePayload(nonce=nonce, platform_id=platform_id, iat=payload.get("iat"), exp=payload.get("exp"))


class SessionBackend(Protocol):
    ttl_seconds: int

    def issue(self, payload: SessionPayload) -> str: ...

    def load(self, token: str) -> SessionPayload: ...


class SignedSessionBackend:
    """Stateless sessions: the token is the signed payload itself."""

    def __init__(self, key_set: ToolKeySet, ttl_seconds: int = SESSION_TTL_SECONDS) -> None:
        self._key_set = key_set
        self.ttl_seconds = ttl_seconds

    def issue(self, payload: SessionPayload) -> str:
        return self._key_set.sign(payload.claims(), self.ttl_seconds)

    def load(self, token: str) -> SessionPayload:
        claims = self._key_set.verify_self(token)
        try:
            return SessionPayload.model_validate(claims)
        except ValidationError as exc:
            raise MalformedTokenError("Jeton de session incomplet.") from exc


class MemorySessionBackend:
    """In-memory store for LTI launch sessions, keyed by an opaque identifier."""

    def __init__(self, ttl_seconds: int = SESSION_TTL_SECONDS) -> None:
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._sessions: dict[str, SessionPayload] = {}

    def issue(self, payload: SessionPayload) -> str:
        now = int(time.time())
        session_id = secrets.token_urlsafe(32)
        stored = payload.model_copy(update={"iat": now, "exp": now + self.ttl_seconds})
        with self._lock:
            self._purge(now)
            self._sessions[session_id] = stored
        return session_id

    def load(self, token: str) -> SessionPayload:
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                raise LTIAuthenticationError("Session LTI inconnue.")
            # sessions are never extended; expiry forces a new launch from the LMS
            if session.exp is not None and session.exp < int(time.time()):
                self._sessions.pop(token, None)
                raise TokenExpiredError("Session LTI expirée.")
            return session

    def _purge(self, now: int) -> None:
        expired = [key for key, value in self._sessions.items() if value.exp is not None and value.exp < now]
        for key in expired:
            self._sessions.pop(key, None)


def build_session_backend(kind: str, key_set: ToolKeySet) -> SessionBackend:
    if kind == "memory":
        return MemorySessionBackend()
    return SignedSessionBackend(key_set)


__all__ = [
    "AgsEndpoint",
    "DEEP_LINKING_REQUEST",
    "LtiContext",
    "MemorySessionBackend",
    "NrpsEndpoint",
    "RESOURCE_LINK_REQUEST",
    "SESSION_TTL_SECONDS",
    "STATE_TTL_SECONDS",
    "SessionBackend",
    "SessionPayload",
    "SignedSessionBackend",
    "StatePayload",
    "build_session_backend",
    "create_state_token",
    "verify_state_token",
]
