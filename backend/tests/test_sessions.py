from __future__ import annotations

import pytest

from backend.lti_bridge import sessions
from backend.lti_bridge.errors import LTIAuthenticationError, MalformedTokenError, TokenExpiredError
from backend.lti_bridge.sessions import (
    AgsEndpoint,
    LtiContext,
    MemorySessionBackend,
    SessionPayload,
    SignedSessionBackend,
    build_session_backend,
    create_state_token,
    verify_state_token,
)


def _payload() -> SessionPayload:
    return SessionPayload(
        sub="learner-1",
        name="Ada",
        email="ada@example.com",
        roles=["http://purl.imsglobal.org/vocab/lis/v2/membership#Learner"],
        context=LtiContext(id="course-1", title="Cours", type="CourseOffering"),
        issuer="https://lms.example",
        client_id="client-1",
        deployment_id="1",
        platform_id="platform-1",
        ags=AgsEndpoint(lineitems="https://lms.example/lineitems", scope="a b"),
    )


def test_state_token_round_trip(tool_keys) -> None:
    token = create_state_token(tool_keys, "nonce-1", "platform-1")

    state = verify_state_token(tool_keys, token)

    assert state.nonce == "nonce-1"
    assert state.platform_id == "platform-1"
    assert state.exp - state.iat == sessions.STATE_TTL_SECONDS


def test_state_token_requires_binding_fields(tool_keys) -> None:
    token = tool_keys.sign({"nonce": "n"}, 60)

    with pytest.raises(MalformedTokenError):
        verify_state_token(tool_keys, token)


def test_claims_use_wire_names(tool_keys) -> None:
    claims = _payload().claims()

    assert claims["clientId"] == "client-1"
    assert claims["platformId"] == "platform-1"
    assert claims["messageType"] == "LtiResourceLinkRequest"
    assert claims["ags"]["scope"] == ["a", "b"]
    assert claims["context"]["type"] == ["CourseOffering"]
    assert "nrps" not in claims
    assert "iat" not in claims


def test_signed_backend_round_trip(tool_keys) -> None:
    backend = SignedSessionBackend(tool_keys)

    token = backend.issue(_payload())
    loaded = backend.load(token)

    assert loaded.sub == "learner-1"
    assert loaded.context.title == "Cours"
    assert loaded.exp - loaded.iat == sessions.SESSION_TTL_SECONDS


def test_signed_backend_rejects_expired_and_foreign_tokens(tool_keys) -> None:
    expired = SignedSessionBackend(tool_keys, ttl_seconds=-1).issue(_payload())
    incomplete = tool_keys.sign({"sub": "x"}, 60)

    with pytest.raises(TokenExpiredError):
        SignedSessionBackend(tool_keys).load(expired)
    with pytest.raises(MalformedTokenError):
        SignedSessionBackend(tool_keys).load(incomplete)


def test_memory_backend() -> None:
    backend = MemorySessionBackend(ttl_seconds=60)
    token = backend.issue(_payload())

    assert backend.load(token).platform_id == "platform-1"
    with pytest.raises(LTIAuthenticationError):
        backend.load("unknown")


def test_memory_backend_never_extends_sessions() -> None:
    backend = MemorySessionBackend(ttl_seconds=-1)
    token = backend.issue(_payload())

    with pytest.raises(TokenExpiredError):
        backend.load(token)
    with pytest.raises(LTIAuthenticationError):
        backend.load(token)


def test_build_session_backend(tool_keys) -> None:
    assert isinstance(build_session_backend("memory", tool_keys), MemorySessionBackend)
    assert isinstance(build_session_backend("signed", tool_keys), SignedSessionBackend)
