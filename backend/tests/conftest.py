from __future__ import annotations

from typing import Any, Callable

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from backend.lti_bridge.config import LTISettings
from backend.lti_bridge.engine import LTIEngine
from backend.lti_bridge.keys import ToolKeySet, base64url_uint
from backend.lti_bridge.platform_store import Platform


ISSUER = "https://lms.example"
CLIENT_ID = "tool-client-1"
DEPLOYMENT_ID = "deployment-1"

Handler = Callable[[httpx.Request], httpx.Response]


class FakeLMS:
    """Minimal LMS answering the tool's outbound calls through a MockTransport."""

    def __init__(self, private_key: rsa.RSAPrivateKey, kid: str = "lms-key-1") -> None:
        self.private_key = private_key
        self.kid = kid
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], Handler] = {}
        self.token_count = 0
        self.route("GET", "/jwks", lambda request: httpx.Response(200, json=self.jwks()))
        self.route("POST", "/token", self._token)
        self.transport = httpx.MockTransport(self._handle)

    def route(self, method: str, path: str, handler: Handler) -> None:
        self.routes[(method, path)] = handler

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, text="not found")
        return handler(request)

    def _token(self, request: httpx.Request) -> httpx.Response:
        self.token_count += 1
        return httpx.Response(200, json={"access_token": f"token-{self.token_count}", "expires_in": 3600})

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.method == method and request.url.path == path]

    def jwks(self) -> dict[str, Any]:
        numbers = self.private_key.public_key().public_numbers()
        return {
            "keys": [
                {
                    "kty": "RSA",
                    "use": "sig",
                    "alg": "RS256",
                    "kid": self.kid,
                    "n": base64url_uint(numbers.n),
                    "e": base64url_uint(numbers.e),
                }
            ]
        }

    def id_token(self, claims: dict[str, Any], *, kid: str | None = "default") -> str:
        headers = {}
        if kid:
            headers["kid"] = self.kid if kid == "default" else kid
        return jwt.encode(claims, self.private_key, algorithm="RS256", headers=headers)


@pytest.fixture(scope="session")
def tool_keys() -> ToolKeySet:
    return ToolKeySet.from_private_key(rsa.generate_private_key(public_exponent=65537, key_size=2048))


@pytest.fixture(scope="session")
def lms_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def lms(lms_private_key) -> FakeLMS:
    return FakeLMS(lms_private_key)


@pytest.fixture
def settings(tmp_path) -> LTISettings:
    return LTISettings(
        environment="production",
        public_url="https://tool.example",
        post_launch_url="https://tool.example/dashboard",
        platform_store_path=tmp_path / "platforms.json",
    )


@pytest.fixture
def engine(settings, tool_keys, lms) -> LTIEngine:
    return LTIEngine(settings, tool_keys, transport=lms.transport)


@pytest.fixture
def platform(engine) -> Platform:
    return engine.platforms.upsert(
        {
            "issuer": ISSUER,
            "client_id": CLIENT_ID,
            "deployment_id": DEPLOYMENT_ID,
            "authorization_endpoint": f"{ISSUER}/auth",
            "token_endpoint": f"{ISSUER}/token",
            "jwks_uri": f"{ISSUER}/jwks",
        }
    )
