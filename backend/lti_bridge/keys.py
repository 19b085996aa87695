"""Tool key material and compact JWT helpers (RS256).

The tool owns a single RSA key pair. It signs its own state and session
tokens, signs client assertions for the platform token endpoint, and
publishes the public half as a JWKS document. Tokens issued by the LMS are
verified with keys fetched from the platform key-set endpoint.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Mapping

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

from .config import _read_env_or_file
from .errors import (
    InvalidSignatureError,
    KeyNotFoundError,
    LTIAuthenticationError,
    LTIConfigurationError,
    LTIUpstreamError,
    MalformedTokenError,
    TokenExpiredError,
)
from .urls import LMSHttp, ensure_success, response_json


logger = logging.getLogger(__name__)


ALGORITHM = "RS256"

# aud/iss are checked by the launch handshake in a fixed order, never here
_VERIFY_OPTIONS: dict[str, Any] = {
    "verify_aud": False,
    "verify_iss": False,
    "verify_sub": False,
    "verify_jti": False,
    "require": [],
}


def base64url_uint(value: int) -> str:
    data = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _base64url_to_int(value: str) -> int:
    padded = value + "=" * (-len(value) % 4)
    return int.from_bytes(base64.urlsafe_b64decode(padded), "big")


def _compute_key_id(public_key: RSAPublicKey) -> str:
    numbers = public_key.public_numbers()
    modulus_bytes = numbers.n.to_bytes((numbers.n.bit_length() + 7) // 8, "big")
    return hashlib.sha256(modulus_bytes).hexdigest()[:16]


def _load_private_key(private_key_pem: str | bytes) -> RSAPrivateKey:
    if isinstance(private_key_pem, str):
        private_key_pem = private_key_pem.encode("utf-8")
    try:
        private_key = serialization.load_pem_private_key(private_key_pem, password=None)
    except (ValueError, TypeError) as exc:
        raise LTIConfigurationError("Impossible de charger la clé privée LTI (format PEM invalide).") from exc
    if not isinstance(private_key, RSAPrivateKey):
        raise LTIConfigurationError("La clé privée LTI doit être de type RSA.")
    return private_key


@dataclass(slots=True)
class ToolKeySet:
    private_key: RSAPrivateKey
    public_key: RSAPublicKey
    key_id: str

    @classmethod
    def from_private_key(cls, private_key: RSAPrivateKey, *, key_id: str | None = None) -> "ToolKeySet":
        public_key = private_key.public_key()
        return cls(
            private_key=private_key,
            public_key=public_key,
            key_id=key_id or _compute_key_id(public_key),
        )

    @classmethod
    def from_pem(cls, private_key_pem: str | bytes, *, key_id: str | None = None) -> "ToolKeySet":
        return cls.from_private_key(_load_private_key(private_key_pem), key_id=key_id)

    @classmethod
    def from_env(cls) -> "ToolKeySet":
        pem = _read_env_or_file("LTI_PRIVATE_KEY", "LTI_PRIVATE_KEY_PATH")
        return cls.from_pem(pem, key_id=os.getenv("LTI_KEY_ID") or None)

    def public_key_as_jwk(self) -> dict[str, str]:
        numbers = self.public_key.public_numbers()
        return {
            "kty": "RSA",
            "use": "sig",
            "alg": ALGORITHM,
            "kid": self.key_id,
            "n": base64url_uint(numbers.n),
            "e": base64url_uint(numbers.e),
        }

    def jwks_document(self) -> dict[str, Any]:
        return {"keys": [self.public_key_as_jwk()]}

    def sign(self, payload: Mapping[str, Any], expires_in: int, kid: str | None = None) -> str:
        """Sign ``payload`` and inject ``iat``/``exp`` when the caller did not."""

        now = int(time.time())
        claims = dict(payload)
        claims.setdefault("iat", now)
        claims.setdefault("exp", now + expires_in)
        headers: dict[str, Any] = {"typ": "JWT"}
        if kid:
            headers["kid"] = kid
        return jwt.encode(claims, self.private_key, algorithm=ALGORITHM, headers=headers)

    def verify_self(self, token: str) -> dict[str, Any]:
        return _verify(token, self.public_key)

    def verify_with_key(self, token: str, public_key: RSAPublicKey) -> dict[str, Any]:
        return _verify(token, public_key)


def _check_segments(token: str) -> None:
    if not isinstance(token, str) or len(token.split(".")) != 3:
        raise MalformedTokenError("Format JWT invalide (trois segments attendus).")


def _verify(token: str, public_key: RSAPublicKey) -> dict[str, Any]:
    _check_segments(token)
    try:
        return jwt.decode(token, key=public_key, algorithms=[ALGORITHM], options=_VERIFY_OPTIONS)
    except jwt.ExpiredSignatureError as exc:
        raise TokenExpiredError("Jeton expiré.") from exc
    except jwt.InvalidSignatureError as exc:
        raise InvalidSignatureError("Signature du jeton invalide.") from exc
    except jwt.DecodeError as exc:
        raise MalformedTokenError("Jeton illisible.") from exc
    except jwt.PyJWTError as exc:
        raise LTIAuthenticationError(f"Jeton rejeté: {exc}") from exc


def decode_unverified(token: str) -> tuple[dict[str, Any], dict[str, Any]]:
    """Return ``(header, payload)`` without any signature check.

    Only used to read the ``kid`` of an LMS id_token before fetching the key
    able to verify it.
    """

    _check_segments(token)
    try:
        header = jwt.get_unverified_header(token)
        payload = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as exc:
        raise MalformedTokenError("Impossible de lire le jeton JWT fourni.") from exc
    return header, payload


def jwk_to_public_key(jwk: Mapping[str, Any]) -> RSAPublicKey:
    if jwk.get("kty") != "RSA":
        raise LTIUpstreamError(f"Type de clé non supporté dans le JWKS: {jwk.get('kty')!r}.")
    try:
        numbers = rsa.RSAPublicNumbers(_base64url_to_int(jwk["e"]), _base64url_to_int(jwk["n"]))
        return numbers.public_key()
    except (KeyError, TypeError, ValueError) as exc:
        raise LTIUpstreamError("Clé RSA invalide dans le JWKS de la plateforme.") from exc


async def fetch_remote_key(http: LMSHttp, jwks_url: str, kid: str) -> RSAPublicKey:
    response = await http.get(jwks_url, headers={"Accept": "application/json"})
    ensure_success(response, f"Récupération du JWKS {jwks_url}")
    document = response_json(response, f"Récupération du JWKS {jwks_url}")
    keys = document.get("keys") if isinstance(document, dict) else None
    if not isinstance(keys, list):
        raise LTIUpstreamError("JWKS de la plateforme invalide (format inattendu).")
    for jwk in keys:
        if isinstance(jwk, dict) and jwk.get("kid") == kid:
            return jwk_to_public_key(jwk)
    logger.warning("Clé %s absente du JWKS %s (%d clés)", kid, jwks_url, len(keys))
    raise KeyNotFoundError(f"Clé {kid!r} introuvable dans le JWKS de la plateforme.")


__all__ = [
    "ALGORITHM",
    "ToolKeySet",
    "base64url_uint",
    "decode_unverified",
    "fetch_remote_key",
    "jwk_to_public_key",
]
