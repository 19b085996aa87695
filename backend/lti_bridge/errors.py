"""Error taxonomy shared by every part of the LTI engine.

Each exception carries the HTTP status the adapter layer should answer with.
Protocol code raises; only the HTTP boundary decides whether to degrade.
"""

from __future__ import annotations


class LTIError(RuntimeError):
    """Base class for every failure raised by the LTI engine."""

    http_status = 500


class LTIValidationError(LTIError):
    """Raised when an inbound request is malformed or incomplete."""

    http_status = 400


class LTILoginError(LTIValidationError):
    """Raised when a login or launch request is invalid."""


class IssuerMismatchError(LTILoginError):
    """Raised when the id_token ``iss`` claim is not the platform issuer."""


class AudienceMismatchError(LTILoginError):
    """Raised when the id_token audience does not contain our client id."""


class NonceMismatchError(LTILoginError):
    """Raised when the id_token nonce differs from the one bound to the state."""


class LTIAuthenticationError(LTIError):
    """Raised when a token is expired, forged or unreadable."""

    http_status = 401


class TokenExpiredError(LTIAuthenticationError):
    pass


class InvalidSignatureError(LTIAuthenticationError):
    pass


class MalformedTokenError(LTIAuthenticationError):
    pass


class LTINotFoundError(LTIError):
    """Raised when a platform, key or service endpoint cannot be resolved."""

    http_status = 404


class KeyNotFoundError(LTINotFoundError):
    """Raised when a JWKS document has no key for the requested ``kid``."""


class NRPSUnavailableError(LTINotFoundError):
    """Raised when the launch did not grant the Names and Roles service."""


class LTIUpstreamError(LTIError):
    """Raised when an LMS endpoint answers with an error or unusable payload."""

    http_status = 502

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RegistrationRejectedError(LTIUpstreamError):
    """Raised when the LMS refuses the dynamic registration POST."""


class LTIConfigurationError(LTIError):
    """Raised when mandatory LTI configuration is missing."""

    http_status = 503


__all__ = [
    "AudienceMismatchError",
    "InvalidSignatureError",
    "IssuerMismatchError",
    "KeyNotFoundError",
    "LTIAuthenticationError",
    "LTIConfigurationError",
    "LTIError",
    "LTILoginError",
    "LTINotFoundError",
    "LTIUpstreamError",
    "LTIValidationError",
    "MalformedTokenError",
    "NRPSUnavailableError",
    "NonceMismatchError",
    "RegistrationRejectedError",
    "TokenExpiredError",
]
