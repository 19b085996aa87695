"""OIDC third-party initiated login and LTI 1.3 launch verification.

The handshake is a two-call state machine. ``initiate_login`` answers the
LMS login request with a redirect carrying a signed state token that binds a
fresh nonce to the platform. ``verify_launch`` receives the id_token posted by
the LMS, verifies it against the platform key set and, only when every check
passed, issues a session for the launch.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

from .errors import (
    AudienceMismatchError,
    IssuerMismatchError,
    LTIAuthenticationError,
    LTILoginError,
    LTINotFoundError,
    NonceMismatchError,
)
from .keys import ToolKeySet, decode_unverified, fetch_remote_key
from .platform_store import Platform, PlatformStore
from .sessions import (
    DEEP_LINKING_REQUEST,
    RESOURCE_LINK_REQUEST,
    AgsEndpoint,
    LtiContext,
    NrpsEndpoint,
    SessionBackend,
    SessionPayload,
    create_state_token,
    verify_state_token,
)
from .urls import LMSHttp


logger = logging.getLogger(__name__)


MESSAGE_TYPE_CLAIM = "https://purl.imsglobal.org/spec/lti/claim/message_type"
ROLES_CLAIM = "https://purl.imsglobal.org/spec/lti/claim/roles"
CONTEXT_CLAIM = "https://purl.imsglobal.org/spec/lti/claim/context"
DEPLOYMENT_ID_CLAIM = "https://purl.imsglobal.org/spec/lti/claim/deployment_id"
AGS_CLAIM = "https://purl.imsglobal.org/spec/lti-ags/claim/endpoint"
NRPS_CLAIM = "https://purl.imsglobal.org/spec/lti-nrps/claim/namesroleservice"


@dataclass(slots=True)
class LoginRedirect:
    url: str
    state: str
    nonce: str
    platform: Platform


@dataclass(slots=True)
class LaunchResult:
    session: SessionPayload
    session_token: str
    claims: dict[str, Any]
    platform: Platform

    @property
    def is_deep_linking(self) -> bool:
        return self.session.message_type == DEEP_LINKING_REQUEST


def _audiences(claim: Any) -> list[str]:
    if isinstance(claim, str):
        return [claim]
    if isinstance(claim, list):
        return [item for item in claim if isinstance(item, str)]
    return []


def session_from_claims(claims: dict[str, Any], platform: Platform) -> SessionPayload:
    """Snapshot the verified launch claims into a session payload."""

    roles = claims.get(ROLES_CLAIM) or []
    if not isinstance(roles, list):
        roles = [roles]

    context_claim = claims.get(CONTEXT_CLAIM)
    if not isinstance(context_claim, dict):
        context_claim = {}
    context = LtiContext(
        id=str(context_claim.get("id") or "unknown"),
        title=context_claim.get("title") or context_claim.get("label"),
        label=context_claim.get("label"),
        type=context_claim.get("type"),
    )

    ags = None
    ags_claim = claims.get(AGS_CLAIM)
    if isinstance(ags_claim, dict):
        ags = AgsEndpoint(
            lineitems=ags_claim.get("lineitems") or ags_claim.get("lineitem"),
            lineitem=ags_claim.get("lineitem"),
            scope=ags_claim.get("scope"),
        )

    nrps = None
    nrps_claim = claims.get(NRPS_CLAIM)
    if isinstance(nrps_claim, dict) and nrps_claim.get("context_memberships_url"):
        nrps = NrpsEndpoint(
            context_memberships_url=nrps_claim["context_memberships_url"],
            service_versions=nrps_claim.get("service_versions") or ["2.0"],
        )

    deployment_id = claims.get(DEPLOYMENT_ID_CLAIM) or platform.deployment_id
    return SessionPayload(
        sub=str(claims.get("sub")),
        name=claims.get("name") or claims.get("given_name") or "",
        email=claims.get("email") or "",
        roles=[str(role) for role in roles],
        context=context,
        issuer=platform.issuer,
        client_id=platform.client_id,
        deployment_id=deployment_id,
        platform_id=platform.id,
        message_type=claims.get(MESSAGE_TYPE_CLAIM) or RESOURCE_LINK_REQUEST,
        ags=ags,
        nrps=nrps,
    )


class LaunchHandshake:
    def __init__(
        self,
        key_set: ToolKeySet,
        platforms: PlatformStore,
        http: LMSHttp,
        sessions: SessionBackend,
        *,
        redirect_uri: str,
    ) -> None:
        self._key_set = key_set
        self._platforms = platforms
        self._http = http
        self._sessions = sessions
        self._redirect_uri = redirect_uri

    def initiate_login(
        self,
        iss: str | None,
        login_hint: str | None,
        *,
        client_id: str | None = None,
        target_link_uri: str | None = None,
        lti_message_hint: str | None = None,
    ) -> LoginRedirect:
        if not iss:
            raise LTILoginError("Paramètre 'iss' manquant dans la requête LTI.")
        if not login_hint:
            raise LTILoginError("Paramètre 'login_hint' manquant dans la requête LTI.")

        platform = self._platforms.find(iss, client_id or None)
        if platform is None:
            raise LTINotFoundError(f"Plateforme LTI inconnue pour l'issuer {iss}.")

        nonce = secrets.token_urlsafe(32)
        state = create_state_token(self._key_set, nonce, platform.id)
        params = {
            "response_type": "id_token",
            "response_mode": "form_post",
            "scope": "openid",
            "prompt": "none",
            "client_id": platform.client_id,
            "redirect_uri": self._redirect_uri,
            "login_hint": login_hint,
            "state": state,
            "nonce": nonce,
        }
        message_hint = lti_message_hint or target_link_uri
        if message_hint:
            params["lti_message_hint"] = message_hint

        separator = "&" if "?" in platform.authorization_endpoint else "?"
        url = f"{platform.authorization_endpoint}{separator}{urlencode(params)}"
        logger.info("Login LTI initié pour %s (client_id=%s)", platform.issuer, platform.client_id)
        return LoginRedirect(url=url, state=state, nonce=nonce, platform=platform)

    async def verify_launch(self, id_token: str | None, state: str | None) -> LaunchResult:
        if not id_token:
            raise LTILoginError("id_token manquant dans la requête de lancement.")
        if not state:
            raise LTILoginError("state manquant dans la requête de lancement.")

        try:
            login_state = verify_state_token(self._key_set, state)
        except LTIAuthenticationError as exc:
            raise LTILoginError(f"state invalide: {exc}") from exc

        platform = self._platforms.get(login_state.platform_id)
        if platform is None:
            raise LTINotFoundError("Plateforme LTI introuvable pour ce lancement.")

        try:
            header, _ = decode_unverified(id_token)
        except LTIAuthenticationError as exc:
            raise LTILoginError("Impossible de lire l'en-tête de l'id_token.") from exc
        kid = header.get("kid")
        if not kid:
            raise LTILoginError("L'en-tête de l'id_token ne contient pas de kid.")

        platform_key = await fetch_remote_key(self._http, platform.jwks_uri, kid)
        claims = self._key_set.verify_with_key(id_token, platform_key)

        if claims.get("iss") != platform.issuer:
            raise IssuerMismatchError(
                f"Issuer inattendu: {platform.issuer} attendu, {claims.get('iss')} reçu."
            )
        if platform.client_id not in _audiences(claims.get("aud")):
            raise AudienceMismatchError("L'audience de l'id_token ne contient pas le client_id de l'outil.")
        if claims.get("nonce") != login_state.nonce:
            raise NonceMismatchError("nonce invalide dans le launch LTI.")
        if not claims.get("sub"):
            raise LTILoginError("Claim 'sub' manquant dans l'id_token.")

        session = session_from_claims(claims, platform)
        session_token = self._sessions.issue(session)
        logger.info(
            "Launch LTI validé: %s sur %s (contexte %s, %s)",
            session.sub,
            platform.issuer,
            session.context.id,
            session.message_type,
        )
        return LaunchResult(session=session, session_token=session_token, claims=claims, platform=platform)


__all__ = [
    "AGS_CLAIM",
    "CONTEXT_CLAIM",
    "DEPLOYMENT_ID_CLAIM",
    "LaunchHandshake",
    "LaunchResult",
    "LoginRedirect",
    "MESSAGE_TYPE_CLAIM",
    "NRPS_CLAIM",
    "ROLES_CLAIM",
    "session_from_claims",
]
