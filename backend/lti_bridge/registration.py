"""LTI Dynamic Registration (tool side).

The LMS opens ``/lti/register`` with the URL of its OpenID configuration and
an optional one-shot registration token. The tool reads the configuration,
posts its own registration document to the LMS registration endpoint and
stores the resulting platform record.
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

from .config import LTISettings
from .errors import LTIUpstreamError, LTIValidationError, RegistrationRejectedError
from .platform_store import Platform, PlatformStore
from .sessions import DEEP_LINKING_REQUEST, RESOURCE_LINK_REQUEST
from .urls import LMSHttp, ensure_success, response_json


logger = logging.getLogger(__name__)


TOOL_CONFIGURATION_CLAIM = "https://purl.imsglobal.org/spec/lti-tool-configuration"

TOOL_SCOPES = (
    "openid",
    "https://purl.imsglobal.org/spec/lti-ags/scope/lineitem",
    "https://purl.imsglobal.org/spec/lti-ags/scope/lineitem.readonly",
    "https://purl.imsglobal.org/spec/lti-ags/scope/result.readonly",
    "https://purl.imsglobal.org/spec/lti-ags/scope/score",
    "https://purl.imsglobal.org/spec/lti-nrps/scope/contextmembership.readonly",
)

REQUIRED_OPENID_FIELDS = (
    "issuer",
    "authorization_endpoint",
    "token_endpoint",
    "jwks_uri",
    "registration_endpoint",
)

CLOSE_MESSAGE_SUBJECT = "org.imsglobal.lti.close"
_CLOSE_DELAY_MS = 2000


@dataclass(slots=True)
class RegistrationResult:
    platform: Platform
    openid_config: dict[str, Any]
    registration_response: dict[str, Any]


def _validate_configuration_url(url: str | None, *, allow_http: bool) -> str:
    if not url or not url.strip():
        raise LTIValidationError("Paramètre openid_configuration manquant.")
    url = url.strip()
    parts = urlsplit(url)
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        raise LTIValidationError(f"URL openid_configuration invalide: {url!r}.")
    if parts.scheme != "https" and not allow_http:
        raise LTIValidationError("L'URL openid_configuration doit utiliser https.")
    return url


def build_tool_registration(settings: LTISettings) -> dict[str, Any]:
    """Registration document advertised to the LMS.

    Browser-facing URLs (login, launch) use the public URL; the key-set URL is
    fetched by the LMS server and therefore uses the tool URL.
    """

    launch_url = settings.launch_url
    document: dict[str, Any] = {
        "application_type": "web",
        "response_types": ["id_token"],
        "grant_types": ["implicit", "client_credentials"],
        "initiate_login_uri": settings.login_url,
        "redirect_uris": [launch_url],
        "client_name": settings.client_name,
        "jwks_uri": settings.jwks_url,
        "token_endpoint_auth_method": "private_key_jwt",
        "scope": " ".join(TOOL_SCOPES),
        TOOL_CONFIGURATION_CLAIM: {
            "domain": urlsplit(settings.base_public_url).netloc,
            "description": settings.description,
            "target_link_uri": launch_url,
            "claims": ["iss", "sub", "name", "email", "given_name", "family_name"],
            "messages": [
                {
                    "type": RESOURCE_LINK_REQUEST,
                    "target_link_uri": launch_url,
                    "label": settings.client_name,
                },
                {
                    "type": DEEP_LINKING_REQUEST,
                    "target_link_uri": launch_url,
                    "label": settings.client_name,
                },
            ],
        },
    }
    if settings.logo_uri:
        document["logo_uri"] = settings.logo_uri
    return document


def _rejection_message(status_code: int, body: str) -> str:
    if status_code == 401:
        return (
            "Enregistrement refusé (401): l'en-tête Authorization n'a pas atteint le LMS. "
            "Le serveur frontal du LMS le supprime probablement. "
            "Apache: ajouter 'CGIPassAuth On' ou "
            "'SetEnvIf Authorization \"(.*)\" HTTP_AUTHORIZATION=$1'. "
            "Nginx: ajouter 'fastcgi_param HTTP_AUTHORIZATION $http_authorization;'. "
            "Relancer ensuite l'enregistrement avec un nouveau jeton."
        )
    if status_code == 400:
        return f"Enregistrement refusé (400): le LMS a rejeté le document d'enregistrement. {body}"
    return f"Enregistrement refusé ({status_code}): {body}"


class DynamicRegistration:
    def __init__(self, settings: LTISettings, platforms: PlatformStore, http: LMSHttp) -> None:
        self._settings = settings
        self._platforms = platforms
        self._http = http

    async def fetch_openid_configuration(self, url: str) -> dict[str, Any]:
        response = await self._http.get(url, headers={"Accept": "application/json"})
        ensure_success(response, "Récupération de la configuration OpenID")
        config = response_json(response, "Récupération de la configuration OpenID")
        if not isinstance(config, dict):
            raise LTIUpstreamError("Configuration OpenID inattendue (objet JSON attendu).")
        missing = [name for name in REQUIRED_OPENID_FIELDS if not config.get(name)]
        if missing:
            raise LTIValidationError(
                f"Configuration OpenID incomplète, champs manquants: {', '.join(missing)}."
            )
        return config

    async def register(
        self,
        openid_configuration: str | None,
        registration_token: str | None = None,
    ) -> RegistrationResult:
        config_url = _validate_configuration_url(
            openid_configuration,
            allow_http=self._settings.is_development,
        )
        config = await self.fetch_openid_configuration(config_url)

        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if registration_token:
            headers["Authorization"] = f"Bearer {registration_token}"
        response = await self._http.post(
            config["registration_endpoint"],
            json=build_tool_registration(self._settings),
            headers=headers,
        )
        if response.status_code >= 400:
            body = response.text.strip()
            logger.warning(
                "Enregistrement dynamique refusé par %s (%s)",
                config["issuer"],
                response.status_code,
            )
            raise RegistrationRejectedError(
                _rejection_message(response.status_code, body),
                status_code=response.status_code,
                body=body,
            )

        registration = response_json(response, "Enregistrement dynamique")
        client_id = registration.get("client_id") if isinstance(registration, dict) else None
        if not client_id:
            raise LTIUpstreamError(
                "La réponse d'enregistrement ne contient pas de client_id.",
                status_code=response.status_code,
                body=response.text,
            )
        tool_configuration = registration.get(TOOL_CONFIGURATION_CLAIM)
        deployment_id = None
        if isinstance(tool_configuration, dict) and tool_configuration.get("deployment_id"):
            deployment_id = str(tool_configuration["deployment_id"])

        rewriter = self._http.rewriter
        platform = self._platforms.upsert(
            {
                "issuer": config["issuer"],
                "client_id": str(client_id),
                "deployment_id": deployment_id,
                # opened by the browser, never rewritten
                "authorization_endpoint": config["authorization_endpoint"],
                "token_endpoint": rewriter.rewrite(config["token_endpoint"]),
                "jwks_uri": rewriter.rewrite(config["jwks_uri"]),
            }
        )
        logger.info(
            "Enregistrement dynamique terminé pour %s (client_id=%s, deployment_id=%s)",
            platform.issuer,
            platform.client_id,
            platform.deployment_id,
        )
        return RegistrationResult(
            platform=platform,
            openid_config=config,
            registration_response=registration,
        )


def render_close_page() -> str:
    subject = html.escape(CLOSE_MESSAGE_SUBJECT, quote=True)
    return (
        "<!DOCTYPE html>\n"
        "<html lang=\"fr\">\n"
        "<head>\n"
        "  <meta charset=\"utf-8\" />\n"
        "  <title>Enregistrement terminé</title>\n"
        "</head>\n"
        "<body style=\"font-family: sans-serif; text-align: center; padding: 3rem;\">\n"
        "  <p>Enregistrement terminé. Fermeture de la fenêtre…</p>\n"
        "  <script>\n"
        "    (function () {\n"
        f"      var message = {{subject: '{subject}'}};\n"
        "      [window.parent, window.opener, window.top].forEach(function (target) {\n"
        "        try {\n"
        "          if (target && target !== window) {\n"
        "            target.postMessage(message, '*');\n"
        "          }\n"
        "        } catch (e) {}\n"
        "      });\n"
        f"      setTimeout(function () {{ window.close(); }}, {_CLOSE_DELAY_MS});\n"
        "    })();\n"
        "  </script>\n"
        "</body>\n"
        "</html>"
    )


def close_page_headers(lms_origins: list[str] | None = None) -> dict[str, str]:
    ancestors = " ".join(lms_origins) if lms_origins else "*"
    return {
        "Content-Security-Policy": (
            f"default-src 'none'; script-src 'unsafe-inline'; frame-ancestors {ancestors};"
        ),
        "X-Frame-Options": "ALLOWALL",
        "Cache-Control": "no-store",
    }


__all__ = [
    "DynamicRegistration",
    "RegistrationResult",
    "TOOL_CONFIGURATION_CLAIM",
    "TOOL_SCOPES",
    "build_tool_registration",
    "close_page_headers",
    "render_close_page",
]
