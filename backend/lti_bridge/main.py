from __future__ import annotations

import html
import logging
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .engine import LTIEngine
from .errors import (
    LTIAuthenticationError,
    LTIConfigurationError,
    LTIError,
    LTINotFoundError,
    NRPSUnavailableError,
    RegistrationRejectedError,
)
from .nrps import RosterMember
from .registration import close_page_headers, render_close_page
from .sessions import SessionPayload
from .urls import append_query_param


logger = logging.getLogger(__name__)


JWKS_CACHE_CONTROL = "public, max-age=3600"


class ScoreSubmissionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    student_id: str = Field(alias="studentId", min_length=1)
    score: float = Field(ge=0.0)
    max_score: float = Field(alias="maxScore", gt=0.0)
    title: str | None = Field(default=None, max_length=255)
    comment: str | None = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def _check_bounds(self) -> "ScoreSubmissionRequest":
        if self.score > self.max_score:
            raise ValueError("score ne peut pas dépasser maxScore.")
        return self


def _render_lti_launch_page(target_url: str) -> str:
    escaped = html.escape(target_url, quote=True)
    return (
        "<!DOCTYPE html>\n"
        "<html lang=\"fr\">\n"
        "<head>\n"
        "  <meta charset=\"utf-8\" />\n"
        "  <meta http-equiv=\"refresh\" content=\"0;url="
        + escaped
        + "\" />\n"
        "  <title>Redirection</title>\n"
        "  <script>\n"
        "    window.addEventListener('DOMContentLoaded', function () {\n"
        "      window.location.replace('"
        + escaped
        + "');\n"
        "    });\n"
        "  </script>\n"
        "</head>\n"
        "<body style=\"font-family: sans-serif; text-align: center; padding: 3rem;\">\n"
        "  <p>Redirection vers le tableau de bord…\n"
        f"    <a href=\"{escaped}\">Poursuivre</a>."
        "  </p>\n"
        "</body>\n"
        "</html>"
    )


def _engine(request: Request) -> LTIEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is not None:
        return engine
    try:
        engine = LTIEngine.from_env()
    except LTIConfigurationError as exc:
        logger.error("Intégration LTI non configurée: %s", exc)
        raise HTTPException(status_code=exc.http_status, detail=str(exc)) from exc
    request.app.state.engine = engine
    return engine


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _require_session(request: Request, engine: LTIEngine = Depends(_engine)) -> SessionPayload:
    token = _bearer_token(request)
    if token is None:
        raise LTIAuthenticationError("Session LTI introuvable. Relancez l'activité depuis le LMS.")
    return engine.load_session(token)


def _serialize_member(member: RosterMember) -> dict[str, Any]:
    return {
        "userId": member.user_id,
        "name": member.name,
        "email": member.email,
        "roles": list(member.roles),
        "status": member.status,
    }


async def _lti_error_handler(request: Request, exc: LTIError) -> JSONResponse:
    status_code = exc.http_status
    # the LMS status tells the administrator what to fix on their side
    if isinstance(exc, RegistrationRejectedError) and exc.status_code:
        status_code = exc.status_code
    if status_code >= 500:
        logger.warning("Erreur LTI sur %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def create_app(engine: LTIEngine | None = None) -> FastAPI:
    app = FastAPI(title="LTI Bridge", version="1.0.0")
    app.state.engine = engine
    app.add_exception_handler(LTIError, _lti_error_handler)

    @app.get("/.well-known/jwks.json")
    @app.get("/api/lti/keys")
    def jwks_endpoint(engine: LTIEngine = Depends(_engine)) -> JSONResponse:
        """Expose the tool public key in JWKS format for LTI platform verification."""
        return JSONResponse(content=engine.jwks_document(), headers={"Cache-Control": JWKS_CACHE_CONTROL})

    @app.get("/lti/login")
    @app.post("/lti/login")
    async def lti_initiate_login(
        request: Request,
        iss: str | None = None,
        login_hint: str | None = None,
        target_link_uri: str | None = None,
        client_id: str | None = None,
        lti_message_hint: str | None = None,
        engine: LTIEngine = Depends(_engine),
    ) -> RedirectResponse:
        """Handle OIDC third-party initiated login from the LMS."""
        if request.method == "POST":
            form_data = await request.form()
            iss = form_data.get("iss") or iss
            login_hint = form_data.get("login_hint") or login_hint
            target_link_uri = form_data.get("target_link_uri") or target_link_uri
            client_id = form_data.get("client_id") or client_id
            lti_message_hint = form_data.get("lti_message_hint") or lti_message_hint

        redirect = engine.launch.initiate_login(
            iss,
            login_hint,
            client_id=client_id,
            target_link_uri=target_link_uri,
            lti_message_hint=lti_message_hint,
        )
        return RedirectResponse(url=redirect.url, status_code=302)

    @app.post("/lti/launch")
    async def lti_launch(request: Request, engine: LTIEngine = Depends(_engine)) -> HTMLResponse:
        """Verify the LMS id_token and hand the session token to the dashboard."""
        form_data = await request.form()
        result = await engine.launch.verify_launch(form_data.get("id_token"), form_data.get("state"))
        target_url = append_query_param(engine.settings.dashboard_url, "ltik", result.session_token)
        return HTMLResponse(content=_render_lti_launch_page(target_url))

    @app.get("/lti/register")
    async def lti_register(
        openid_configuration: str | None = None,
        registration_token: str | None = None,
        engine: LTIEngine = Depends(_engine),
    ) -> HTMLResponse:
        """Dynamic registration entry point opened by the LMS administrator."""
        await engine.registration.register(openid_configuration, registration_token)
        return HTMLResponse(
            content=render_close_page(),
            headers=close_page_headers(engine.settings.lms_origins),
        )

    @app.get("/api/lti/context")
    def get_lti_context(session: SessionPayload = Depends(_require_session)) -> dict[str, Any]:
        return session.claims()

    @app.get("/api/members")
    async def list_members(
        role: str = "Learner",
        session: SessionPayload = Depends(_require_session),
        engine: LTIEngine = Depends(_engine),
    ) -> dict[str, Any]:
        try:
            members = await engine.nrps.get_members(session, role)
        except NRPSUnavailableError as exc:
            logger.warning("Roster indisponible pour le contexte %s: %s", session.context.id, exc)
            return {"members": [], "warning": str(exc)}
        return {"members": [_serialize_member(member) for member in members]}

    @app.get("/api/scores/{assessment_id}")
    async def list_scores(
        assessment_id: str,
        session: SessionPayload = Depends(_require_session),
        engine: LTIEngine = Depends(_engine),
    ) -> dict[str, Any]:
        if session.ags is None or not session.ags.lineitems:
            return {"scores": []}

        members: list[RosterMember] | None = None
        if session.nrps is not None:
            try:
                members = await engine.nrps.get_members(session, "all")
            except LTIError as exc:
                logger.warning("Roster NRPS indisponible, scores affichés sans noms: %s", exc)

        scores = await engine.ags.list_scores_for_assessment(
            session.platform_id,
            session.ags.lineitems,
            assessment_id,
            members=members,
        )
        return {"scores": scores}

    @app.post("/api/scores/{assessment_id}")
    async def submit_score(
        assessment_id: str,
        payload: ScoreSubmissionRequest,
        session: SessionPayload = Depends(_require_session),
        engine: LTIEngine = Depends(_engine),
    ) -> dict[str, Any]:
        """Submit a score back to the LMS through Assignment and Grade Services."""
        if session.ags is None or not session.ags.lineitems:
            raise LTINotFoundError("Le service AGS n'est pas disponible pour ce lien de ressource.")
        line_item = await engine.ags.find_or_create_line_item_and_submit_score(
            session.platform_id,
            session.ags.lineitems,
            assessment_id,
            payload.title,
            payload.student_id,
            payload.score,
            payload.max_score,
            comment=payload.comment,
        )
        return {"ok": True, "lineItem": line_item.model_dump(by_alias=True, exclude_none=True)}

    return app


app = create_app()


__all__ = ["app", "create_app"]
