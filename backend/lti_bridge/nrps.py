"""Names and Role Provisioning Service client (course roster)."""

from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import LTIUpstreamError, NRPSUnavailableError
from .oauth import AssertionClient
from .sessions import SessionPayload
from .urls import LMSHttp, append_query_param, ensure_success, response_json


logger = logging.getLogger(__name__)


NRPS_SCOPE = "https://purl.imsglobal.org/spec/lti-nrps/scope/contextmembership.readonly"
NRPS_ACCEPT = "application/vnd.ims.lti-nrps.v2.membershipcontainer+json"

_MEMBERSHIP = "http://purl.imsglobal.org/vocab/lis/v2/membership"
_TEACHING_ASSISTANT = f"{_MEMBERSHIP}/Instructor#TeachingAssistant"

ROLE_URN_MAP: dict[str, str] = {
    "learner": f"{_MEMBERSHIP}#Learner",
    "student": f"{_MEMBERSHIP}#Learner",
    "instructor": f"{_MEMBERSHIP}#Instructor",
    "teacher": f"{_MEMBERSHIP}#Instructor",
    "administrator": f"{_MEMBERSHIP}#Administrator",
    "admin": f"{_MEMBERSHIP}#Administrator",
    "contentdeveloper": f"{_MEMBERSHIP}#ContentDeveloper",
    "content developer": f"{_MEMBERSHIP}#ContentDeveloper",
    "mentor": f"{_MEMBERSHIP}#Mentor",
    "manager": f"{_MEMBERSHIP}#Manager",
    "officer": f"{_MEMBERSHIP}#Officer",
    "member": f"{_MEMBERSHIP}#Member",
    "observer": f"{_MEMBERSHIP}#Observer",
    "teachingassistant": _TEACHING_ASSISTANT,
    "teaching assistant": _TEACHING_ASSISTANT,
    "ta": _TEACHING_ASSISTANT,
}

ALL_ROLES = "all"

_NEXT_LINK = re.compile(r'<([^>]+)>;\s*rel="next"')


class RosterMember(BaseModel):
    user_id: str
    name: str | None = None
    email: str | None = None
    roles: list[str] = Field(default_factory=list)
    status: str | None = None

    model_config = ConfigDict(extra="allow")

    @property
    def is_active(self) -> bool:
        return not self.status or self.status == "Active"


def normalize_role(role: str) -> str:
    """Map a short role name to its full URN; unknown values pass through."""

    return ROLE_URN_MAP.get(role.strip().lower(), role)


def _short_name(role: str) -> str:
    if "#" in role:
        return role.split("#", 1)[1].lower()
    return role.rstrip("/").rsplit("/", 1)[-1].lower()


def member_has_role(member: RosterMember, role_urn: str) -> bool:
    # LMSs disagree on the role format: bare names, full URNs and sub-role URNs
    expected_short = _short_name(role_urn)
    for role in member.roles:
        if role == role_urn or role.startswith(role_urn):
            return True
        if _short_name(role) == expected_short:
            return True
    return False


def parse_next_link(header: str | None) -> str | None:
    if not header:
        return None
    for part in header.split(","):
        match = _NEXT_LINK.search(part)
        if match:
            return match.group(1).strip()
    return None


class NRPSClient:
    def __init__(self, tokens: AssertionClient, http: LMSHttp, *, max_pages: int = 50) -> None:
        self._tokens = tokens
        self._http = http
        self._max_pages = max_pages

    async def _fetch_page(self, url: str, access_token: str) -> tuple[list[RosterMember], str | None]:
        response = await self._http.get(
            url,
            headers={"Authorization": f"Bearer {access_token}", "Accept": NRPS_ACCEPT},
        )
        ensure_success(response, "Lecture des membres NRPS")
        data = response_json(response, "Lecture des membres NRPS")
        raw_members: Any = data.get("members") if isinstance(data, dict) else None
        try:
            members = [RosterMember.model_validate(item) for item in raw_members or []]
        except ValidationError as exc:
            raise LTIUpstreamError(f"Membre NRPS invalide renvoyé par la plateforme: {exc}") from exc
        return members, parse_next_link(response.headers.get("link"))

    async def get_members(self, session: SessionPayload, role: str = "Learner") -> list[RosterMember]:
        if session.nrps is None or not session.nrps.context_memberships_url:
            raise NRPSUnavailableError(
                "Le service NRPS n'est pas disponible dans ce contexte. "
                "Vérifier que le LMS accorde les permissions Names & Roles à l'outil."
            )

        access_token = await self._tokens.get_access_token(session.platform_id, [NRPS_SCOPE])
        # a blank role means no filter, like "all"
        fetch_all = role.strip().lower() in ("", ALL_ROLES)
        role_urn = None if fetch_all else normalize_role(role)

        url: str | None = session.nrps.context_memberships_url
        if role_urn:
            url = append_query_param(url, "role", role_urn)

        members: list[RosterMember] = []
        visited: set[str] = set()
        pages = 0
        while url:
            if url in visited:
                logger.warning("Pagination NRPS cyclique détectée sur %s, arrêt.", url)
                break
            if pages >= self._max_pages:
                logger.warning("Pagination NRPS interrompue après %d pages.", pages)
                break
            visited.add(url)
            page, url = await self._fetch_page(url, access_token)
            members.extend(page)
            pages += 1

        # the role query parameter is not honoured by every LMS
        active = [member for member in members if member.is_active]
        if role_urn is None:
            return active
        return [member for member in active if member_has_role(member, role_urn)]


__all__ = [
    "NRPSClient",
    "NRPS_SCOPE",
    "ROLE_URN_MAP",
    "RosterMember",
    "member_has_role",
    "normalize_role",
    "parse_next_link",
]
