from __future__ import annotations

import asyncio
import logging

import httpx
import pytest

from backend.lti_bridge.errors import LTINotFoundError, NRPSUnavailableError
from backend.lti_bridge.nrps import (
    NRPS_SCOPE,
    RosterMember,
    member_has_role,
    normalize_role,
    parse_next_link,
)
from backend.lti_bridge.sessions import NrpsEndpoint, SessionPayload


MEMBERSHIP = "http://purl.imsglobal.org/vocab/lis/v2/membership"
LEARNER = f"{MEMBERSHIP}#Learner"
INSTRUCTOR = f"{MEMBERSHIP}#Instructor"


def _session(platform, url: str | None = "https://lms.example/nrps/2") -> SessionPayload:
    return SessionPayload(
        sub="teacher-1",
        issuer=platform.issuer,
        client_id=platform.client_id,
        platform_id=platform.id,
        nrps=NrpsEndpoint(context_memberships_url=url) if url else None,
    )


def _member(user_id: str, *roles: str, status: str | None = None) -> dict:
    member = {"user_id": user_id, "roles": list(roles), "name": user_id.title()}
    if status:
        member["status"] = status
    return member


@pytest.mark.parametrize(
    "role, expected",
    [
        ("Student", LEARNER),
        ("  learner ", LEARNER),
        ("TEACHER", INSTRUCTOR),
        ("admin", f"{MEMBERSHIP}#Administrator"),
        ("Content Developer", f"{MEMBERSHIP}#ContentDeveloper"),
        ("observer", f"{MEMBERSHIP}#Observer"),
        ("TA", f"{MEMBERSHIP}/Instructor#TeachingAssistant"),
        ("teaching assistant", f"{MEMBERSHIP}/Instructor#TeachingAssistant"),
        ("urn:custom:role", "urn:custom:role"),
    ],
)
def test_normalize_role(role: str, expected: str) -> None:
    assert normalize_role(role) == expected


def test_member_has_role_matching_rules() -> None:
    assert member_has_role(RosterMember(user_id="1", roles=[LEARNER]), LEARNER)
    assert member_has_role(RosterMember(user_id="2", roles=["Learner"]), LEARNER)
    assert member_has_role(
        RosterMember(user_id="3", roles=[f"{MEMBERSHIP}/Instructor#TeachingAssistant"]),
        f"{MEMBERSHIP}/Instructor",
    )
    assert member_has_role(RosterMember(user_id="4", roles=[f"{INSTRUCTOR}#Extra"]), INSTRUCTOR)
    assert not member_has_role(RosterMember(user_id="5", roles=[INSTRUCTOR]), LEARNER)
    assert not member_has_role(RosterMember(user_id="6"), LEARNER)


def test_parse_next_link() -> None:
    header = '<https://lms/nrps?page=1>; rel="prev", <https://lms/nrps?page=3>; rel="next"'

    assert parse_next_link(header) == "https://lms/nrps?page=3"
    assert parse_next_link('<https://lms/nrps?page=1>; rel="prev"') is None
    assert parse_next_link(None) is None


def _paged(lms, pages: dict[str, list[dict]], links: dict[str, str]) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        page = request.url.params.get("page", "1")
        headers = {"Link": f'<{links[page]}>; rel="next"'} if page in links else {}
        return httpx.Response(200, json={"members": pages[page]}, headers=headers)

    lms.route("GET", "/nrps/2", handler)


def test_pagination_follows_next_links(engine, lms, platform) -> None:
    _paged(
        lms,
        {
            "1": [_member("a", LEARNER), _member("b", LEARNER)],
            "2": [_member("c", LEARNER), _member("d", LEARNER)],
            "3": [_member("e", LEARNER)],
        },
        {"1": "https://lms.example/nrps/2?page=2", "2": "https://lms.example/nrps/2?page=3"},
    )

    members = asyncio.run(engine.nrps.get_members(_session(platform), "all"))

    assert [member.user_id for member in members] == ["a", "b", "c", "d", "e"]
    assert len(lms.calls("GET", "/nrps/2")) == 3
    request = lms.calls("GET", "/nrps/2")[0]
    assert request.headers["accept"] == "application/vnd.ims.lti-nrps.v2.membershipcontainer+json"
    token_form = lms.calls("POST", "/token")[0].content.decode("utf-8")
    assert "contextmembership.readonly" in token_form
    assert NRPS_SCOPE.startswith("https://purl.imsglobal.org/spec/lti-nrps/")


def test_role_filter_is_sent_and_applied_client_side(engine, lms, platform) -> None:
    _paged(
        lms,
        {
            "1": [
                _member("a", LEARNER),
                _member("b", INSTRUCTOR),
                _member("c", "Learner"),
                _member("d", LEARNER, status="Inactive"),
                _member("e", LEARNER, status="Active"),
            ]
        },
        {},
    )

    members = asyncio.run(engine.nrps.get_members(_session(platform), "Student"))

    assert [member.user_id for member in members] == ["a", "c", "e"]
    assert lms.calls("GET", "/nrps/2")[0].url.params.get("role") == LEARNER


def test_all_roles_only_drops_inactive_members(engine, lms, platform) -> None:
    _paged(lms, {"1": [_member("a", LEARNER), _member("b", INSTRUCTOR), _member("c", LEARNER, status="Deleted")]}, {})

    members = asyncio.run(engine.nrps.get_members(_session(platform), "ALL"))

    assert [member.user_id for member in members] == ["a", "b"]
    assert "role" not in lms.calls("GET", "/nrps/2")[0].url.params


def test_blank_role_is_not_a_filter(engine, lms, platform) -> None:
    _paged(lms, {"1": [_member("a", LEARNER), _member("b")]}, {})

    members = asyncio.run(engine.nrps.get_members(_session(platform), "  "))

    assert [member.user_id for member in members] == ["a", "b"]
    assert "role" not in lms.calls("GET", "/nrps/2")[0].url.params


def test_revisited_page_stops_pagination(engine, lms, platform, caplog) -> None:
    _paged(
        lms,
        {"1": [_member("a", LEARNER)], "2": [_member("b", LEARNER)]},
        {"1": "https://lms.example/nrps/2?page=2", "2": "https://lms.example/nrps/2?page=1"},
    )
    session = _session(platform, "https://lms.example/nrps/2?page=1")

    with caplog.at_level(logging.WARNING):
        members = asyncio.run(engine.nrps.get_members(session, "all"))

    assert [member.user_id for member in members] == ["a", "b"]
    assert len(lms.calls("GET", "/nrps/2")) == 2
    assert "cyclique" in caplog.text


def test_page_ceiling(engine, lms, platform) -> None:
    engine.nrps._max_pages = 2
    _paged(
        lms,
        {"1": [_member("a", LEARNER)], "2": [_member("b", LEARNER)], "3": [_member("c", LEARNER)]},
        {"1": "https://lms.example/nrps/2?page=2", "2": "https://lms.example/nrps/2?page=3"},
    )

    members = asyncio.run(engine.nrps.get_members(_session(platform), "all"))

    assert [member.user_id for member in members] == ["a", "b"]


def test_missing_roster_endpoint(engine, platform) -> None:
    with pytest.raises(NRPSUnavailableError) as excinfo:
        asyncio.run(engine.nrps.get_members(_session(platform, url=None)))

    assert isinstance(excinfo.value, LTINotFoundError)
