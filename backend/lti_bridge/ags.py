"""Assignment and Grade Services client: line items, results and scores.

Every LMS URL handled here comes from the launch claims and may carry a query
string (Moodle adds ``type_id``), so path suffixes are always inserted before
the query.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Literal, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import LTIError, LTIUpstreamError
from .nrps import RosterMember
from .oauth import AssertionClient
from .platform_store import PlatformStore
from .urls import LMSHttp, append_query_param, ensure_success, insert_path_suffix, response_json, strip_query


logger = logging.getLogger(__name__)


LINEITEM_SCOPE = "https://purl.imsglobal.org/spec/lti-ags/scope/lineitem"
LINEITEM_READONLY_SCOPE = "https://purl.imsglobal.org/spec/lti-ags/scope/lineitem.readonly"
RESULT_READONLY_SCOPE = "https://purl.imsglobal.org/spec/lti-ags/scope/result.readonly"
SCORE_SCOPE = "https://purl.imsglobal.org/spec/lti-ags/scope/score"
AGS_SCOPES = (LINEITEM_SCOPE, LINEITEM_READONLY_SCOPE, RESULT_READONLY_SCOPE, SCORE_SCOPE)

LINEITEM_CONTAINER_TYPE = "application/vnd.ims.lis.v2.lineitemcontainer+json"
LINEITEM_TYPE = "application/vnd.ims.lis.v2.lineitem+json"
SCORE_TYPE = "application/vnd.ims.lis.v1.score+json"
RESULT_CONTAINER_TYPE = "application/vnd.ims.lis.v2.resultcontainer+json"

DEFAULT_LINE_ITEM_LABEL = "Assessment Score"
DEFAULT_SCORE_COMMENT = "Évaluation externe"

ActivityProgress = Literal["Initialized", "Started", "InProgress", "Submitted", "Completed"]
GradingProgress = Literal["FullyGraded", "Pending", "PendingManual", "Failed", "NotReady"]


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class LineItem(BaseModel):
    id: str | None = None
    score_maximum: float = Field(alias="scoreMaximum")
    label: str
    tag: str | None = None
    resource_id: str | None = Field(default=None, alias="resourceId")
    resource_link_id: str | None = Field(default=None, alias="resourceLinkId")

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"id"})


class Score(BaseModel):
    user_id: str = Field(alias="userId")
    score_given: float = Field(alias="scoreGiven", ge=0)
    score_maximum: float = Field(alias="scoreMaximum", gt=0)
    comment: str | None = None
    timestamp: str = Field(default_factory=_utc_timestamp)
    activity_progress: ActivityProgress = Field(default="Completed", alias="activityProgress")
    grading_progress: GradingProgress = Field(default="FullyGraded", alias="gradingProgress")

    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass(slots=True)
class ScoreTarget:
    target_id: str
    platform_id: str | None
    lineitems_url: str | None
    student_id: str
    title: str | None = None


@dataclass(slots=True)
class ScoreOutcome:
    target_id: str
    status: Literal["success", "skipped", "failed", "error"]
    reason: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.target_id, "status": self.status}
        if self.reason:
            payload["reason"] = self.reason
        if self.error:
            payload["error"] = self.error
        return payload


def _parse_line_items(data: Any) -> list[LineItem]:
    if isinstance(data, list):
        raw_items = data
    else:
        raw_items = (data.get("lineItems") if isinstance(data, dict) else None) or []
    try:
        return [LineItem.model_validate(item) for item in raw_items]
    except ValidationError as exc:
        raise LTIUpstreamError(f"Line item AGS invalide renvoyé par la plateforme: {exc}") from exc


def _select_tagged(items: Iterable[LineItem], tag: str) -> LineItem | None:
    for item in items:
        if item.tag == tag and item.id:
            return item
    return None


class AGSClient:
    def __init__(self, tokens: AssertionClient, platforms: PlatformStore, http: LMSHttp) -> None:
        self._tokens = tokens
        self._platforms = platforms
        self._http = http

    async def _token(self, platform_id: str) -> str:
        try:
            return await self._tokens.get_access_token(platform_id, AGS_SCOPES)
        except LTIUpstreamError as exc:
            # some platforms only grant the score scope to the tool
            logger.warning("Scopes AGS complets refusés (%s), repli sur le scope score seul.", exc)
            return await self._tokens.get_access_token(platform_id, [SCORE_SCOPE])

    async def get_line_items(self, platform_id: str, lineitems_url: str, tag: str | None = None) -> list[LineItem]:
        access_token = await self._token(platform_id)
        url = append_query_param(lineitems_url, "tag", tag) if tag else lineitems_url
        response = await self._http.get(
            url,
            headers={"Authorization": f"Bearer {access_token}", "Accept": LINEITEM_CONTAINER_TYPE},
        )
        ensure_success(response, "Lecture des line items AGS")
        return _parse_line_items(response_json(response, "Lecture des line items AGS"))

    async def create_line_item(self, platform_id: str, lineitems_url: str, line_item: LineItem) -> LineItem:
        access_token = await self._token(platform_id)
        response = await self._http.post(
            strip_query(lineitems_url),
            json=line_item.to_payload(),
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": LINEITEM_TYPE,
                "Accept": LINEITEM_TYPE,
            },
        )
        ensure_success(response, "Création du line item AGS")
        created = _parse_line_items([response_json(response, "Création du line item AGS")])[0]
        if not created.id:
            raise LTIUpstreamError(
                "La plateforme n'a pas renvoyé l'identifiant du line item créé.",
                status_code=response.status_code,
                body=response.text,
            )
        logger.info("Line item AGS créé: %s (tag=%s)", created.id, created.tag)
        return created

    async def get_scores(self, platform_id: str, line_item_id: str) -> list[dict[str, Any]]:
        access_token = await self._token(platform_id)
        response = await self._http.get(
            insert_path_suffix(line_item_id, "/results"),
            headers={"Authorization": f"Bearer {access_token}", "Accept": RESULT_CONTAINER_TYPE},
        )
        ensure_success(response, "Lecture des résultats AGS")
        data = response_json(response, "Lecture des résultats AGS")
        if isinstance(data, list):
            results = data
        else:
            results = (data.get("results") if isinstance(data, dict) else None) or []
        return [item for item in results if isinstance(item, dict)]

    async def submit_score(self, platform_id: str, line_item_id: str, score: Score) -> None:
        access_token = await self._token(platform_id)
        response = await self._http.post(
            insert_path_suffix(line_item_id, "/scores"),
            json=score.to_payload(),
            headers={"Authorization": f"Bearer {access_token}", "Content-Type": SCORE_TYPE},
        )
        ensure_success(response, "Publication du score AGS")
        logger.info("Score publié pour %s sur %s", score.user_id, line_item_id)

    async def find_line_item(self, platform_id: str, lineitems_url: str, assessment_id: str) -> LineItem | None:
        """Return the line item tagged ``assessment_id``, if the LMS has one.

        Some platforms reject the ``tag`` filter; the unfiltered listing is
        then searched instead.
        """

        try:
            items = await self.get_line_items(platform_id, lineitems_url, tag=assessment_id)
        except LTIUpstreamError as exc:
            logger.warning("Filtre tag refusé par la plateforme (%s), lecture sans filtre.", exc)
            try:
                items = await self.get_line_items(platform_id, strip_query(lineitems_url))
            except LTIUpstreamError as retry_exc:
                logger.warning("Lecture des line items impossible (%s), création d'un nouveau line item.", retry_exc)
                return None
        return _select_tagged(items, assessment_id)

    async def find_or_create_line_item_and_submit_score(
        self,
        platform_id: str,
        lineitems_url: str,
        assessment_id: str,
        title: str | None,
        student_id: str,
        score: float,
        max_score: float,
        comment: str | None = None,
    ) -> LineItem:
        line_item = await self.find_line_item(platform_id, lineitems_url, assessment_id)
        if line_item is None:
            line_item = await self.create_line_item(
                platform_id,
                lineitems_url,
                LineItem(
                    score_maximum=max_score,
                    label=title or DEFAULT_LINE_ITEM_LABEL,
                    tag=assessment_id,
                    resource_id=assessment_id,
                ),
            )
        await self.submit_score(
            platform_id,
            line_item.id,
            Score(
                user_id=student_id,
                score_given=score,
                score_maximum=max_score,
                comment=comment or DEFAULT_SCORE_COMMENT,
                activity_progress="Completed",
                grading_progress="FullyGraded",
            ),
        )
        return line_item

    async def submit_score_batch(
        self,
        targets: Iterable[ScoreTarget],
        assessment_id: str,
        score: float,
        max_score: float,
    ) -> list[ScoreOutcome]:
        outcomes: list[ScoreOutcome] = []
        for target in targets:
            if not target.platform_id or not target.lineitems_url:
                outcomes.append(ScoreOutcome(target.target_id, "skipped", reason="Missing config"))
                continue
            if self._platforms.get(target.platform_id) is None:
                outcomes.append(ScoreOutcome(target.target_id, "failed", reason="Platform not found"))
                continue
            try:
                await self._token(target.platform_id)
            except LTIError as exc:
                outcomes.append(ScoreOutcome(target.target_id, "failed", reason="Auth Token Failed", error=str(exc)))
                continue
            try:
                await self.find_or_create_line_item_and_submit_score(
                    target.platform_id,
                    target.lineitems_url,
                    assessment_id,
                    target.title,
                    target.student_id,
                    score,
                    max_score,
                )
            except LTIError as exc:
                logger.warning("Publication du score échouée pour %s: %s", target.target_id, exc)
                outcomes.append(ScoreOutcome(target.target_id, "error", error=str(exc)))
                continue
            outcomes.append(ScoreOutcome(target.target_id, "success"))
        return outcomes

    async def list_scores_for_assessment(
        self,
        platform_id: str,
        lineitems_url: str,
        assessment_id: str,
        members: Sequence[RosterMember] | None = None,
    ) -> list[dict[str, Any]]:
        line_item = await self.find_line_item(platform_id, lineitems_url, assessment_id)
        if line_item is None or not line_item.id:
            return []

        roster = {member.user_id: member for member in members or []}
        rows: list[dict[str, Any]] = []
        for result in await self.get_scores(platform_id, line_item.id):
            member = roster.get(result.get("userId"))
            has_result_score = result.get("resultScore") is not None
            rows.append(
                {
                    "userId": result.get("userId"),
                    "userName": (member.name if member else None) or None,
                    "userEmail": (member.email if member else None) or None,
                    "scoreGiven": result.get("resultScore") if has_result_score else result.get("scoreGiven"),
                    "scoreMaximum": result.get("resultMaximum", result.get("scoreMaximum")),
                    "comment": result.get("comment") or None,
                    "timestamp": result.get("timestamp"),
                    "activityProgress": "Completed" if has_result_score else result.get("activityProgress") or "Initialized",
                    "gradingProgress": result.get("gradingProgress") or "FullyGraded",
                }
            )
        return rows


__all__ = [
    "AGSClient",
    "AGS_SCOPES",
    "LineItem",
    "SCORE_SCOPE",
    "Score",
    "ScoreOutcome",
    "ScoreTarget",
]
