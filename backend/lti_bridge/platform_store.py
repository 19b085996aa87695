"""Persistent registry of LMS platforms the tool is registered with."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping

from pydantic import AnyUrl, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from .errors import LTINotFoundError, LTIValidationError


logger = logging.getLogger(__name__)


_ANY_URL = TypeAdapter(AnyUrl)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _new_platform_id() -> str:
    return uuid.uuid4().hex


class Platform(BaseModel):
    id: str = Field(default_factory=_new_platform_id)
    issuer: str
    client_id: str = Field(min_length=1)
    deployment_id: str | None = None
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    service_credential: str | None = None
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    model_config = ConfigDict(validate_assignment=True, str_strip_whitespace=True)

    @field_validator("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri")
    @classmethod
    def _check_url(cls, value: str) -> str:
        # validated as a URL but stored verbatim: issuers are compared byte for byte
        try:
            _ANY_URL.validate_python(value)
        except ValidationError as exc:
            raise ValueError(f"URL invalide: {value!r}") from exc
        return value

    @property
    def key(self) -> tuple[str, str]:
        return (self.issuer, self.client_id)


class PlatformStore:
    """Durable JSON store keeping one record per (issuer, client_id)."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._data: Dict[str, Any] = self._load()

    # ------------------------------------------------------------------
    # persistence helpers
    # ------------------------------------------------------------------
    def _load(self) -> Dict[str, Any]:
        if self._path.exists():
            try:
                with self._path.open("r", encoding="utf-8") as handle:
                    data = json.load(handle)
            except json.JSONDecodeError:
                logger.warning("Registre des plateformes illisible (%s), réinitialisation.", self._path)
                return {"platforms": []}
            if isinstance(data, dict) and isinstance(data.get("platforms"), list):
                return data
        return {"platforms": []}

    def _write(self) -> None:
        temp_path = self._path.with_suffix(".tmp")
        with temp_path.open("w", encoding="utf-8") as handle:
            json.dump(self._data, handle, indent=2, sort_keys=True)
        temp_path.replace(self._path)

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    def list_platforms(self) -> list[Platform]:
        with self._lock:
            return [Platform.model_validate(item) for item in self._data.get("platforms", [])]

    def get(self, platform_id: str) -> Platform | None:
        for platform in self.list_platforms():
            if platform.id == platform_id:
                return platform
        return None

    def require(self, platform_id: str) -> Platform:
        platform = self.get(platform_id)
        if platform is None:
            raise LTINotFoundError(f"Plateforme LTI {platform_id!r} introuvable.")
        return platform

    def find(self, issuer: str, client_id: str | None = None) -> Platform | None:
        """Find a platform by issuer, disambiguated by ``client_id`` when given."""

        matches = [platform for platform in self.list_platforms() if platform.issuer == issuer]
        if client_id:
            matches = [platform for platform in matches if platform.client_id == client_id]
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(
                "%d plateformes enregistrées pour %s sans client_id, utilisation de la première.",
                len(matches),
                issuer,
            )
        return matches[0]

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    def upsert(self, payload: Mapping[str, Any]) -> Platform:
        """Insert or update the record keyed by (issuer, client_id).

        The identifier and creation date of an existing record are kept so that
        outstanding session tokens keep resolving to the same platform.
        """

        with self._lock:
            platforms = self._data.setdefault("platforms", [])
            issuer = payload.get("issuer")
            client_id = payload.get("client_id")
            existing_index = None
            for index, item in enumerate(platforms):
                if item.get("issuer") == issuer and item.get("client_id") == client_id:
                    existing_index = index
                    break

            now = _now_iso()
            merged: dict[str, Any] = {}
            if existing_index is not None:
                merged.update(platforms[existing_index])
            merged.update({key: value for key, value in payload.items() if key not in {"id", "created_at"}})
            merged["updated_at"] = now
            merged.setdefault("created_at", now)
            try:
                platform = Platform.model_validate(merged)
            except ValidationError as exc:
                raise LTIValidationError(f"Configuration de plateforme invalide: {exc}") from exc

            record = platform.model_dump(mode="json")
            if existing_index is None:
                platforms.append(record)
                logger.info("Plateforme enregistrée: %s (client_id=%s)", platform.issuer, platform.client_id)
            else:
                platforms[existing_index] = record
                logger.info("Plateforme mise à jour: %s (client_id=%s)", platform.issuer, platform.client_id)
            self._write()
        return platform

    def set_service_credential(self, platform_id: str, credential: str | None) -> Platform:
        with self._lock:
            platforms = self._data.get("platforms", [])
            for index, item in enumerate(platforms):
                if item.get("id") != platform_id:
                    continue
                platform = Platform.model_validate(item)
                platform.service_credential = credential or None
                platform.updated_at = _now_iso()
                platforms[index] = platform.model_dump(mode="json")
                self._write()
                return platform
        raise LTINotFoundError(f"Plateforme LTI {platform_id!r} introuvable.")


__all__ = ["Platform", "PlatformStore"]
