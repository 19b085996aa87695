"""Environment driven configuration for the LTI engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from .errors import LTIConfigurationError
from .urls import parse_rewrite_rules


_DEVELOPMENT_VALUES = {"development", "dev", "local"}


def _env_path_or_none(name: str) -> Path | None:
    value = os.getenv(name)
    if not value:
        return None
    path = Path(value)
    if not path.exists():
        raise LTIConfigurationError(f"Le chemin {value!r} défini par {name} est introuvable.")
    return path


def _read_env_or_file(name: str, fallback_path_env: str | None = None) -> str:
    raw_value = os.getenv(name)
    if raw_value:
        return raw_value.replace("\\n", "\n").strip()

    if fallback_path_env:
        path = _env_path_or_none(fallback_path_env)
        if path:
            return path.read_text(encoding="utf-8")

    raise LTIConfigurationError(
        f"Configurer {name} ou {fallback_path_env} pour activer l'intégration LTI."
    )


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise LTIConfigurationError(f"{name} doit être un entier (reçu {raw!r}).") from exc


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise LTIConfigurationError(f"{name} doit être un nombre (reçu {raw!r}).") from exc


def _split_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def _default_store_path() -> Path:
    base_dir = Path(__file__).resolve().parent.parent
    return (base_dir / "storage" / "platforms.json").resolve()


@dataclass(slots=True)
class LTISettings:
    environment: str = "production"
    public_url: str = "http://localhost:8000"
    tool_url: str | None = None
    post_launch_url: str | None = None
    client_name: str = "LTI Bridge"
    description: str = "Gestion des évaluations externes depuis le LMS"
    logo_uri: str | None = None
    rewrites: list[tuple[str, str]] = field(default_factory=list)
    http_timeout: float = 10.0
    token_cache_ttl: int = 240
    nrps_max_pages: int = 50
    platform_store_path: Path = field(default_factory=_default_store_path)
    lms_origins: list[str] = field(default_factory=list)
    session_backend: str = "signed"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in _DEVELOPMENT_VALUES

    @property
    def base_public_url(self) -> str:
        return self.public_url.rstrip("/")

    @property
    def base_tool_url(self) -> str:
        return (self.tool_url or self.public_url).rstrip("/")

    @property
    def login_url(self) -> str:
        return f"{self.base_public_url}/lti/login"

    @property
    def launch_url(self) -> str:
        return f"{self.base_public_url}/lti/launch"

    @property
    def jwks_url(self) -> str:
        # fetched server-side by the LMS, hence the tool URL
        return f"{self.base_tool_url}/.well-known/jwks.json"

    @property
    def dashboard_url(self) -> str:
        return self.post_launch_url or f"{self.base_public_url}/dashboard"

    @classmethod
    def from_env(cls) -> "LTISettings":
        store_path = os.getenv("LTI_PLATFORM_STORE_PATH")
        session_backend = (os.getenv("LTI_SESSION_BACKEND") or "signed").strip().lower()
        if session_backend not in {"signed", "memory"}:
            raise LTIConfigurationError(
                f"LTI_SESSION_BACKEND doit valoir 'signed' ou 'memory' (reçu {session_backend!r})."
            )
        return cls(
            environment=os.getenv("LTI_ENV", "production"),
            public_url=os.getenv("LTI_PUBLIC_URL", "http://localhost:8000"),
            tool_url=os.getenv("LTI_TOOL_URL") or None,
            post_launch_url=os.getenv("LTI_POST_LAUNCH_URL") or None,
            client_name=os.getenv("LTI_CLIENT_NAME", "LTI Bridge"),
            logo_uri=os.getenv("LTI_LOGO_URI") or None,
            rewrites=parse_rewrite_rules(os.getenv("LTI_DEV_REWRITES")),
            http_timeout=_float_env("LTI_HTTP_TIMEOUT", 10.0),
            token_cache_ttl=_int_env("LTI_TOKEN_CACHE_TTL", 240),
            nrps_max_pages=_int_env("LTI_NRPS_MAX_PAGES", 50),
            platform_store_path=Path(store_path).expanduser() if store_path else _default_store_path(),
            lms_origins=_split_csv(os.getenv("LTI_LMS_ORIGINS")),
            session_backend=session_backend,
        )


__all__ = ["LTISettings"]
