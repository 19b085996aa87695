"""Outbound URL handling for server-to-server LMS calls.

In containerised development setups the LMS public hostname (the one embedded
in id_token claims and OpenID configuration documents) is not reachable from
the tool. ``LTI_DEV_REWRITES`` maps public origins to internal ones::

    LTI_DEV_REWRITES="http://localhost:8080,http://moodle;https://lms.local,http://lms"

Whenever a URL is rewritten the original public host is sent back as the
``Host`` header, otherwise the LMS web server answers with a canonical-host
redirect and the ``Authorization`` header is lost on the way. With no rules
configured every helper here is an identity transform.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping
from urllib.parse import quote, urlsplit

import httpx

from .errors import LTIUpstreamError


logger = logging.getLogger(__name__)


def parse_rewrite_rules(raw: str | None) -> list[tuple[str, str]]:
    """Parse ``"public1,internal1;public2,internal2"`` into pairs."""

    rules: list[tuple[str, str]] = []
    if not raw:
        return rules
    for rule in raw.split(";"):
        source, sep, target = rule.partition(",")
        if not sep:
            continue
        source = source.strip()
        target = target.strip()
        if source and target:
            rules.append((source, target))
    return rules


class UrlRewriter:
    def __init__(self, rules: Iterable[tuple[str, str]] = ()) -> None:
        self._rules = [(source, target) for source, target in rules if source and target]

    @property
    def rules(self) -> list[tuple[str, str]]:
        return list(self._rules)

    def rewrite(self, url: str) -> str:
        if not url or not self._rules:
            return url
        for source, target in self._rules:
            if url.startswith(source):
                return target + url[len(source):]
        return url

    def prepare(self, url: str, headers: Mapping[str, str] | None = None) -> tuple[str, dict[str, str]]:
        """Return the URL to fetch and the headers to send for ``url``."""

        fetch_url = self.rewrite(url)
        prepared = dict(headers or {})
        if fetch_url != url:
            host = urlsplit(url).netloc
            prepared["Host"] = host
            logger.debug("URL LMS réécrite: %s -> %s (Host: %s)", url, fetch_url, host)
        return fetch_url, prepared


def append_query_param(url: str, key: str, value: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{key}={quote(value, safe='')}"


def strip_query(url: str) -> str:
    return url.split("?", 1)[0]


def insert_path_suffix(url: str, suffix: str) -> str:
    """Append ``suffix`` to the path of ``url`` while keeping its query string.

    ``https://lms/lineitems/3?type_id=7`` with ``/scores`` becomes
    ``https://lms/lineitems/3/scores?type_id=7``.
    """

    base, sep, query = url.partition("?")
    path = base.rstrip("/") + "/" + suffix.lstrip("/")
    return f"{path}{sep}{query}"


class LMSHttp:
    """Performs every outbound LMS call through the rewriter with a timeout."""

    def __init__(
        self,
        rewriter: UrlRewriter | None = None,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.rewriter = rewriter or UrlRewriter()
        self._timeout = timeout
        self._transport = transport

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        fetch_url, fetch_headers = self.rewriter.prepare(url, headers)
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                return await client.request(method, fetch_url, headers=fetch_headers, **kwargs)
        except httpx.HTTPError as exc:
            raise LTIUpstreamError(f"Erreur réseau vers {url}: {exc}") from exc

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)


def ensure_success(response: httpx.Response, action: str) -> None:
    if response.status_code >= 400:
        body = response.text.strip()
        raise LTIUpstreamError(
            f"{action} a échoué ({response.status_code}): {body}",
            status_code=response.status_code,
            body=body,
        )


def response_json(response: httpx.Response, action: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise LTIUpstreamError(
            f"{action}: réponse JSON invalide.",
            status_code=response.status_code,
            body=response.text,
        ) from exc


__all__ = [
    "LMSHttp",
    "UrlRewriter",
    "append_query_param",
    "ensure_success",
    "insert_path_suffix",
    "parse_rewrite_rules",
    "response_json",
    "strip_query",
]
