"""Registry of valid realtime tables, loaded from the exchange schema endpoint."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlsplit, urlunsplit

import requests

from bitmex_realtime.errors import RegistryLookupError, UnknownTableError

logger = logging.getLogger(__name__)

SCHEMA_PATH = "/api/v1/schema/websocketHelp"
PRIVATE_META_SUBJECT = "private:*"


@dataclass(frozen=True)
class TopicRegistry:
    """Valid table names split by whether they require authentication."""

    public: List[str]
    private: List[str]
    all: List[str] = field(init=False)

    def __post_init__(self) -> None:
        public_tables = list(self.public)
        private_tables = list(self.private)
        combined: List[str] = []
        for table in public_tables + private_tables:
            if table not in combined:
                combined.append(table)
        # frozen; all is always public followed by private
        object.__setattr__(self, "public", public_tables)
        object.__setattr__(self, "private", private_tables)
        object.__setattr__(self, "all", combined)

    @classmethod
    def from_lists(cls, public: Iterable[str], private: Iterable[str]) -> "TopicRegistry":
        return cls(public=list(public), private=list(private))

    def __contains__(self, table: object) -> bool:
        return table in self.all

    def validate(self, table: str) -> None:
        """Raise :class:`UnknownTableError` when ``table`` is not published."""

        if table not in self.all:
            raise UnknownTableError(table, self.all)

    def tables_for(self, authenticated: bool) -> List[str]:
        """Tables a wildcard subscription expands to for the given auth level."""

        return list(self.all if authenticated else self.public)


def schema_url(endpoint: str) -> str:
    """Map a websocket endpoint such as ``wss://host/realtime`` to its schema URL."""

    parts = urlsplit(endpoint)
    scheme = {"wss": "https", "ws": "http"}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, SCHEMA_PATH, "", ""))


def parse_schema(payload: Dict[str, Any]) -> TopicRegistry:
    """Build a registry from the ``websocketHelp`` response body."""

    subjects = payload.get("subscriptionSubjects") if isinstance(payload, dict) else None
    if not isinstance(subjects, dict):
        raise RegistryLookupError("Schema response is missing subscriptionSubjects")
    public = subjects.get("public") or []
    private = [s for s in subjects.get("authenticationRequired") or [] if s != PRIVATE_META_SUBJECT]
    return TopicRegistry.from_lists(public, private)


def _get_schema(session: requests.Session, url: str, timeout: float) -> Dict[str, Any]:
    try:
        response = session.get(url, timeout=timeout)
        response.raise_for_status()
        return response.json()
    except (requests.RequestException, ValueError) as exc:
        raise RegistryLookupError(f"Unable to fetch streams from {url}: {exc}") from exc


def fetch_topic_registry(
    endpoint: str,
    session: Optional[requests.Session] = None,
    timeout: float = 10.0,
) -> TopicRegistry:
    """Fetch the table universe for ``endpoint``.

    Any failure raises :class:`RegistryLookupError`; callers are expected to treat
    it as fatal rather than run with an unknown set of tables.
    """

    url = schema_url(endpoint)
    if session is None:
        with requests.Session() as owned:
            payload = _get_schema(owned, url, timeout)
    else:
        payload = _get_schema(session, url, timeout)

    registry = parse_schema(payload)
    logger.info(
        "Loaded %d realtime tables from %s",
        len(registry.all),
        url,
        extra={"event": "registry_loaded", "public": len(registry.public), "private": len(registry.private)},
    )
    return registry


__all__ = ["TopicRegistry", "fetch_topic_registry", "parse_schema", "schema_url"]
