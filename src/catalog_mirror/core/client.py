import logging
import threading
from typing import Any

import requests

from ..config import Config
from ..errors import SourceUnavailable
from ..sync.mapper import validate_external_id
from ..sync.models import RecordKind, RemoteRecord

logger = logging.getLogger(__name__)

SIDEBAR_PATH = "/api/plugin/combine/sidebar"
CASES_PATH = "/api/plugin/combine/cases"


class CatalogClient:
    """HTTP client for the remote catalog API.

    Implements the ``Source`` protocol consumed by the sync engine.  Every
    request is a JSON ``POST`` carrying the API token and website property
    id; the catalog answers with an envelope ``{"success": ..., "data": ...}``.
    """

    def __init__(self, config: Config):
        self.config = config
        self._thread_local = threading.local()
        self.base_url = config.api_url.rstrip("/")

    @property
    def session(self) -> requests.Session:
        """Current thread's session."""
        return self._get_session()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.verify = not self.config.insecure
        session.headers.update({"Accept": "application/json"})
        return session

    def _auth_body(self) -> dict[str, Any]:
        return {
            "apiTokens": [self.config.api_token],
            "websitePropertyIds": [self.config.property_id],
        }

    def _request(self, path: str, body: dict[str, Any] | None = None) -> dict:
        """POST to *path* and return the decoded envelope.

        Raises:
            SourceUnavailable: On transport failure, non-2xx status,
                undecodable JSON or a ``success=false`` envelope.
        """
        payload = self._auth_body()
        if body:
            payload.update(body)

        url = f"{self.base_url}{path}"
        session = self._get_session()
        try:
            response = session.post(
                url,
                json=payload,
                timeout=(10, self.config.timeout),
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise SourceUnavailable(f"Request to {path} failed: {e}") from e

        try:
            envelope = response.json()
        except ValueError as e:
            raise SourceUnavailable(
                f"Invalid JSON from {path}: {e}"
            ) from e

        if not isinstance(envelope, dict):
            raise SourceUnavailable(f"Unexpected response shape from {path}")
        if envelope.get("success") is False:
            message = envelope.get("message") or "request rejected"
            raise SourceUnavailable(f"{path}: {message}")
        return envelope

    # ------------------------------------------------------------------
    # Taxonomies
    # ------------------------------------------------------------------

    def _sidebar(self) -> list[dict]:
        data = self._request(SIDEBAR_PATH).get("data") or []
        if not isinstance(data, list):
            raise SourceUnavailable("Sidebar data is not a list")
        return [c for c in data if isinstance(c, dict)]

    def fetch_categories(self) -> list[RemoteRecord]:
        """
        Fetch top-level categories.

        Nested procedures are dropped from the category payload; they are
        returned separately by ``fetch_procedures``.
        """
        records = []
        for category in self._sidebar():
            payload = {k: v for k, v in category.items() if k != "procedures"}
            parent = category.get("parentId")
            records.append(
                RemoteRecord(
                    external_id=_str_id(category.get("id")),
                    kind=RecordKind.CATEGORY,
                    parent_external_id=_str_id(parent),
                    payload=payload,
                )
            )
        return records

    def fetch_procedures(self) -> list[RemoteRecord]:
        """
        Fetch procedures nested under the sidebar categories.

        A procedure listed under several categories is returned once, with
        every category id in ``payload["categoryIds"]`` and the first one as
        its parent.
        """
        by_id: dict[str, dict] = {}
        parents: dict[str, list[str]] = {}
        anonymous: list[RemoteRecord] = []

        for category in self._sidebar():
            category_id = _str_id(category.get("id"))
            for procedure in category.get("procedures") or []:
                if not isinstance(procedure, dict):
                    continue
                procedure_id = _str_id(procedure.get("id"))
                if procedure_id is None:
                    # Kept so the mapper can report it as failed
                    anonymous.append(
                        RemoteRecord(
                            kind=RecordKind.PROCEDURE,
                            parent_external_id=category_id,
                            payload=dict(procedure),
                        )
                    )
                    continue
                by_id.setdefault(procedure_id, procedure)
                linked = parents.setdefault(procedure_id, [])
                if category_id and category_id not in linked:
                    linked.append(category_id)

        records = []
        for procedure_id, procedure in by_id.items():
            category_ids = parents[procedure_id]
            payload = dict(procedure)
            payload["categoryIds"] = category_ids
            records.append(
                RemoteRecord(
                    external_id=procedure_id,
                    kind=RecordKind.PROCEDURE,
                    parent_external_id=category_ids[0] if category_ids else None,
                    payload=payload,
                )
            )
        return records + anonymous

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    def _cases(self, page: int, size: int) -> dict:
        return self._request(CASES_PATH, {"count": page, "limit": size})

    def fetch_cases_page(self, page: int, size: int) -> list[RemoteRecord]:
        """Fetch page *page* (1-based) of at most *size* cases."""
        data = self._cases(page, size).get("data") or []
        if not isinstance(data, list):
            raise SourceUnavailable("Cases data is not a list")
        return [_case_record(c) for c in data if isinstance(c, dict)]

    def total_cases(self) -> int:
        """Total number of cases reported by the catalog."""
        envelope = self._cases(1, 1)
        total = envelope.get("totalCount")
        if total is None:
            total = (envelope.get("pagination") or {}).get("totalCount")
        try:
            return max(int(total or 0), 0)
        except (TypeError, ValueError):
            raise SourceUnavailable(
                f"Invalid totalCount from {CASES_PATH}: {total!r}"
            ) from None

    def fetch_case(self, external_id: str) -> RemoteRecord | None:
        """Fetch one case, or ``None`` if the catalog has no such case.

        Raises:
            MappingError: If *external_id* is not a well-formed case id.
        """
        case_id = validate_external_id(external_id, RecordKind.CASE)
        data = self._request(f"{CASES_PATH}/{case_id}").get("data")
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            return None
        return _case_record(data)

    def validate_connection(self) -> int:
        """
        Validate credentials by fetching the sidebar.
        Returns the number of categories if successful.
        """
        count = len(self._sidebar())
        logger.info("Catalog connection OK: %d categories", count)
        return count


def _str_id(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _case_record(case: dict) -> RemoteRecord:
    return RemoteRecord(
        external_id=_str_id(case.get("id")),
        kind=RecordKind.CASE,
        payload=dict(case),
    )
