"""In-memory ``Source`` for tests and offline runs."""

from __future__ import annotations

import threading
from collections.abc import Iterable

from ..errors import SourceUnavailable
from ..sync.models import RecordKind, RemoteRecord


class StaticSource:
    """Serve a fixed catalog from memory.

    Args:
        categories: Category records.
        procedures: Procedure records.
        cases: Case records, paged in the given order.
        fail_on: Method names (``fetch_categories``, ``fetch_procedures``,
            ``fetch_cases_page``, ``total_cases``, ``fetch_case``) that raise
            ``SourceUnavailable``.
        empty_pages: 1-based case page numbers served as empty.
        gate: If set, ``fetch_categories`` blocks until the event is set.
    """

    def __init__(
        self,
        categories: Iterable[RemoteRecord] = (),
        procedures: Iterable[RemoteRecord] = (),
        cases: Iterable[RemoteRecord] = (),
        fail_on: Iterable[str] = (),
        empty_pages: Iterable[int] = (),
        gate: threading.Event | None = None,
    ) -> None:
        self.categories = list(categories)
        self.procedures = list(procedures)
        self.cases = list(cases)
        self.fail_on = set(fail_on)
        self.empty_pages = set(empty_pages)
        self.gate = gate
        self.calls: list[str] = []

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise SourceUnavailable(f"{name} unavailable")

    def fetch_categories(self) -> list[RemoteRecord]:
        if self.gate is not None:
            self.gate.wait()
        self._call("fetch_categories")
        return list(self.categories)

    def fetch_procedures(self) -> list[RemoteRecord]:
        self._call("fetch_procedures")
        return list(self.procedures)

    def fetch_cases_page(self, page: int, size: int) -> list[RemoteRecord]:
        self._call("fetch_cases_page")
        if page in self.empty_pages:
            return []
        start = (page - 1) * size
        return self.cases[start : start + size]

    def total_cases(self) -> int:
        self._call("total_cases")
        return len(self.cases)

    def fetch_case(self, external_id: str) -> RemoteRecord | None:
        self._call("fetch_case")
        for record in self.cases:
            if record.external_id == external_id:
                return record
        return None

    def validate_connection(self) -> int:
        self._call("validate_connection")
        return len(self.categories)


def category(external_id: str, name: str, parent: str | None = None, **extra):
    """Build a category record."""
    payload = {"id": external_id, "name": name, **extra}
    return RemoteRecord(
        external_id=external_id,
        kind=RecordKind.CATEGORY,
        parent_external_id=parent,
        payload=payload,
    )


def procedure(external_id: str, name: str, parent: str | None = None, **extra):
    """Build a procedure record linked to category *parent*."""
    payload = {"id": external_id, "name": name, **extra}
    if parent is not None:
        payload.setdefault("categoryIds", [parent])
    return RemoteRecord(
        external_id=external_id,
        kind=RecordKind.PROCEDURE,
        parent_external_id=parent,
        payload=payload,
    )


def case(external_id: str | None, procedure_ids: Iterable[str] = (), **extra):
    """Build a case record linked to *procedure_ids*."""
    payload = {"id": external_id, "procedureIds": list(procedure_ids), **extra}
    return RemoteRecord(
        external_id=external_id,
        kind=RecordKind.CASE,
        payload=payload,
    )
