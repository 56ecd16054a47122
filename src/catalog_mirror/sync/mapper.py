"""Remote record to mirror entity mapper.

Turns a ``RemoteRecord`` into an ``EntityDraft`` the mirror can persist.
The mapper performs no I/O of its own: term lookups are delegated to a
callable supplied by the caller, so the same mapper serves full runs and
single-case syncs.

Derived case fields:

1. **Title** -- explicit ``title``; else procedure names joined with
   ``" + "`` plus patient age/gender; else ``"Case #{external_id}"``.
2. **Excerpt** -- explicit ``summary``; else the first 25 words of
   ``details`` with markup removed; else procedure names plus patient
   descriptor; else empty.
3. **Slug** -- procedure slugs plus ``case-{external_id}``; a random
   ``case-`` slug only when nothing usable remains.
4. **Status** -- ``published`` flag, else a mapped ``status`` string,
   else ``publish``.
"""

from __future__ import annotations

import html
import re
import uuid
from collections.abc import Callable, Mapping
from typing import Any

from catalog_mirror.errors import MappingError
from catalog_mirror.sync.fingerprint import fingerprint
from catalog_mirror.sync.models import (
    EntityDraft,
    MediaItem,
    RecordKind,
    RemoteRecord,
)

# (kind, external_id) -> local term id, or None when not mirrored yet
TermLookup = Callable[[RecordKind, str], str | None]

_EXTERNAL_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")
_TAG_PATTERN = re.compile(r"<[^>]*>")
_SLUG_STRIP = re.compile(r"[^a-z0-9\s-]")
_SLUG_COLLAPSE = re.compile(r"[\s_-]+")

EXCERPT_WORDS = 25

_STATUS_MAP = {
    "published": "publish",
    "active": "publish",
    "visible": "publish",
    "draft": "draft",
    "hidden": "draft",
    "private": "private",
}


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def slugify(text: str) -> str:
    """Lowercase *text* and reduce it to ``a-z0-9`` words joined by ``-``."""
    value = html.unescape(str(text)).lower().strip()
    value = _SLUG_STRIP.sub("", value)
    value = _SLUG_COLLAPSE.sub("-", value)
    return value.strip("-")


def strip_tags(text: str) -> str:
    """Remove markup tags and collapse whitespace."""
    plain = html.unescape(_TAG_PATTERN.sub(" ", str(text)))
    return " ".join(plain.split())


def trim_words(text: str, limit: int = EXCERPT_WORDS) -> str:
    """Keep the first *limit* words of *text*, appending an ellipsis if cut."""
    words = text.split()
    if len(words) <= limit:
        return " ".join(words)
    return " ".join(words[:limit]) + "…"


def _capitalize(value: str) -> str:
    return value[:1].upper() + value[1:]


def validate_external_id(
    external_id: Any, kind: RecordKind | None = None
) -> str:
    """Return *external_id* as a string or raise ``MappingError``."""
    kind_value = kind.value if kind else None
    if external_id is None or str(external_id).strip() == "":
        raise MappingError(
            "Record has no external id", kind=kind_value
        )
    value = str(external_id).strip()
    if not _EXTERNAL_ID_PATTERN.match(value):
        raise MappingError(
            f"Malformed external id {value[:40]!r}",
            kind=kind_value,
            external_id=value[:40],
        )
    return value


# ---------------------------------------------------------------------------
# Mapper
# ---------------------------------------------------------------------------


class EntityMapper:
    """Map remote records to entity drafts for one tenant.

    Args:
        tenant_token: Tenant the drafts belong to.
        term_lookup: Resolves ``(kind, external_id)`` to a local term id.
        procedure_parents: Procedure external id to the external ids of
            the categories it belongs to; used to derive case categories.
    """

    def __init__(
        self,
        tenant_token: str,
        term_lookup: TermLookup,
        procedure_parents: Mapping[str, list[str]] | None = None,
    ) -> None:
        self.tenant_token = tenant_token
        self._term_lookup = term_lookup
        self._procedure_parents = (
            procedure_parents if procedure_parents is not None else {}
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def to_create(self, record: RemoteRecord) -> EntityDraft:
        """Build the draft for a record that has no mirror entity yet.

        Raises:
            MappingError: If mandatory fields are absent or malformed.
        """
        return self._map(record, None)

    def to_update(self, record: RemoteRecord, local_id: str) -> EntityDraft:
        """Build the draft that rewrites entity *local_id*.

        Raises:
            MappingError: If mandatory fields are absent or malformed.
        """
        if not local_id:
            raise MappingError(
                "Update requires a local id",
                kind=record.kind.value,
                external_id=record.external_id,
            )
        return self._map(record, local_id)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _map(self, record: RemoteRecord, local_id: str | None) -> EntityDraft:
        external_id = validate_external_id(record.external_id, record.kind)
        match record.kind:
            case RecordKind.CATEGORY | RecordKind.PROCEDURE:
                values = self._map_term(record, external_id)
            case RecordKind.CASE:
                values = self._map_case(record, external_id)
            case _:
                raise MappingError(
                    f"Unsupported record kind {record.kind!r}",
                    external_id=external_id,
                )
        return EntityDraft(
            tenant_token=self.tenant_token,
            kind=record.kind,
            external_id=external_id,
            local_id=local_id,
            fingerprint=fingerprint(record),
            **values,
        )

    # ------------------------------------------------------------------
    # Terms (categories and procedures)
    # ------------------------------------------------------------------

    def _map_term(
        self, record: RemoteRecord, external_id: str
    ) -> dict[str, Any]:
        payload = record.payload
        name = str(payload.get("name") or "").strip()
        if not name:
            raise MappingError(
                f"{record.kind.value} {external_id} has no name",
                kind=record.kind.value,
                external_id=external_id,
            )

        slug = slugify(payload.get("slugName") or "") or slugify(name)
        if not slug:
            slug = f"{record.kind.value}-{slugify(external_id)}"

        missing: list[str] = []
        parent_local_id = None
        if record.parent_external_id:
            parent_local_id = self._term_lookup(
                RecordKind.CATEGORY, record.parent_external_id
            )
            if parent_local_id is None:
                missing.append(f"category:{record.parent_external_id}")

        term_links: dict[str, list[str]] = {}
        if record.kind == RecordKind.PROCEDURE:
            category_ids = _as_id_list(payload.get("categoryIds"))
            if record.parent_external_id and (
                record.parent_external_id not in category_ids
            ):
                category_ids.insert(0, record.parent_external_id)
            linked, unresolved = self._resolve_terms(
                RecordKind.CATEGORY, category_ids
            )
            term_links[RecordKind.CATEGORY.value] = linked
            missing.extend(
                f"category:{cid}"
                for cid in unresolved
                if f"category:{cid}" not in missing
            )

        description = strip_tags(payload.get("description") or "")
        fields = {
            "description": description,
            "order": payload.get("order"),
            "nudity": bool(payload.get("nudity", False)),
            "case_count": payload.get("caseCount", payload.get("totalCase")),
        }
        return {
            "title": name,
            "slug": slug,
            "excerpt": description,
            "status": "publish",
            "parent_local_id": parent_local_id,
            "term_links": term_links,
            "fields": fields,
            "missing_links": missing,
        }

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    def _map_case(
        self, record: RemoteRecord, external_id: str
    ) -> dict[str, Any]:
        payload = record.payload
        self._validate_case(payload, external_id)

        procedures = [
            p for p in payload.get("procedures") or [] if isinstance(p, dict)
        ]
        procedure_ids = extract_procedure_ids(payload)

        linked_procedures, missing_procedures = self._resolve_terms(
            RecordKind.PROCEDURE, procedure_ids
        )

        category_ids: list[str] = []
        for pid in procedure_ids:
            for cid in self._procedure_parents.get(pid, []):
                if cid not in category_ids:
                    category_ids.append(cid)
        for cid in _as_id_list(payload.get("categoryIds")):
            if cid not in category_ids:
                category_ids.append(cid)
        linked_categories, missing_categories = self._resolve_terms(
            RecordKind.CATEGORY, category_ids
        )

        fields: dict[str, Any] = {
            "details": payload.get("details") or "",
            "procedure_ids": procedure_ids,
            "procedure_details": [
                {
                    "id": p.get("id"),
                    "name": p.get("name", ""),
                    "technique": p.get("technique", ""),
                    "timeframe": p.get("timeframe", ""),
                    "description": p.get("description", ""),
                }
                for p in procedures
            ],
        }
        if payload.get("patient"):
            fields["patient"] = payload["patient"]
        if payload.get("seo"):
            fields["seo"] = payload["seo"]

        return {
            "title": case_title(payload, external_id),
            "slug": case_slug(payload, external_id),
            "excerpt": case_excerpt(payload),
            "status": case_status(payload),
            "term_links": {
                RecordKind.PROCEDURE.value: linked_procedures,
                RecordKind.CATEGORY.value: linked_categories,
            },
            "fields": fields,
            "media": case_media(payload),
            "missing_links": [f"procedure:{p}" for p in missing_procedures]
            + [f"category:{c}" for c in missing_categories],
        }

    @staticmethod
    def _validate_case(payload: dict[str, Any], external_id: str) -> None:
        for key, expected, label in (
            ("photoSets", list, "a list"),
            ("procedures", list, "a list"),
            ("procedureIds", list, "a list"),
            ("patient", dict, "an object"),
        ):
            value = payload.get(key)
            if value is not None and not isinstance(value, expected):
                raise MappingError(
                    f"case {external_id}: '{key}' must be {label}",
                    kind=RecordKind.CASE.value,
                    external_id=external_id,
                )

    def _resolve_terms(
        self, kind: RecordKind, external_ids: list[str]
    ) -> tuple[list[str], list[str]]:
        linked: list[str] = []
        missing: list[str] = []
        for ext in external_ids:
            local = self._term_lookup(kind, ext)
            if local is None:
                missing.append(ext)
            elif local not in linked:
                linked.append(local)
        return linked, missing


# ---------------------------------------------------------------------------
# Case field derivation
# ---------------------------------------------------------------------------


def _as_id_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    ids: list[str] = []
    for item in value:
        if item is None or str(item).strip() == "":
            continue
        text = str(item).strip()
        if text not in ids:
            ids.append(text)
    return ids


def _procedure_names(payload: dict[str, Any]) -> list[str]:
    return [
        str(p["name"])
        for p in payload.get("procedures") or []
        if isinstance(p, dict) and p.get("name")
    ]


def extract_procedure_ids(payload: dict[str, Any]) -> list[str]:
    """Procedure external ids referenced by a case, de-duplicated."""
    direct = _as_id_list(payload.get("procedureIds"))
    if direct:
        return direct
    return _as_id_list(
        [
            p.get("id")
            for p in payload.get("procedures") or []
            if isinstance(p, dict)
        ]
    )


def case_title(payload: dict[str, Any], external_id: str) -> str:
    title = str(payload.get("title") or "").strip()
    if title:
        return strip_tags(title)

    names = _procedure_names(payload)
    if names:
        title = " + ".join(names)
        patient = payload.get("patient") or {}
        age = patient.get("age")
        if age:
            gender = str(patient.get("gender") or "")
            if gender:
                title += f" - {age} Year Old {_capitalize(gender)}"
            else:
                title += f" - {age} Years Old"
        return title

    return f"Case #{external_id}"


def case_excerpt(payload: dict[str, Any]) -> str:
    summary = str(payload.get("summary") or "").strip()
    if summary:
        return strip_tags(summary)

    details = strip_tags(payload.get("details") or "")
    if details:
        return trim_words(details)

    parts: list[str] = []
    names = _procedure_names(payload)
    if names:
        parts.append(" and ".join(names))
    patient = payload.get("patient") or {}
    if patient.get("age"):
        gender = patient.get("gender") or "patient"
        parts.append(f"{patient['age']}-year-old {gender}")
    return " for ".join(parts)


def case_slug(payload: dict[str, Any], external_id: str) -> str:
    parts: list[str] = []
    for procedure in payload.get("procedures") or []:
        if not isinstance(procedure, dict):
            continue
        part = slugify(procedure.get("slugName") or "") or slugify(
            procedure.get("name") or ""
        )
        if part:
            parts.append(part)
    parts.append(f"case-{external_id}")
    slug = slugify("-".join(parts))
    return slug or f"case-{uuid.uuid4().hex[:12]}"


def case_status(payload: dict[str, Any]) -> str:
    if "published" in payload and payload["published"] is not None:
        return "publish" if payload["published"] else "draft"
    status = str(payload.get("status") or "").lower()
    return _STATUS_MAP.get(status, "publish")


def case_media(payload: dict[str, Any]) -> list[MediaItem]:
    """Before/after photos of a case; photos without a URL are skipped."""
    media: list[MediaItem] = []
    for photo_set in payload.get("photoSets") or []:
        if not isinstance(photo_set, dict):
            continue
        role = photo_set.get("type")
        if role not in ("before", "after"):
            continue
        for photo in photo_set.get("photos") or []:
            if not isinstance(photo, dict) or not photo.get("url"):
                continue
            media.append(
                MediaItem(
                    role=role,
                    url=str(photo["url"]),
                    alt=str(photo.get("alt") or ""),
                    caption=str(photo.get("caption") or ""),
                    title=str(photo.get("title") or ""),
                    description=str(photo.get("description") or ""),
                    width=_positive_int(photo.get("width")),
                    height=_positive_int(photo.get("height")),
                    file_size=_positive_int(photo.get("fileSize")),
                )
            )
    return media


def _positive_int(value: Any) -> int | None:
    try:
        number = abs(int(value))
    except (TypeError, ValueError, OverflowError):
        return None
    return number or None
