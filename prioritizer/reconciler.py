"""Reconcile extracted spreadsheet rows against stored requirements.

``preview`` classifies rows as inserts or updates without touching storage.
``commit`` extends the requirements table with any new mapped fields, then
upserts row by row. Each row is committed on its own, so a failure part way
through leaves the earlier rows applied.
"""
from __future__ import annotations

import logging
import re
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from prioritizer import db
from prioritizer.errors import ImportCommitError, InvalidMapping
from prioritizer.importer import Extraction, validate_mapping
from prioritizer.services import (
    BOOL_COLUMNS, INT_COLUMNS, row_to_dict, to_bool, to_int, upsert_requirement_row,
)

log = logging.getLogger(__name__)

# Legacy spellings (mostly lower-cased camelCase) that map onto one column.
COLUMN_ALIASES = {
    "productowner": "product_owner",
    "timespent": "time_spent",
    "roughestimate": "rough_estimate",
    "relatedcustomers": "related_customers",
    "inplan": "in_plan",
    "minorrelcandidate": "minor_release_candidate",
    "minorreleasecandidate": "minor_release_candidate",
}

# Derived columns an import never writes.
PROTECTED_COLUMNS = frozenset({
    "score", "criteria", "criteria_json", "comments", "comments_json",
    "last_scored", "created_at", "updated_at",
})

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])([A-Z])")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")

_KEY_CHUNK = 500


def storage_column(field_name: str) -> str:
    """Resolve a mapping field name to its requirements column name."""
    compact = _NON_ALNUM_RE.sub("", field_name.casefold())
    if compact in COLUMN_ALIASES:
        return COLUMN_ALIASES[compact]
    snake = _CAMEL_RE.sub(r"_\1", field_name.strip()).casefold()
    name = _NON_ALNUM_RE.sub("_", snake).strip("_")
    if not db.COLUMN_NAME_RE.match(name):
        raise InvalidMapping(f"Field name {field_name!r} cannot be used as a column")
    return name


def resolve_columns(mapping: dict[str, str]) -> dict[str, str]:
    """Map each mapped field to its storage column, dropping derived columns."""
    columns: dict[str, str] = {}
    for field_name in mapping:
        column = storage_column(field_name)
        if column in PROTECTED_COLUMNS:
            log.warning("Ignoring mapped field %r: %s is computed, not imported", field_name, column)
            continue
        columns[field_name] = column
    return columns


def normalize_row(values: dict[str, Any], columns: dict[str, str]) -> dict[str, Any]:
    """Turn an extracted row into a column payload ready for upsert.

    Raises ValueError for malformed numeric cells.
    """
    payload: dict[str, Any] = {}
    for field_name, value in values.items():
        column = columns.get(field_name)
        if column is not None:
            payload[column] = value
    if payload.get("rank") in (None, ""):
        payload["rank"] = 0
    for column, value in payload.items():
        if column in INT_COLUMNS:
            payload[column] = to_int(column, value)
        elif column in BOOL_COLUMNS:
            payload[column] = to_bool(value)
        elif not isinstance(value, str):
            payload[column] = str(value)
    return payload


def fetch_existing(session: Session, keys: list[str]) -> dict[str, dict[str, Any]]:
    """Current stored values for the given keys, in one query per chunk."""
    table = db.requirements_table(session)
    unique = list(dict.fromkeys(keys))
    found: dict[str, dict[str, Any]] = {}
    for start in range(0, len(unique), _KEY_CHUNK):
        chunk = unique[start:start + _KEY_CHUNK]
        rows = session.execute(select(table).where(table.c.key.in_(chunk))).mappings()
        for row in rows:
            found[row["key"]] = row_to_dict(row)
    return found


def preview(session: Session, extraction: Extraction, mapping: dict[str, str]) -> dict[str, Any]:
    """Classify rows without mutating storage.

    Row-level normalization failures are collected in ``errors``. A key
    repeated within the file is an update from its second occurrence on,
    matching ``commit``; its current values are what the earlier rows
    would leave stored.
    """
    columns = resolve_columns(mapping)
    existing = fetch_existing(session, [r.key for r in extraction.rows])
    errors = list(extraction.errors)
    to_insert: list[dict[str, Any]] = []
    to_update: list[dict[str, Any]] = []

    for row in extraction.rows:
        try:
            payload = normalize_row(row.values, columns)
        except ValueError as exc:
            errors.append({"row": row.row, "message": str(exc)})
            continue
        current = existing.get(row.key)
        is_update = current is not None
        item = {
            "row": row.row,
            "key": row.key,
            "summary": payload.get("summary", ""),
            "operation": "update" if is_update else "insert",
            "current_values": current,
            "new_values": payload,
        }
        (to_update if is_update else to_insert).append(item)
        existing[row.key] = {**(current or {"key": row.key}), **payload}

    errors.sort(key=lambda e: e["row"])
    return {
        "total_rows": extraction.total,
        "to_be_inserted": to_insert,
        "to_be_updated": to_update,
        "errors": errors,
    }


def commit(session: Session, extraction: Extraction, mapping: dict[str, str]) -> dict[str, Any]:
    """Apply extracted rows: extend the schema, then upsert each row.

    Not atomic across rows. The first failing row raises ImportCommitError;
    rows before it stay committed and the rest are not applied.
    """
    validate_mapping(mapping)
    columns = resolve_columns(mapping)

    try:
        created = db.add_text_columns(session, list(dict.fromkeys(columns.values())))
    except ValueError as exc:
        raise InvalidMapping(str(exc)) from exc
    if created:
        log.info("Import created new requirement fields: %s", ", ".join(created))

    table = db.requirements_table(session)
    existing_keys = set(fetch_existing(session, [r.key for r in extraction.rows]))
    inserted = updated = 0

    for row in extraction.rows:
        try:
            payload = normalize_row(row.values, columns)
            is_update = row.key in existing_keys
            upsert_requirement_row(session, table, row.key, payload, exists=is_update)
            session.commit()
        except (ValueError, SQLAlchemyError) as exc:
            session.rollback()
            log.warning("Import stopped at row %d (%s) after %d rows: %s",
                        row.row, row.key, inserted + updated, exc)
            raise ImportCommitError(row.row, inserted + updated, str(exc)) from exc
        if is_update:
            updated += 1
        else:
            existing_keys.add(row.key)
            inserted += 1

    log.info("Import committed: %d inserted, %d updated, %d skipped",
             inserted, updated, len(extraction.errors))
    return {
        "success": True,
        "created_fields": created,
        "total_rows": extraction.total,
        "inserted": inserted,
        "updated": updated,
        "errors": list(extraction.errors),
    }
