"""Shared business logic for the Prioritizer API."""
from __future__ import annotations

import json
import logging
import uuid
from collections import Counter
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import Table, delete, insert, select, update
from sqlalchemy.orm import Session

from prioritizer import db
from prioritizer.errors import NotFoundError, ValidationError
from prioritizer.models import EXCLUDED_RANK, Criterion, Requirement, Squad
from prioritizer.scorer import (
    DEFAULT_CRITERIA, load_criteria, recompute_all_scores, validate_scores, weighted_score,
)
from prioritizer.utils import json_parse, split_csv, utcnow

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

# Columns a client may not set directly through save.
SYSTEM_COLUMNS = frozenset({"score", "criteria_json", "comments_json", "last_scored", "created_at", "updated_at"})

PLAN_FIELDS = ("in_plan", "minor_release_candidate", "teams", "rough_estimate")

SORT_FIELDS = ("rank", "score", "key", "weight", "summary")

SCORE_RANGES = (("1-2", 1.0, 2.0), ("2-3", 2.0, 3.0), ("3-4", 3.0, 4.0), ("4-5", 4.0, 5.0001))

INT_COLUMNS = ("prioritization", "weight", "rank")
BOOL_COLUMNS = ("in_plan", "minor_release_candidate")

_TRUE_WORDS = ("true", "1", "yes", "y", "x")
_FALSE_WORDS = ("false", "0", "no", "n", "")

# ---------------------------------------------------------------------------
# Column coercion
# ---------------------------------------------------------------------------


def to_int(column: str, value: Any) -> int | None:
    """Whole-number cell or body value; blank is None. Raises ValueError."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        raise ValueError(f"{column}: {value!r} is not a whole number")
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        raise ValueError(f"{column}: {value!r} is not a number") from None
    if not number.is_integer():
        raise ValueError(f"{column}: {value!r} is not a whole number")
    return int(number)


def to_bool(value: Any) -> bool:
    """Lenient spreadsheet flag: anything not truthy-looking is False."""
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_WORDS


def coerce_body(payload: dict[str, Any]) -> dict[str, Any]:
    """Check and convert client-supplied column values to their storage types.

    Integer and flag columns are strict; every other column is text.
    Raises ValidationError naming the offending field.
    """
    clean: dict[str, Any] = {}
    for column, value in payload.items():
        if column in INT_COLUMNS:
            try:
                clean[column] = to_int(column, value)
            except ValueError as exc:
                raise ValidationError(str(exc), field=column) from exc
        elif column in BOOL_COLUMNS:
            if value is None or isinstance(value, bool):
                clean[column] = bool(value)
            elif isinstance(value, (int, str)) and str(value).strip().lower() in _TRUE_WORDS + _FALSE_WORDS:
                clean[column] = str(value).strip().lower() in _TRUE_WORDS
            else:
                raise ValidationError(f"{column}: {value!r} is not a boolean", field=column)
        elif value is None or isinstance(value, str):
            clean[column] = value
        elif isinstance(value, (int, float)):
            clean[column] = str(value)
        else:
            raise ValidationError(f"{column}: expected text, got {type(value).__name__}", field=column)
    return clean

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def parse_comments(raw: str | None) -> list[dict[str, Any]]:
    """Decode the comment log. Older rows hold a bare string or a list of strings."""
    if not raw:
        return []
    parsed = json_parse(raw, None)
    if parsed is None:
        return [{"text": raw, "timestamp": None}]
    if isinstance(parsed, str):
        return [{"text": parsed, "timestamp": None}] if parsed else []
    if not isinstance(parsed, list):
        return [{"text": json.dumps(parsed), "timestamp": None}]
    comments = []
    for item in parsed:
        if isinstance(item, dict) and "text" in item:
            comments.append({"text": str(item["text"]), "timestamp": item.get("timestamp")})
        elif item:
            comments.append({"text": str(item), "timestamp": None})
    return comments


def row_to_dict(row: Mapping[str, Any]) -> dict[str, Any]:
    """Serialize a requirements row, including columns added at import time."""
    out: dict[str, Any] = {}
    for column, value in row.items():
        if column == "criteria_json":
            out["criteria"] = json_parse(value, {})
        elif column == "comments_json":
            out["comments"] = parse_comments(value)
        elif isinstance(value, datetime):
            out[column] = value.isoformat()
        else:
            out[column] = value
    out["score"] = out.get("score") or 0.0
    return out


def criterion_dict(crit: Criterion) -> dict[str, Any]:
    return {"id": crit.id, "name": crit.name, "weight": crit.weight,
            "scale_min": crit.scale_min, "scale_max": crit.scale_max}


def squad_dict(squad: Squad) -> dict[str, Any]:
    return {"id": squad.id, "name": squad.name, "capacity": squad.capacity}


def rank_dict(req: Requirement) -> dict[str, Any]:
    return {"key": req.key, "summary": req.summary, "rank": req.rank, "score": req.score or 0.0}


# ---------------------------------------------------------------------------
# Filtering and sorting
# ---------------------------------------------------------------------------


def filter_and_sort(
    items: list[dict], *, search=None, status=None, sort_by="rank", sort_dir="asc",
) -> list[dict]:
    if status:
        wanted = {s.strip().lower() for s in status.split(",")}
        items = [i for i in items if (i.get("status") or "").lower() in wanted]
    if search:
        q = search.lower()
        items = [i for i in items if q in i["key"].lower() or q in (i.get("summary") or "").lower()]

    def sort_key(item: dict):
        if sort_by == "score":
            return (item.get("score") or 0.0, item["key"])
        if sort_by == "weight":
            return (item.get("weight") or 0, item["key"])
        if sort_by == "summary":
            return ((item.get("summary") or "").lower(), item["key"])
        if sort_by == "key":
            return (item["key"],)
        return (item.get("rank") or 0, item["key"])

    items.sort(key=sort_key, reverse=(sort_dir == "desc"))
    return items


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


def upsert_requirement_row(
    session: Session, table: Table, key: str, payload: dict[str, Any], *, exists: bool,
) -> None:
    """Sparse upsert: only columns present in ``payload`` are written (caller must commit)."""
    now = utcnow()
    values = {k: v for k, v in payload.items() if k != "key"}
    if exists:
        values["updated_at"] = now
        session.execute(update(table).where(table.c.key == key).values(**values))
        return
    defaults = {
        "score": 0.0, "criteria_json": "{}", "comments_json": "[]",
        "in_plan": False, "minor_release_candidate": False,
        "created_at": now, "updated_at": now,
    }
    session.execute(insert(table).values(**{**defaults, **values, "key": key}))


def _get_requirement(session: Session, key: str) -> Requirement:
    req = session.get(Requirement, key)
    if req is None:
        raise NotFoundError("Requirement", key)
    return req


# ---------------------------------------------------------------------------
# Requirements
# ---------------------------------------------------------------------------


def list_requirements(session: Session, **filters) -> list[dict]:
    table = db.requirements_table(session)
    items = [row_to_dict(r) for r in session.execute(select(table)).mappings()]
    return filter_and_sort(items, **filters)


def get_requirement(session: Session, key: str) -> dict[str, Any]:
    table = db.requirements_table(session)
    row = session.execute(select(table).where(table.c.key == key)).mappings().first()
    if row is None:
        raise NotFoundError("Requirement", key)
    return row_to_dict(row)


def save_requirement(session: Session, data: dict[str, Any]) -> dict[str, Any]:
    """Create or fully update a requirement from a JSON body.

    Body keys naming existing columns (fixed or imported) are written;
    unknown keys are ignored. ``criteria`` and ``comments`` are stored in
    their JSON columns and the score is recomputed.
    """
    key = str(data.get("key") or "").strip()
    if not key:
        raise ValidationError("key is required", field="key")
    table = db.requirements_table(session)
    writable = set(table.c.keys()) - SYSTEM_COLUMNS
    payload = coerce_body({k: v for k, v in data.items() if k in writable and k != "key"})
    payload["key"] = key

    criteria_scores = data.get("criteria")
    if criteria_scores is not None:
        criteria = load_criteria(session)
        clean = validate_scores(criteria_scores, {c.id: c for c in criteria})
        payload["criteria_json"] = json.dumps(clean)
        payload["score"] = weighted_score(clean, criteria)
        payload["last_scored"] = utcnow()
    if data.get("comments") is not None:
        payload["comments_json"] = json.dumps(data["comments"])

    exists = session.execute(select(table.c.key).where(table.c.key == key)).first() is not None
    upsert_requirement_row(session, table, key, payload, exists=exists)
    session.commit()
    return get_requirement(session, key)


def delete_requirement(session: Session, key: str) -> None:
    req = _get_requirement(session, key)
    session.delete(req)
    session.commit()


def add_comment(session: Session, key: str, text: str) -> list[dict[str, Any]]:
    """Append a timestamped entry to the comment log (caller must commit)."""
    text = (text or "").strip()
    if not text:
        raise ValidationError("comment text must not be empty", field="text")
    req = _get_requirement(session, key)
    comments = parse_comments(req.comments_json)
    comments.append({"text": text, "timestamp": utcnow().isoformat() + "Z"})
    req.comments_json = json.dumps(comments)
    return comments


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------


def update_rank(session: Session, key: str, rank: int) -> Requirement:
    """Set one requirement's rank. Does not renumber the others (caller must commit)."""
    req = _get_requirement(session, key)
    req.rank = rank
    return req


def normalize_ranks(session: Session) -> list[Requirement]:
    """Renumber ranks to 0..N-1 by (rank asc, score desc).

    Requirements ranked EXCLUDED_RANK keep that rank and are appended
    at the end. Idempotent. Caller must commit.
    """
    reqs = session.execute(select(Requirement).order_by(Requirement.key)).scalars().all()
    excluded = [r for r in reqs if r.rank == EXCLUDED_RANK]
    ranked = sorted(
        (r for r in reqs if r.rank != EXCLUDED_RANK),
        key=lambda r: (r.rank or 0, -(r.score or 0.0), r.key),
    )
    for idx, req in enumerate(ranked):
        req.rank = idx
    return [*ranked, *excluded]


# ---------------------------------------------------------------------------
# Criteria
# ---------------------------------------------------------------------------


def list_criteria(session: Session) -> dict[str, Any]:
    criteria = [criterion_dict(c) for c in load_criteria(session)]
    return {"items": criteria, "total_weight": sum(c["weight"] or 0 for c in criteria)}


def save_criterion(session: Session, data: dict[str, Any]) -> dict[str, Any]:
    """Upsert a criterion by id and recompute all scores."""
    if data["scale_min"] >= data["scale_max"]:
        raise ValidationError("scale_min must be below scale_max", field="scale_min")
    crit = session.get(Criterion, data["id"])
    if crit is None:
        crit = Criterion(id=data["id"])
        session.add(crit)
    apply_updates(crit, data, ("name", "weight", "scale_min", "scale_max"))
    session.flush()
    recompute_all_scores(session)
    session.commit()
    total = sum(c.weight or 0 for c in load_criteria(session))
    if total > 100:
        log.warning("Criteria weights sum to %d (more than 100)", total)
    return criterion_dict(crit)


def delete_criterion(session: Session, criterion_id: str) -> None:
    crit = session.get(Criterion, criterion_id)
    if crit is None:
        raise NotFoundError("Criterion", criterion_id)
    session.delete(crit)
    session.flush()
    recompute_all_scores(session)
    session.commit()


def reset_criteria(session: Session) -> list[dict[str, Any]]:
    """Replace all criteria with the default set."""
    session.execute(delete(Criterion))
    for data in DEFAULT_CRITERIA:
        session.add(Criterion(**data))
    session.flush()
    recompute_all_scores(session)
    session.commit()
    return [criterion_dict(c) for c in load_criteria(session)]


# ---------------------------------------------------------------------------
# Squads
# ---------------------------------------------------------------------------


def list_squads(session: Session) -> list[dict[str, Any]]:
    squads = session.execute(select(Squad).order_by(Squad.name)).scalars().all()
    return [squad_dict(s) for s in squads]


def save_squad(session: Session, data: dict[str, Any]) -> dict[str, Any]:
    squad_id = data.get("id") or uuid.uuid4().hex
    squad = session.get(Squad, squad_id)
    if squad is None:
        squad = Squad(id=squad_id)
        session.add(squad)
    apply_updates(squad, data, ("name", "capacity"))
    session.commit()
    return squad_dict(squad)


def delete_squad(session: Session, squad_id: str) -> None:
    squad = session.get(Squad, squad_id)
    if squad is None:
        raise NotFoundError("Squad", squad_id)
    session.delete(squad)
    session.commit()


# ---------------------------------------------------------------------------
# Release plan
# ---------------------------------------------------------------------------


def plan_overview(session: Session) -> dict[str, Any]:
    items = list_requirements(session, sort_by="rank", sort_dir="asc")
    capacity = sum(s["capacity"] or 0 for s in list_squads(session))
    return {
        "items": items,
        "summary": {
            "in_plan_count": sum(1 for i in items if i.get("in_plan")),
            "rough_estimate_count": sum(1 for i in items if (i.get("rough_estimate") or "").strip()),
            "total_capacity": capacity,
        },
    }


def update_plan(session: Session, key: str, changes: dict[str, Any]) -> dict[str, Any]:
    req = _get_requirement(session, key)
    apply_updates(req, changes, PLAN_FIELDS)
    session.commit()
    return get_requirement(session, key)


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


def compute_analytics(session: Session) -> dict[str, Any]:
    reqs = session.execute(select(Requirement)).scalars().all()
    criteria = load_criteria(session)
    total = len(reqs)
    by_status: Counter[str] = Counter()
    by_priority: Counter[str] = Counter()
    by_assignee: Counter[str] = Counter()
    by_label: Counter[str] = Counter()
    by_customer: Counter[str] = Counter()
    by_criterion: Counter[str] = Counter()
    range_counts = {label: 0 for label, _, _ in SCORE_RANGES}
    scored = 0

    for req in reqs:
        by_status[req.status or "Unknown"] += 1
        by_priority[req.priority or "Unknown"] += 1
        by_assignee[req.assignee or "Unassigned"] += 1
        for label in split_csv(req.labels):
            by_label[label] += 1
        for customer in set(split_csv(req.related_customers)):
            by_customer[customer] += 1
        for crit_id, value in json_parse(req.criteria_json, {}).items():
            if isinstance(value, (int, float)) and value > 0:
                by_criterion[crit_id] += 1
        score = req.score or 0.0
        if score > 0:
            scored += 1
        for label, low, high in SCORE_RANGES:
            if low <= score < high:
                range_counts[label] += 1
                break

    def percent(count: int) -> float:
        return round(count / total * 100, 1) if total else 0.0

    return {
        "total": total,
        "scored": scored,
        "by_status": dict(by_status),
        "by_priority": dict(by_priority),
        "by_assignee": dict(by_assignee),
        "by_label": dict(by_label),
        "by_customer": [
            {"customer": name, "count": count, "percent": percent(count)}
            for name, count in sorted(by_customer.items(), key=lambda kv: (-kv[1], kv[0]))
        ],
        "score_ranges": range_counts,
        "criteria_coverage": {c.id: percent(by_criterion[c.id]) for c in criteria},
    }
