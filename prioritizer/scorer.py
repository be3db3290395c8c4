"""Weighted scoring of requirements against criteria.

A requirement's score is the weighted average of its per-criterion scores::

    score = Σ(score_c × weight_c) / Σ(weight_c)

summed over the criteria that have both a score on the requirement and a
non-zero weight, rounded to two decimals. The result is persisted on the
requirement and recomputed whenever a criterion changes.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from prioritizer.errors import NotFoundError, ValidationError
from prioritizer.models import Criterion, Requirement
from prioritizer.utils import json_parse, utcnow

log = logging.getLogger(__name__)

DEFAULT_CRITERIA = (
    {"id": "customer_retention", "name": "Customer Retention", "weight": 24, "scale_min": 1, "scale_max": 5},
    {"id": "move_the_needle", "name": "Move the Needle", "weight": 26, "scale_min": 1, "scale_max": 5},
    {"id": "strategic_alignment", "name": "Strategic Alignment", "weight": 25, "scale_min": 1, "scale_max": 5},
    {"id": "tech_debt", "name": "Tech Debt", "weight": 25, "scale_min": 1, "scale_max": 5},
)


def weighted_score(scores: Mapping[str, float], criteria: Iterable[Criterion]) -> float:
    total_weighted = 0.0
    total_weight = 0.0
    for crit in criteria:
        value = scores.get(crit.id)
        weight = float(crit.weight or 0)
        if value is None or not weight:
            continue
        total_weighted += float(value) * weight
        total_weight += weight
    if total_weight <= 0:
        return 0.0
    return round(total_weighted / total_weight, 2)


def validate_scores(scores: Mapping[str, Any], criteria: dict[str, Criterion]) -> dict[str, float]:
    clean: dict[str, float] = {}
    for crit_id, value in scores.items():
        if value is None:
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"score must be a number, got {value!r}", field=crit_id) from None
        crit = criteria.get(crit_id)
        if crit is not None and not (crit.scale_min <= number <= crit.scale_max):
            raise ValidationError(
                f"score {number:g} outside scale {crit.scale_min}-{crit.scale_max}", field=crit_id,
            )
        clean[crit_id] = number
    return clean


def load_criteria(session: Session) -> list[Criterion]:
    return list(session.execute(select(Criterion).order_by(Criterion.id)).scalars().all())


def score_requirement(session: Session, key: str, scores: Mapping[str, Any]) -> Requirement:
    """Store criterion scores on a requirement and recompute its score (caller must commit)."""
    req = session.get(Requirement, key)
    if req is None:
        raise NotFoundError("Requirement", key)
    criteria = load_criteria(session)
    clean = validate_scores(scores, {c.id: c for c in criteria})
    req.criteria_json = json.dumps(clean)
    req.score = weighted_score(clean, criteria)
    req.last_scored = utcnow()
    return req


def recompute_all_scores(session: Session) -> int:
    """Recompute every requirement's score from the current criteria (caller must commit)."""
    criteria = load_criteria(session)
    changed = 0
    for req in session.execute(select(Requirement)).scalars():
        new_score = weighted_score(json_parse(req.criteria_json, {}), criteria)
        if req.score != new_score:
            req.score = new_score
            changed += 1
    if changed:
        log.info("Recomputed scores for %d requirements", changed)
    return changed
