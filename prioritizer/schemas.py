"""Pydantic request/response schemas for the Prioritizer API."""
from __future__ import annotations

import re
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

T = TypeVar("T")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    data: T | None = None
    message: str | None = None


class RequirementOut(BaseModel):
    """A requirement row. Columns added at import time pass through as extras."""

    model_config = ConfigDict(extra="allow")

    key: str
    summary: str | None = ""
    priority: str | None = ""
    status: str | None = ""
    assignee: str | None = ""
    time_spent: str | None = ""
    labels: str | None = ""
    rough_estimate: str | None = ""
    related_customers: str | None = ""
    product_owner: str | None = ""
    prioritization: int | None = None
    weight: int | None = None
    rank: int | None = 0
    score: float = 0.0
    criteria: dict[str, Any] = {}
    comments: list[dict[str, Any]] = []
    last_scored: str | None = None
    in_plan: bool | None = False
    minor_release_candidate: bool | None = False
    teams: str | None = ""
    created_at: str | None = None
    updated_at: str | None = None


class RequirementSave(BaseModel):
    model_config = ConfigDict(extra="allow")

    key: str = Field(min_length=1, max_length=100)
    criteria: dict[str, float | None] | None = None
    comments: list[dict[str, Any]] | None = None


class ColumnsOut(BaseModel):
    headers: list[str]
    suggested_mapping: dict[str, str]


class ScoreIn(BaseModel):
    criteria: dict[str, float | None]


class RankIn(BaseModel):
    rank: int


class RankOut(BaseModel):
    key: str
    summary: str | None = ""
    rank: int | None = None
    score: float = 0.0


class CommentIn(BaseModel):
    text: str


class CriterionIn(BaseModel):
    id: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1)
    weight: int = Field(0, ge=0)
    scale_min: int = 1
    scale_max: int = 5

    @field_validator("id")
    @classmethod
    def id_must_be_safe(cls, v: str) -> str:
        if not re.match(r"^[a-zA-Z0-9_-]+$", v):
            raise ValueError("id must contain only letters, numbers, hyphens, and underscores")
        return v


class CriterionOut(BaseModel):
    id: str
    name: str
    weight: int
    scale_min: int
    scale_max: int


class CriteriaList(BaseModel):
    items: list[CriterionOut]
    total_weight: int


class SquadIn(BaseModel):
    id: str | None = None
    name: str = Field(min_length=1)
    capacity: int = Field(1, gt=0)


class SquadOut(BaseModel):
    id: str
    name: str
    capacity: int


class PlanUpdate(BaseModel):
    in_plan: bool | None = None
    minor_release_candidate: bool | None = None
    teams: str | None = None
    rough_estimate: str | None = None


class OtpRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def email_must_look_valid(cls, v: str) -> str:
        v = v.strip().lower()
        if not _EMAIL_RE.match(v):
            raise ValueError("email address is not valid")
        return v


class OtpVerify(OtpRequest):
    code: str = Field(min_length=6, max_length=6)


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class JiraTestIn(BaseModel):
    jira_url: str = Field(min_length=1)
    token: str = Field(min_length=1)
