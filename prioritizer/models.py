from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Rank value that keeps a requirement out of the stack-rank ordering.
EXCLUDED_RANK = 999


class Base(DeclarativeBase):
    pass


class Requirement(Base):
    """A requirement keyed by its tracker key.

    The table also grows nullable TEXT columns at import time for mapped
    fields it does not know about (see ``db.add_text_columns``); those are
    read and written through the reflected table, not this class.
    """

    __tablename__ = "requirements"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    summary: Mapped[str | None] = mapped_column(Text, default="")
    priority: Mapped[str | None] = mapped_column(String(50), default="")
    status: Mapped[str | None] = mapped_column(String(100), default="")
    assignee: Mapped[str | None] = mapped_column(String(200), default="")
    time_spent: Mapped[str | None] = mapped_column(String(100), default="")
    labels: Mapped[str | None] = mapped_column(Text, default="")
    rough_estimate: Mapped[str | None] = mapped_column(String(100), default="")
    related_customers: Mapped[str | None] = mapped_column(Text, default="")
    product_owner: Mapped[str | None] = mapped_column(String(200), default="")
    prioritization: Mapped[int | None] = mapped_column(Integer, nullable=True)
    weight: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True, default=0)
    score: Mapped[float] = mapped_column(Float, default=0.0, server_default="0")
    criteria_json: Mapped[str] = mapped_column(Text, default="{}", server_default="{}")
    comments_json: Mapped[str] = mapped_column(Text, default="[]", server_default="[]")
    last_scored: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    # Release planning
    in_plan: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0")
    minor_release_candidate: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0")
    teams: Mapped[str | None] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class Criterion(Base):
    __tablename__ = "criteria"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    weight: Mapped[int] = mapped_column(Integer, default=0)
    scale_min: Mapped[int] = mapped_column(Integer, default=1)
    scale_max: Mapped[int] = mapped_column(Integer, default=5)


class Squad(Base):
    __tablename__ = "squads"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, default=0)


class OtpCode(Base):
    __tablename__ = "otp_codes"

    email: Mapped[str] = mapped_column(String(320), primary_key=True)
    code_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
