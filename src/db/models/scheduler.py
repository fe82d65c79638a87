"""
Scheduler state tables.

Implements:
- UserStateVersion: optimistic-concurrency version and rotation counter per user
- TubeStateRow: Live Aid role of each tube
- TubePositionRow: sparse logical position map, one row per positioned stitch
- StitchProgressRow: skip number and boundary level per user x stitch
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class UserStateVersion(Base):
    """One row per user; ``version`` guards every save."""

    __tablename__ = "user_state_versions"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rotation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class TubeStateRow(Base):
    __tablename__ = "tube_states"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    tube_id: Mapped[str] = mapped_column(String(16), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)


class TubePositionRow(Base):
    """
    A stitch at a logical position.

    The stitch's immutable specification travels with its position so a
    user's catalogue can be rebuilt from this table alone.
    """

    __tablename__ = "tube_positions"
    __table_args__ = (UniqueConstraint("user_id", "tube_id", "stitch_id", name="uq_tube_positions_stitch"),)

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    tube_id: Mapped[str] = mapped_column(String(16), primary_key=True)
    logical_position: Mapped[int] = mapped_column(Integer, primary_key=True)
    stitch_id: Mapped[str] = mapped_column(String(128), nullable=False)
    concept_code: Mapped[str] = mapped_column(String(32), nullable=False)
    concept_name: Mapped[Optional[str]] = mapped_column(String(128))
    creation_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class StitchProgressRow(Base):
    __tablename__ = "stitch_progress"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    stitch_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    skip_number: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    boundary_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    completions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consecutive_perfect: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
