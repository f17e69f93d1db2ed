from __future__ import annotations

from sqlalchemy import Boolean, Column, Index, Integer, String, Text

from .db import Base


class Observation(Base):
    """One practice attempt on a board. Rows are only ever inserted or
    overwritten by their client-supplied id."""

    __tablename__ = "observations"

    id = Column(String, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    timestamp = Column(String, index=True, nullable=False)  # ISO-8601
    skill_path = Column(String, index=True, nullable=False)
    correct = Column(Boolean, nullable=False)
    board_result = Column(String, nullable=True)  # 'correct' | 'failed' | 'corrected'
    classroom = Column(String, index=True, nullable=True)
    deal_subfolder = Column(String, nullable=True)
    deal_number = Column(Integer, nullable=True)
    encrypted_data = Column(Text, nullable=False)
    iv = Column(String, nullable=False)
    created_at = Column(String, nullable=False)

    __table_args__ = (
        Index("idx_observations_deal_user", "deal_subfolder", "deal_number", "user_id"),
    )


class BoardStatusRow(Base):
    __tablename__ = "board_status"

    student_id = Column(String, primary_key=True)
    board_subfolder = Column(String, primary_key=True)
    board_number = Column(Integer, primary_key=True)
    status = Column(String, nullable=False, default="not_attempted")
    achievement = Column(String, nullable=False, default="none")
    last_observation_at = Column(String, nullable=True)
    updated_at = Column(String, nullable=False)
