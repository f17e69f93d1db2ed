from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from .board_status import BoardOutcome, recompute
from .models import BoardStatusRow, Observation
from .schemas import EncryptedObservation

_log = logging.getLogger("classroom_api.store")

BoardKey = Tuple[str, str, int]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ObservationFilter:
    user_id: Optional[str] = None
    classroom: Optional[str] = None
    skill_path: Optional[str] = None  # prefix match
    correct: Optional[bool] = None
    from_: Optional[str] = None
    to: Optional[str] = None

    def apply(self, q: Query) -> Query:
        if self.user_id is not None:
            q = q.filter(Observation.user_id == self.user_id)
        if self.classroom is not None:
            q = q.filter(Observation.classroom == self.classroom)
        if self.skill_path is not None:
            q = q.filter(Observation.skill_path.startswith(self.skill_path, autoescape=True))
        if self.correct is not None:
            q = q.filter(Observation.correct == self.correct)
        if self.from_ is not None:
            q = q.filter(Observation.timestamp >= self.from_)
        if self.to is not None:
            q = q.filter(Observation.timestamp <= self.to)
        return q


class ObservationLog:
    """Append-only attempt log; rows are overwritten only by their own id."""

    def __init__(self, db: Session):
        self.db = db

    def save(self, incoming: EncryptedObservation) -> Observation:
        meta = incoming.metadata
        row = self.db.get(Observation, meta.observation_id)
        if row is None:
            row = Observation(
                id=meta.observation_id,
                user_id=meta.user_id,
                skill_path=meta.skill_path,
                classroom=meta.classroom,
                deal_subfolder=meta.deal_subfolder,
                deal_number=meta.deal_number,
                created_at=utc_now_iso(),
            )
            self.db.add(row)
        row.timestamp = meta.timestamp
        row.correct = bool(meta.correct)
        row.board_result = meta.board_result
        row.encrypted_data = incoming.encrypted_data
        row.iv = incoming.iv
        self.db.commit()
        return row

    def history(self, user_id: str, subfolder: str, number: int) -> List[Observation]:
        return (
            self.db.query(Observation)
            .filter(
                Observation.user_id == user_id,
                Observation.deal_subfolder == subfolder,
                Observation.deal_number == number,
            )
            .order_by(Observation.timestamp.asc())
            .all()
        )

    def board_keys(self) -> List[BoardKey]:
        rows = (
            self.db.query(
                Observation.user_id,
                Observation.deal_subfolder,
                Observation.deal_number,
            )
            .filter(
                Observation.deal_subfolder.isnot(None),
                Observation.deal_number.isnot(None),
            )
            .distinct()
            .all()
        )
        return [(user_id, subfolder, int(number)) for user_id, subfolder, number in rows]

    def search(self, filters: ObservationFilter, limit: int = 100, offset: int = 0) -> List[Observation]:
        q = filters.apply(self.db.query(Observation))
        q = q.order_by(Observation.timestamp.desc())
        if limit is not None:
            q = q.limit(limit).offset(offset)
        return q.all()

    def count(self, filters: ObservationFilter) -> int:
        q = filters.apply(self.db.query(func.count(Observation.id)))
        return int(q.scalar() or 0)


class BoardStatusStore:
    """One derived row per (student, board)."""

    def __init__(self, db: Session):
        self.db = db

    def get_achievement(self, student_id: str, subfolder: str, number: int) -> Optional[str]:
        row = self.db.get(BoardStatusRow, (student_id, subfolder, number))
        return row.achievement if row is not None else None

    def upsert(
        self,
        student_id: str,
        subfolder: str,
        number: int,
        status: str,
        achievement: str,
        last_observation_at: Optional[str],
    ) -> BoardStatusRow:
        try:
            row = self._write(student_id, subfolder, number, status, achievement, last_observation_at)
            self.db.commit()
        except IntegrityError:
            # Another writer inserted the same key first; update its row instead.
            self.db.rollback()
            _log.info(
                "board_status_upsert_retry student=%s board=%s/%s",
                student_id,
                subfolder,
                number,
            )
            row = self._write(student_id, subfolder, number, status, achievement, last_observation_at)
            self.db.commit()
        return row

    def _write(self, student_id, subfolder, number, status, achievement, last_observation_at) -> BoardStatusRow:
        row = self.db.get(BoardStatusRow, (student_id, subfolder, number))
        if row is None:
            row = BoardStatusRow(
                student_id=student_id,
                board_subfolder=subfolder,
                board_number=number,
            )
            self.db.add(row)
        row.status = status
        row.achievement = achievement
        row.last_observation_at = last_observation_at
        row.updated_at = utc_now_iso()
        self.db.flush()
        return row

    def count(self) -> int:
        return int(self.db.query(func.count()).select_from(BoardStatusRow).scalar() or 0)

    def list_for_student(self, student_id: str, subfolder: Optional[str] = None) -> List[BoardStatusRow]:
        q = self.db.query(BoardStatusRow).filter(BoardStatusRow.student_id == student_id)
        if subfolder is not None:
            q = q.filter(BoardStatusRow.board_subfolder == subfolder)
        return q.order_by(
            BoardStatusRow.board_subfolder.asc(),
            BoardStatusRow.board_number.asc(),
        ).all()


def refresh_board_status(db: Session, user_id: str, subfolder: str, number: int) -> BoardOutcome:
    """Recompute one board from its full history and store the result.

    Storage errors propagate to the caller.
    """
    history = ObservationLog(db).history(user_id, subfolder, number)
    statuses = BoardStatusStore(db)
    previous = statuses.get_achievement(user_id, subfolder, number)
    outcome = recompute(history, previous)
    statuses.upsert(
        user_id,
        subfolder,
        number,
        outcome.status,
        outcome.achievement,
        outcome.last_observation_at,
    )
    return outcome
