from sqlalchemy.exc import OperationalError

from classroom_api import backfill
from classroom_api.backfill import backfill_board_status, run_startup_backfill
from classroom_api.models import BoardStatusRow, Observation
from classroom_api.store import BoardStatusStore


def add_observation(db, obs_id, ts, user="u1", subfolder="lesson-1", number=1, board_result="correct"):
    db.add(
        Observation(
            id=obs_id,
            user_id=user,
            timestamp=ts,
            skill_path="play/finesse",
            correct=board_result == "correct",
            board_result=board_result,
            deal_subfolder=subfolder,
            deal_number=number,
            encrypted_data="x",
            iv="iv",
            created_at=ts,
        )
    )
    db.commit()


def test_backfill_computes_every_board(session_factory, db):
    add_observation(db, "1", "2024-03-01T10:00:00Z")
    add_observation(db, "2", "2024-03-07T10:00:00Z")
    add_observation(db, "3", "2024-03-01T10:00:00Z", number=2, board_result="failed")
    add_observation(db, "4", "2024-03-01T10:00:00Z", user="u2")
    add_observation(db, "5", "2024-03-01T10:00:00Z", subfolder=None, number=None)

    report = backfill_board_status(session_factory)

    assert report.skipped is False
    assert (report.total, report.succeeded, report.failed) == (3, 3, 0)
    rows = {
        (r.student_id, r.board_subfolder, r.board_number): r
        for r in db.query(BoardStatusRow).all()
    }
    assert set(rows) == {("u1", "lesson-1", 1), ("u1", "lesson-1", 2), ("u2", "lesson-1", 1)}
    assert rows[("u1", "lesson-1", 1)].achievement == "silver"
    assert rows[("u1", "lesson-1", 2)].status == "failed"


def test_backfill_is_a_noop_when_status_exists(session_factory, db):
    add_observation(db, "1", "2024-03-01T10:00:00Z")
    BoardStatusStore(db).upsert("u9", "lesson-x", 5, "failed", "gold", None)
    before = db.get(BoardStatusRow, ("u9", "lesson-x", 5)).updated_at

    report = backfill_board_status(session_factory)

    assert report.skipped is True
    db.expire_all()
    rows = db.query(BoardStatusRow).all()
    assert len(rows) == 1
    assert rows[0].status == "failed"
    assert rows[0].achievement == "gold"
    assert rows[0].updated_at == before


def test_backfill_counts_failures_and_continues(session_factory, db, monkeypatch):
    add_observation(db, "1", "2024-03-01T10:00:00Z", number=1)
    add_observation(db, "2", "2024-03-01T10:00:00Z", number=2)
    add_observation(db, "3", "2024-03-01T10:00:00Z", number=3)

    real_refresh = backfill.refresh_board_status

    def flaky_refresh(session, user_id, subfolder, number):
        if number == 2:
            raise OperationalError("UPDATE board_status", {}, Exception("disk I/O error"))
        return real_refresh(session, user_id, subfolder, number)

    monkeypatch.setattr(backfill, "refresh_board_status", flaky_refresh)

    report = backfill_board_status(session_factory)

    assert (report.total, report.succeeded, report.failed) == (3, 2, 1)
    numbers = sorted(r.board_number for r in db.query(BoardStatusRow).all())
    assert numbers == [1, 3]


def test_startup_backfill_swallows_storage_errors(session_factory, monkeypatch):
    def broken_count(self):
        raise OperationalError("SELECT count(*) FROM board_status", {}, Exception("no such table"))

    monkeypatch.setattr(BoardStatusStore, "count", broken_count)

    report = run_startup_backfill(session_factory)

    assert report.skipped is False
    assert report.succeeded == 0


def test_startup_backfill_swallows_unexpected_errors(session_factory, monkeypatch):
    def broken_keys(self):
        raise RuntimeError("unexpected row shape")

    monkeypatch.setattr(backfill.ObservationLog, "board_keys", broken_keys)

    report = run_startup_backfill(session_factory)

    assert report.total == 0
    assert report.failed == 0
