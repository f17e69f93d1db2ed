from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from .store import BoardStatusStore, ObservationLog, refresh_board_status

_log = logging.getLogger("classroom_api.backfill")


@dataclass
class BackfillReport:
    skipped: bool = False
    total: int = 0
    succeeded: int = 0
    failed: int = 0


def backfill_board_status(session_factory: Callable[[], Session]) -> BackfillReport:
    """Populate board_status from the whole observation log.

    Only runs while board_status is empty. Every board is recomputed in its
    own session; a failing board is logged and counted, never fatal.
    """
    db = session_factory()
    try:
        existing = BoardStatusStore(db).count()
        if existing > 0:
            _log.info("backfill_skipped rows=%d", existing)
            return BackfillReport(skipped=True)
        keys = ObservationLog(db).board_keys()
    finally:
        db.close()

    report = BackfillReport(total=len(keys))
    _log.info("backfill_started boards=%d", report.total)

    for user_id, subfolder, number in keys:
        db = session_factory()
        try:
            refresh_board_status(db, user_id, subfolder, number)
            report.succeeded += 1
        except Exception:
            db.rollback()
            report.failed += 1
            _log.exception(
                "backfill_board_failed user=%s board=%s/%s",
                user_id,
                subfolder,
                number,
            )
        finally:
            db.close()

    _log.info(
        "backfill_complete succeeded=%d failed=%d",
        report.succeeded,
        report.failed,
    )
    return report


def run_startup_backfill(session_factory: Callable[[], Session]) -> BackfillReport:
    """Startup wrapper: any failure is logged so the app still serves."""
    try:
        return backfill_board_status(session_factory)
    except Exception:
        _log.exception("backfill_aborted")
        return BackfillReport()
