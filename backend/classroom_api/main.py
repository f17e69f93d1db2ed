import logging
import secrets
import sys
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .backfill import run_startup_backfill
from .board_status import ACHIEVEMENT_NONE, NOT_ATTEMPTED, display_color
from .config import settings
from .db import SessionLocal, get_db, init_db
from .schemas import (
    BoardMasteryEntry,
    BoardMasteryResponse,
    BoardStatusEntry,
    BoardStatusResponse,
    ObservationMetadataOut,
    ObservationOut,
    ObservationsMetadataResponse,
    ObservationsResponse,
    SubmitObservationsRequest,
    SubmitObservationsResponse,
)
from .store import BoardStatusStore, ObservationFilter, ObservationLog, refresh_board_status

MAX_OBSERVATION_LIMIT = 10000

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
_log = logging.getLogger("classroom_api")

app = FastAPI(title="Bridge Classroom API")

_origins = settings.origins
if not _origins or "*" in _origins:
    _origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["content-type", "authorization", "x-api-key"],
    allow_credentials=False,
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    _log.error("unhandled_exception path=%s error=%s", request.url.path, exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "An internal server error occurred."},
    )


@app.on_event("startup")
def startup_event():
    init_db()
    if settings.backfill_on_startup:
        run_startup_backfill(SessionLocal)


def _key_matches(candidate: Optional[str]) -> bool:
    expected = settings.api_key
    if not expected or not candidate:
        return False
    return secrets.compare_digest(candidate, expected)


def require_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    if not _key_matches(x_api_key):
        raise HTTPException(status_code=401, detail="Invalid API key")


def require_submit_key(
    x_api_key: Optional[str] = Header(default=None),
    api_key: Optional[str] = Query(default=None),
) -> None:
    # sendBeacon cannot set headers, so the key may also arrive as a query param
    if not (_key_matches(x_api_key) or _key_matches(api_key)):
        raise HTTPException(status_code=401, detail="Invalid API key")


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/api/observations", response_model=SubmitObservationsResponse)
def submit_observations(
    req: SubmitObservationsRequest,
    db: Session = Depends(get_db),
    _auth: None = Depends(require_submit_key),
):
    log = ObservationLog(db)
    stored = 0
    errors: List[str] = []
    touched = []

    for item in req.observations:
        meta = item.metadata
        try:
            row = log.save(item)
        except SQLAlchemyError as exc:
            db.rollback()
            _log.error("observation_store_failed id=%s error=%s", meta.observation_id, exc)
            errors.append(f"Failed to store {meta.observation_id}: {exc}")
            continue
        stored += 1
        # an overwrite keeps the stored board key, so recompute the row's own board
        if row.deal_subfolder is not None and row.deal_number is not None:
            key = (row.user_id, row.deal_subfolder, row.deal_number)
            if key not in touched:
                touched.append(key)

    for user_id, subfolder, number in touched:
        refresh_board_status(db, user_id, subfolder, number)

    _log.info("observations_stored stored=%d received=%d", stored, len(req.observations))
    return SubmitObservationsResponse(
        received=len(req.observations),
        stored=stored,
        errors=errors,
    )


def _observation_filter(
    user_id: Optional[str] = None,
    classroom: Optional[str] = None,
    skill_path: Optional[str] = None,
    correct: Optional[bool] = None,
    from_: Optional[str] = Query(default=None, alias="from"),
    to: Optional[str] = None,
) -> ObservationFilter:
    return ObservationFilter(
        user_id=user_id,
        classroom=classroom,
        skill_path=skill_path,
        correct=correct,
        from_=from_,
        to=to,
    )


@app.get("/api/observations", response_model=ObservationsResponse)
def list_observations(
    filters: ObservationFilter = Depends(_observation_filter),
    limit: int = Query(default=100, ge=0),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    _auth: None = Depends(require_api_key),
):
    limit = min(limit, MAX_OBSERVATION_LIMIT)
    log = ObservationLog(db)
    rows = log.search(filters, limit=limit, offset=offset)
    return ObservationsResponse(
        observations=[
            ObservationOut(
                id=row.id,
                user_id=row.user_id,
                timestamp=row.timestamp,
                skill_path=row.skill_path,
                correct=row.correct,
                board_result=row.board_result,
                classroom=row.classroom,
                deal_subfolder=row.deal_subfolder,
                deal_number=row.deal_number,
                encrypted_data=row.encrypted_data,
                iv=row.iv,
                created_at=row.created_at,
            )
            for row in rows
        ],
        total=log.count(filters),
        limit=limit,
        offset=offset,
    )


@app.get("/api/observations/metadata", response_model=ObservationsMetadataResponse)
def list_observation_metadata(
    filters: ObservationFilter = Depends(_observation_filter),
    db: Session = Depends(get_db),
    _auth: None = Depends(require_api_key),
):
    log = ObservationLog(db)
    rows = log.search(filters, limit=None)
    return ObservationsMetadataResponse(
        observations=[
            ObservationMetadataOut(
                observation_id=row.id,
                user_id=row.user_id,
                timestamp=row.timestamp,
                skill_path=row.skill_path,
                correct=row.correct,
                board_result=row.board_result,
                classroom=row.classroom,
                deal_subfolder=row.deal_subfolder,
                deal_number=row.deal_number,
            )
            for row in rows
        ],
        total=log.count(filters),
    )


@app.get("/api/board-status", response_model=BoardStatusResponse)
def get_board_status(
    user_id: str,
    deal_subfolder: Optional[str] = None,
    db: Session = Depends(get_db),
    _auth: None = Depends(require_api_key),
):
    rows = BoardStatusStore(db).list_for_student(user_id, deal_subfolder)
    return BoardStatusResponse(
        boards=[
            BoardStatusEntry(
                deal_subfolder=row.board_subfolder,
                deal_number=row.board_number,
                status=row.status,
                achievement=row.achievement,
                last_observation_at=row.last_observation_at,
            )
            for row in rows
        ]
    )


def _parse_board_numbers(raw: Optional[str]) -> Optional[List[int]]:
    if raw is None or not raw.strip():
        return None
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise HTTPException(status_code=422, detail="boards must be a comma separated list of integers")


@app.get("/api/board-status/mastery", response_model=BoardMasteryResponse)
def get_board_mastery(
    user_id: str,
    deal_subfolder: str,
    boards: Optional[str] = None,
    db: Session = Depends(get_db),
    _auth: None = Depends(require_api_key),
):
    rows = BoardStatusStore(db).list_for_student(user_id, deal_subfolder)
    by_number = {row.board_number: row for row in rows}
    numbers = _parse_board_numbers(boards)
    if numbers is None:
        numbers = sorted(by_number)

    entries: List[BoardMasteryEntry] = []
    for number in numbers:
        row = by_number.get(number)
        if row is None:
            entries.append(
                BoardMasteryEntry(
                    deal_number=number,
                    status=NOT_ATTEMPTED,
                    achievement=ACHIEVEMENT_NONE,
                    display_color=display_color(NOT_ATTEMPTED),
                )
            )
            continue
        entries.append(
            BoardMasteryEntry(
                deal_number=number,
                status=row.status,
                achievement=row.achievement,
                display_color=display_color(row.status, row.last_observation_at),
                last_observation_at=row.last_observation_at,
            )
        )
    return BoardMasteryResponse(deal_subfolder=deal_subfolder, boards=entries)
