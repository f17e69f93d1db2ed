import os
import sys

import pytest


def _ensure_backend_root_on_path() -> None:
    tests_dir = os.path.dirname(__file__)
    backend_root = os.path.abspath(os.path.join(tests_dir, ".."))
    if backend_root not in sys.path:
        sys.path.insert(0, backend_root)


_ensure_backend_root_on_path()

# settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("API_KEY", "test-key")
os.environ.setdefault("BACKFILL_ON_STARTUP", "0")

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from classroom_api.db import init_db  # noqa: E402


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()
