import os
import tempfile

# Settings are read once at import time; keep test runs away from ./data and
# from the background scheduler.
os.environ.setdefault("EXPENSES_DATA_DIR", tempfile.mkdtemp(prefix="expenses-tests-"))
os.environ.setdefault("EXPENSES_SCHEDULER_ENABLED", "false")
os.environ.setdefault("EXPENSES_RUN_ON_STARTUP", "false")

import pytest  # noqa: E402

from config import Settings  # noqa: E402
from database import Base, make_engine, make_session_factory  # noqa: E402
import models  # noqa: F401,E402


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
def session_factory(db_url):
    engine = make_engine(db_url)
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def settings(db_url):
    return Settings(
        database_url=db_url,
        timezone="UTC",
        scheduler_workers=2,
        tick_deadline_secs=60,
        definition_timeout_secs=30,
    )
