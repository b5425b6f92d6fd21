import pytest

from attendance import storage
from attendance.models import SessionRecord


@pytest.fixture
def db(tmp_path):
    storage.init(str(tmp_path / "test.db"))
    yield
    storage.close()


@pytest.fixture
def make_session(db):
    def _make(session_id="s1", meeting_id="m1", **kwargs):
        kwargs.setdefault("title", f"Session {session_id}")
        kwargs.setdefault("scheduled_duration_minutes", 60)
        session = SessionRecord(session_id=session_id, meeting_id=meeting_id, **kwargs)
        storage.upsert_session(session)
        return session
    return _make
