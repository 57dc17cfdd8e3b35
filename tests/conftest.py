import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import moderation_db


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    # Point DB to a temp file for isolation
    db_file = tmp_path / "moderation_test.sqlite"
    monkeypatch.setattr(moderation_db, "DB_PATH", str(db_file))
    moderation_db.init_db()
    yield str(db_file)
