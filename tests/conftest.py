import mongomock
import pytest

import db


@pytest.fixture
def mongo(monkeypatch):
    """In-memory store wired into db.get_db for the duration of one test."""
    database = mongomock.MongoClient()["hydro_test"]
    monkeypatch.setattr(db, "get_db", lambda: database)
    return database


@pytest.fixture
def no_sleep():
    """Pass as sleep= so retry backoff never actually waits."""
    return lambda seconds: None
