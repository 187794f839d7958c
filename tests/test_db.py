import dataclasses

import pytest

import db


@pytest.fixture
def fresh_pool(monkeypatch):
    monkeypatch.setattr(db, "_POOL", None)
    monkeypatch.setattr(db, "_SETTINGS", None)


def test_pool_is_opened_from_configured_settings(fresh_pool, monkeypatch, settings):
    opened = []

    class RecordingPool:
        def __init__(self, minconn, maxconn, **kwargs):
            opened.append((minconn, maxconn, kwargs))
            self.returned = []

        def getconn(self):
            return "conn"

        def putconn(self, conn):
            self.returned.append(conn)

    monkeypatch.setattr(db.pg_pool, "ThreadedConnectionPool", RecordingPool)
    db.configure(
        dataclasses.replace(settings, database_url="postgresql://vote@db/votes", db_pool_min=2, db_pool_max=4, db_sslmode="disable")
    )

    conn = db.get_connection()
    db.release_connection(conn)
    db.get_connection()

    assert opened == [(2, 4, {"dsn": "postgresql://vote@db/votes", "sslmode": "disable", "connect_timeout": 10})]
    assert db._POOL.returned == ["conn"]


def test_missing_database_url_is_reported(fresh_pool, settings):
    db.configure(dataclasses.replace(settings, database_url=""))

    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        db.get_connection()
