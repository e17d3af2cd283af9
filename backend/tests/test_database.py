from __future__ import annotations

from sqlalchemy import create_engine, inspect
from sqlalchemy.pool import StaticPool

from receiptscan.core import database
from receiptscan.core.database import normalize_database_url


def test_normalize_database_url_uses_psycopg():
    assert normalize_database_url("postgres://u:p@db/app") == "postgresql+psycopg://u:p@db/app"
    assert normalize_database_url("postgresql://u@db/app") == "postgresql+psycopg://u@db/app"
    assert normalize_database_url("postgresql+psycopg2://u@db/app") == "postgresql+psycopg://u@db/app"
    assert normalize_database_url("sqlite:///./x.db") == "sqlite:///./x.db"


def test_init_db_creates_tables():
    eng = create_engine("sqlite://", poolclass=StaticPool)
    database.init_db(bind=eng)
    assert {"users", "jobs", "receipts", "rules", "exports"} <= set(inspect(eng).get_table_names())


def test_init_db_script_uses_module_engine(monkeypatch):
    from receiptscan.scripts import init_db as script

    calls = []
    monkeypatch.setattr(script, "init_db", lambda: calls.append(True))
    script.main()
    assert calls == [True]
