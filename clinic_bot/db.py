# clinic_bot/db.py
import os
from sqlalchemy import event
from sqlmodel import SQLModel, create_engine, Session
from .settings import load_settings

_settings = load_settings()

# sqlite:////abs/path -> parent dir must exist
if _settings.database_url.startswith("sqlite:////"):
    db_path = _settings.database_url.replace("sqlite:////", "/")
    os.makedirs(os.path.dirname(db_path), exist_ok=True)

_connect_args = {}
if _settings.database_url.startswith("sqlite"):
    # FastAPI runs sync deps and the webhook pipeline in a thread pool
    _connect_args["check_same_thread"] = False

engine = create_engine(_settings.database_url, echo=False, connect_args=_connect_args)

if _settings.database_url.startswith("sqlite"):
    @event.listens_for(engine, "connect")
    def _sqlite_fk_on(dbapi_conn, _record):
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

def init_db():
    # tables must be registered on the metadata before create_all
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(engine)

def get_session():
    with Session(engine) as session:
        yield session
