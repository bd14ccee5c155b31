from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from campus_transit.core.settings import get_settings


class Base(DeclarativeBase):
    pass


# SQLite file in the backend folder by default (easy local dev)
SQLALCHEMY_DATABASE_URL = get_settings().database_url

_connect_args = {"check_same_thread": False} if SQLALCHEMY_DATABASE_URL.startswith("sqlite") else {}

# check_same_thread=False is required for SQLite: handlers and the poller run in the threadpool
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args=_connect_args)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> None:
    # Importing the models registers every table on Base.metadata.
    from campus_transit import db_models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
