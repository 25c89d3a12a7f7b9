import os

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import sessionmaker

from .models import Base

# dialects with INSERT ... ON CONFLICT ... RETURNING
UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def make_engine(database_url: str):
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(database_url, connect_args=connect_args)


def make_session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine) -> None:
    Base.metadata.create_all(bind=engine)


engine = make_engine(os.environ.get("DATABASE_URL", "sqlite:///orders.db"))
SessionLocal = make_session_factory(engine)
