from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, sessionmaker

from relay.config import settings

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _engine_kwargs(url: str, statement_timeout_ms: int) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    kwargs: dict = {"pool_pre_ping": True}
    if url.startswith("postgresql"):
        kwargs["connect_args"] = {"options": f"-c timezone=utc -c statement_timeout={int(statement_timeout_ms)}"}
    return kwargs


def make_engine(url: str, statement_timeout_ms: int = 5000, **overrides):
    kwargs = _engine_kwargs(url, statement_timeout_ms)
    kwargs.update(overrides)
    return create_engine(url, **kwargs)


engine = make_engine(settings.database_url, settings.db_statement_timeout_ms)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
