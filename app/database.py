from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, sessionmaker

from app.core.config import database_url

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)

Base = declarative_base()

# JSONB on Postgres, plain JSON elsewhere (sqlite in tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")

DATABASE_URL = ""
engine = None
_configured_database_url = None


def configure_database() -> None:
    global DATABASE_URL, engine, _configured_database_url

    url = database_url()

    if engine is not None and _configured_database_url == url:
        return

    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(url, pool_pre_ping=True)
    SessionLocal.configure(bind=engine)
    DATABASE_URL = url
    _configured_database_url = url


def is_postgres() -> bool:
    return engine is not None and engine.dialect.name == "postgresql"


configure_database()


def get_db():
    configure_database()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
