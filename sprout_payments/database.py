from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from sprout_payments.config import get_settings

DATABASE_URL = get_settings().database_url

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
    pool_pre_ping=True,
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def supports_row_locks(db) -> bool:
    # SQLite serializes writers itself and rejects FOR UPDATE.
    return bool(db.bind) and db.bind.dialect.name != "sqlite"
