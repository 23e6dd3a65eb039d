from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from app.config.settings import settings


def build_engine(database_url: str) -> Engine:
    """Create an engine for the given URL with pooling suited to its backend"""
    if database_url.startswith("sqlite"):
        # Dispatcher jobs and request handlers touch the database from worker threads
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )

    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600,
        isolation_level="READ_COMMITTED",
        echo=False,
    )


engine = build_engine(str(settings.DATABASE_URL))

SessionLocal = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


def get_sync_session():
    """Dependency to get sync database session"""
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
