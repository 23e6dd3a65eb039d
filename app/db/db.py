from sqlalchemy.engine import Engine

from app.config.settings import settings
from app.utils.logging import get_logger

from .models import Base
from .session import engine

logger = get_logger()


def create_tables(bind: Engine = engine):
    """Create scheduler and directory tables that do not exist yet"""
    Base.metadata.create_all(bind)
    logger.info(f"Created tables: {', '.join(sorted(Base.metadata.tables))}")


def drop_tables(bind: Engine = engine):
    if settings.ENVIRONMENT == "production":
        raise RuntimeError("Refusing to drop tables in production")
    Base.metadata.drop_all(bind)
    logger.info("Dropped all tables.")


def reset_db(bind: Engine = engine):
    logger.info(f"Resetting database {bind.url.render_as_string(hide_password=True)}")
    drop_tables(bind)
    create_tables(bind)


if __name__ == "__main__":
    reset_db()
