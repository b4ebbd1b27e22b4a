"""
Shared database base and session configuration.
All models import Base from here.
"""

from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from Database.DatabaseConfig import DatabaseConfig, get_config


def build_engine(url: str, echo: bool = False, pool_size: int = 10, max_overflow: int = 20):
    """Create an engine; pool sizing only applies to server databases."""
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True
    )


def engine_from_config(config: DatabaseConfig):
    return build_engine(
        config.url,
        echo=config.echo,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow
    )


# Create engine (connection pool) from the validated DATABASE_URL / DB_* settings
engine = engine_from_config(get_config().database)

# Shared Base for all models
Base = declarative_base()

# Session factory
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    """
    Database session generator.
    Use with: db = next(get_db())
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
