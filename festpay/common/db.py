"""Database bootstrap helpers shared by all services."""

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from festpay.common.config import settings


# Single SQLAlchemy engine per process.
engine = create_engine(settings.postgres_dsn, pool_pre_ping=True)
# `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def make_session_factory(bind) -> sessionmaker:
    """Session factory with the same options as `SessionLocal` for another engine."""

    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)
