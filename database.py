"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the contract escrow core.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")

_engine_kwargs = {"echo": Config.DATABASE_ECHO, "pool_pre_ping": True}
if Config.DATABASE_URL.startswith("sqlite"):
    # Scheduler threads share the engine with request handlers
    _engine_kwargs["connect_args"] = {"check_same_thread": False}
else:
    _engine_kwargs.update(pool_size=7, max_overflow=15, pool_recycle=3600, pool_timeout=30)

engine = create_engine(Config.DATABASE_URL, **_engine_kwargs)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def managed_session():
    """Session scope: commit on success, rollback and re-raise on error, always close"""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"❌ Database session rolled back: {e}")
        raise
    finally:
        session.close()


def create_tables():
    """Create all tables that do not exist yet"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("✅ Database tables created/verified")
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        raise
