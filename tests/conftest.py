"""
Shared fixtures for the escrow core test suite.

Every test gets a fresh in-memory SQLite database. ``database.SessionLocal``
is patched so code that opens its own ``managed_session()`` (scheduler jobs,
the notification processor) talks to the same database as the test.

Commit the ``session`` fixture before running a job: the jobs use their own
sessions on the same connection.
"""

import logging
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import database
from models import Base

from factories import NOW, make_gateway, make_user

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine, monkeypatch):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    monkeypatch.setattr(database, "SessionLocal", factory)
    return factory


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def gateway():
    return make_gateway()


@pytest.fixture
def parties(session):
    """(client, doer) pair on the free tier"""
    return make_user(session, name="client"), make_user(session, name="doer")
