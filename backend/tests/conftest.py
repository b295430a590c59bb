"""Shared fixtures: a file-backed SQLite database per test and common actors."""
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from landcredit.database import Base
from landcredit.models import db_models  # noqa: F401  registers tables
from landcredit.models.domain import Actor, EvidenceItem, Polygon, UserRole


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'landcredit-test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def contributor():
    return Actor(id=str(uuid4()), role=UserRole.CONTRIBUTOR, display_name="Ana Contributor")


@pytest.fixture
def verifier():
    return Actor(id=str(uuid4()), role=UserRole.VERIFIER, display_name="Vic Verifier")


@pytest.fixture
def square():
    """Closed unit-ish square near the origin."""
    return Polygon(coordinates=[[[10.0, 20.0], [10.5, 20.0], [10.5, 20.5], [10.0, 20.5], [10.0, 20.0]]])


@pytest.fixture
def evidence():
    return [
        EvidenceItem(cid="bafy-before", name="before.jpg", type="image/jpeg"),
        EvidenceItem(url="https://files.example.org/after.jpg", name="after.jpg"),
    ]
