"""
Pytest configuration and fixtures.
"""
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Configuration de test, avant tout import du service
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["EVENTS_ENABLED"] = "0"
os.environ["LOCAL_TZ"] = "Europe/Paris"

# Add service root to Python path
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__) + '/..'))

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

import models
from models import Profile, Membership

# Mardi 10 juin 2025, 10:30 à Paris
NOW = datetime(2025, 6, 10, 8, 30, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    # une seule connexion partagée : la base en mémoire survit entre sessions
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    SQLModel.metadata.create_all(eng)
    yield eng
    SQLModel.metadata.drop_all(eng)


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def client(engine):
    from fastapi.testclient import TestClient
    from app import app
    from db import get_session

    def override():
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = override
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_member(session):
    """Create a profile with an optional membership."""
    def _make(member_id, full_name=None, role=models.ROLE_MEMBER, status="active",
              membership_type="premium", end_date=None, with_membership=True):
        profile = Profile(
            id=member_id,
            full_name=full_name or member_id.capitalize(),
            email=f"{member_id}@example.com",
            qr_code=f"MEMBER_{member_id.upper()}",
            role=role,
        )
        session.add(profile)
        if with_membership:
            session.add(Membership(
                user_id=member_id,
                type=membership_type,
                status=status,
                start_date=NOW - timedelta(days=30),
                end_date=end_date or datetime.now(timezone.utc) + timedelta(days=365),
            ))
        session.commit()
        session.refresh(profile)
        return profile
    return _make
