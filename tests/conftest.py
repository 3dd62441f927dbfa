from __future__ import annotations

import os

# Settings are read at import time; give the app a throwaway configuration.
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_INTERVAL_SECONDS", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fitflags import models
from fitflags.auth import create_access_token
from fitflags.database import Base, build_engine, get_db
from fitflags.main import app
from fitflags.schemas import ExperimentCreate, FlagUpsert, VariantCreate
from fitflags.services.experiments import ExperimentEngine
from fitflags.services.flags import FlagAdmin
from fitflags.store import SQLAlchemyStore


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
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
def store(db):
    return SQLAlchemyStore(db)


@pytest.fixture
def flag_admin(store):
    return FlagAdmin(store)


@pytest.fixture
def experiment_engine(store):
    return ExperimentEngine(store)


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_access_token('ops-admin', role='admin')}"}


@pytest.fixture
def user_headers():
    return {"Authorization": f"Bearer {create_access_token('fitness-app', role='user')}"}


def make_flag(flag_admin, name, enabled=True, rollout=100, parent=None, **kwargs):
    return flag_admin.upsert_flag(FlagUpsert(
        feature_name=name,
        enabled=enabled,
        rollout_percentage=rollout,
        parent_feature=parent,
        **kwargs
    ))


def make_experiment(engine, allocation=None, start=True, **kwargs):
    allocation = allocation or {"control": 50, "treatment": 50}
    experiment = engine.create_experiment(ExperimentCreate(
        name=kwargs.pop("name", "Onboarding copy test"),
        variants=[VariantCreate(name=n, allocation=a) for n, a in allocation.items()],
        **kwargs
    ))
    if start:
        engine.start(experiment.id)
    return experiment


def seed_outcomes(db, experiment_id, outcomes, event_type="conversion"):
    """
    Write assignments and first-occurrence conversions directly.

    outcomes maps variant -> (participants, converters).
    """
    now = datetime.utcnow()
    for variant, (participants, converters) in outcomes.items():
        for i in range(participants):
            user_id = f"{variant}-user-{i}"
            db.add(models.VariantAssignment(
                experiment_id=experiment_id, user_id=user_id, variant=variant, bucket=0
            ))
            if i < converters:
                db.add(models.ConversionEvent(
                    experiment_id=experiment_id,
                    user_id=user_id,
                    variant=variant,
                    event_type=event_type,
                    value=1.0,
                    dedupe_key=f"{experiment_id}:{event_type}:{user_id}",
                    occurred_at=now,
                ))
    db.commit()
