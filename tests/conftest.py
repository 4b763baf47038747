import os

# Keep the app's import-time create_all away from the working directory
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from splitlens import config, engine, events, hooks
from splitlens.db import Base, make_engine
from splitlens.main import app, get_db


@pytest.fixture
def db_engine():
    eng = make_engine("sqlite://", echo=False)
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


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


@pytest.fixture(autouse=True)
def isolated_hooks(monkeypatch):
    # No real webhook calls from tests
    monkeypatch.setattr(config, "DECISION_WEBHOOK_URL", None)
    hooks.clear_hooks()
    yield
    hooks.clear_hooks()


@pytest.fixture
def make_active(db):
    """Create and activate an experiment; kwargs go to engine.activate."""

    def _make(name="Price test", product_id=None, confidence_threshold=0.95, min_sample_size=100, **kwargs):
        exp = engine.create_experiment(
            db,
            name=name,
            product_id=product_id,
            confidence_threshold=confidence_threshold,
            min_sample_size=min_sample_size,
        )
        kwargs.setdefault("conversion_rate", 0.02)
        kwargs.setdefault("avg_order_value", 50.0)
        return engine.activate(db, exp.id, **kwargs)

    return _make


def seed_counts(db, experiment_id, control=(0, 0, 0.0), variant=(0, 0, 0.0)):
    """
    Bulk-load synthetic events so an arm ends up with exactly
    (impressions, conversions, revenue). Revenue is split evenly.
    """
    impressions = []
    conversions = []
    for arm, (n_imp, n_conv, revenue) in (("control", control), ("variant", variant)):
        impressions += [{"session_id": f"{arm}-{i}", "variant": arm} for i in range(n_imp)]
        per_order = revenue / n_conv if n_conv else 0.0
        conversions += [
            {"session_id": f"{arm}-{i}", "variant": arm, "revenue": per_order} for i in range(n_conv)
        ]
    return events.ingest_events(db, experiment_id, impressions=impressions, conversions=conversions)


@pytest.fixture
def seed():
    return seed_counts
