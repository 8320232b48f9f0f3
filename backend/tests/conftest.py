"""Shared fixtures: in-memory database, scripted AI backend, recording notifier."""
import os

# Before app.database builds its engine
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("OLLAMA_BASE_URL", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.deps import get_ai_service, get_email_service
from app.database import get_db
from app.main import app
from app.models import RFP, RFPStatus
from app.models.base import Base
from app.services.ai_service import AIService
from app.services.lifecycle import RFPLifecycleManager

from tests.fakes import RFP_JSON, FakeNotifier, ScriptedBackend, make_vendor


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db_session(engine):
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = Session()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def ai_backend():
    return ScriptedBackend()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def lifecycle(db_session, ai_backend, notifier):
    return RFPLifecycleManager(db_session, AIService(ai_backend), notifier)


@pytest.fixture
def client(db_session, ai_backend, notifier):
    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_ai_service] = lambda: AIService(ai_backend)
    app.dependency_overrides[get_email_service] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def sample_rfp(db_session):
    rfp = RFP(
        title="Laptop procurement",
        raw_input="Need 5 laptops, budget $5000, deliver in 14 days",
        status=RFPStatus.DRAFT,
        items=RFP_JSON["items"],
        budget=RFP_JSON["budget"],
        timeline={"deliveryDeadline": "2026-11-02", "responseDeadline": "TBD"},
        terms={"paymentTerms": "Net 30", "warranty": "Standard warranty"},
        requirements=[],
    )
    db_session.add(rfp)
    db_session.commit()
    db_session.refresh(rfp)
    return rfp


@pytest.fixture
def vendors(db_session):
    return [
        make_vendor(db_session, "Acme Computers", "sales@acme.test"),
        make_vendor(db_session, "Beta Supplies", "bids@beta.test"),
        make_vendor(db_session, "Gamma Tech", "quotes@gamma.test"),
    ]
