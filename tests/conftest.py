"""Shared pytest fixtures: a throwaway SQLite file database per test."""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from survey_quota.core.db import create_db_engine, get_db, init_db
from survey_quota.main import app
from survey_quota.models.orm.form import AssignmentStrategy
from survey_quota.models.schemas.form import ArticleImportModel, ArticleRecord, FormCreateModel
from survey_quota.models.schemas.quota import GroupConfig, QuotaSettings
from survey_quota.models.schemas.session import SessionStartModel
from survey_quota.services.form_service import FormService
from survey_quota.services.session_service import SessionService


def build_settings(dutch: int = 1, minority: int = 2) -> QuotaSettings:
    return QuotaSettings(
        group_by_field="ethnicity",
        groups={
            "dutch": GroupConfig(values=["Nederlands", "Duits"], target=dutch),
            "minority": GroupConfig(values=["Turks", "Marokkaans"], target=minority),
        },
    )


@pytest.fixture
def quota_settings():
    """Factory for ethnicity-based settings with adjustable targets."""
    return build_settings


@pytest.fixture
def engine(tmp_path):
    # A file, not :memory:, so worker threads get real separate connections
    eng = create_db_engine(f"sqlite:///{tmp_path / 'survey_quota.db'}", sqlite_timeout=15.0)
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_form(db):
    """Creates a form and imports one article per short id."""

    def _make(
        short_ids=("a1",),
        strategy=AssignmentStrategy.INDIVIDUAL,
        articles_per_session=1,
        quota_settings=None,
        minimum_age=18,
        session_timeout_mins=60,
    ):
        service = FormService(db)
        form = service.create_form(
            FormCreateModel(
                title="Nieuwsartikelen",
                assignment_strategy=strategy,
                articles_per_session=articles_per_session,
                session_timeout_mins=session_timeout_mins,
                minimum_age=minimum_age,
                quota_settings=quota_settings or build_settings(),
            )
        )
        if short_ids:
            service.import_articles(
                form.form_id,
                ArticleImportModel(
                    articles=[ArticleRecord(short_id=s, text=f"Text of {s}") for s in short_ids]
                ),
            )
        return form

    return _make


@pytest.fixture
def start_session(db):
    """Starts a participant session and returns its public projection."""

    def _start(form_id: str):
        return SessionService(db).start_or_resume(form_id, SessionStartModel()).session

    return _start


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    # Not entered as a context manager: the lifespan would create the default database
    yield TestClient(app)
    app.dependency_overrides.clear()
