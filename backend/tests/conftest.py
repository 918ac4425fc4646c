"""Shared test fixtures and configuration for backend tests."""
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from carechat.auth.dependencies import set_identity_verifier, set_user_directory
from carechat.auth.service import VerifiedClaims
from carechat.database import Database
from carechat.directory.service import UserDirectory
from carechat.errors import InvalidCredential
from carechat.main import app
from carechat.messaging.service import MessageService, set_message_service
from carechat.notifications.service import NotificationService
from carechat.realtime.session import SessionManager, set_session_manager


class FakeClock:
    """Manually advanced naive-UTC clock."""

    def __init__(self, start: datetime = datetime(2024, 3, 1, 9, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeVerifier:
    """Accepts tokens of the form ``token-<subject>``."""

    def __init__(self) -> None:
        self.calls = []

    async def verify(self, token: str) -> VerifiedClaims:
        self.calls.append(token)
        if not token.startswith("token-"):
            raise InvalidCredential()
        return VerifiedClaims(subject_id=token[len("token-"):])


@pytest.fixture
def database():
    """Fresh in-memory DuckDB per test."""
    db = Database(db_path=":memory:")
    yield db
    db.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def directory(database):
    return UserDirectory(database)


@pytest.fixture
def notifications(database):
    return NotificationService(database)


@pytest.fixture
def service(database, directory, notifications, clock):
    return MessageService(database, directory, notifications, clock=clock)


@pytest.fixture
def poster(directory):
    return directory.upsert_user("sub-poster", "poster@example.com", "Pat Poster", "organization")


@pytest.fixture
def nurse(directory):
    return directory.upsert_user("sub-nurse", "nurse@example.com", "Nina Nurse", "healthcare")


@pytest.fixture
def stranger(directory):
    return directory.upsert_user("sub-stranger", "x@example.com", "Sam Stranger", "individual")


@pytest.fixture
def admin(directory):
    return directory.upsert_user("sub-admin", "admin@example.com", "Ada Admin", "admin")


@pytest.fixture
def application(directory, poster, nurse):
    return directory.add_job_application(
        job_post_id="job-1",
        job_poster_id=poster.id,
        healthcare_user_id=nurse.id,
        job_title="Night shift nurse",
    )


@pytest.fixture
def conversation(service, application, poster):
    return service.get_or_create_conversation(application.id, poster.id)


@pytest.fixture
def session_manager(directory, notifications, database):
    """SessionManager over a real-clock MessageService (socket tests)."""
    message_service = MessageService(database, directory, notifications)
    return SessionManager(message_service, directory, FakeVerifier(), notifications=notifications)


@asynccontextmanager
async def _preinstalled_services(_app):
    yield


@pytest.fixture
def api_client(session_manager, directory, monkeypatch):
    """TestClient for the main app with the test services installed.

    The real lifespan is swapped out; the singletons it would create are set
    here. The client is entered so every socket shares one event loop.
    """
    monkeypatch.setattr(app.router, "lifespan_context", _preinstalled_services)
    set_user_directory(directory)
    set_identity_verifier(session_manager.verifier)
    set_message_service(session_manager.messages)
    set_session_manager(session_manager)
    with TestClient(app) as client:
        yield client
    set_session_manager(None)
    set_message_service(None)
    set_identity_verifier(None)
    set_user_directory(None)


@pytest.fixture
def auth_header():
    """Build the Authorization header FakeVerifier accepts for a user."""
    def _header(user) -> dict:
        return {"Authorization": f"Bearer token-{user.identitySubject}"}
    return _header
