"""
Test configuration and fixtures for todo app tests.

Provides:
- Test database with SQLite in-memory for speed
- FastAPI test client with database, email, and channel registry overrides
- Authentication helpers (JWT token generation)
- Common fixtures for users, tasks, and teams
- A recording connection that captures real-time events
"""

import os
import sys
import logging
import smtplib
from datetime import timedelta
from typing import Any, Dict, Generator, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, JSON
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.dialects.postgresql import JSONB

# Add backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, get_db, get_session_factory
from main import app
import models
from auth.security import hash_password, create_access_token, token_claims
from realtime.registry import InMemoryChannelRegistry, get_channel_registry, user_room
from services.email import EmailService, get_email_service

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

# SQLite in-memory database for fast testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"

TEST_PASSWORD = "Password123"


class RecordingEmailService(EmailService):
    """Renders messages like the real service but records them instead of sending."""

    def __init__(self):
        super().__init__(host="")
        self.sent: List[Any] = []
        self.fail = False

    async def send(self, message) -> None:
        if self.fail:
            raise smtplib.SMTPException("SMTP server unavailable")
        self.sent.append(message)

    def sent_to(self, address: str) -> List[Any]:
        return [message for message in self.sent if message["To"] == address]


class RecordingConnection:
    """Stands in for a WebSocket; keeps every payload pushed to it."""

    def __init__(self):
        self.received: List[Dict[str, Any]] = []

    async def send_json(self, data: Any) -> None:
        self.received.append(data)

    def events(self, name: str) -> List[Dict[str, Any]]:
        return [message["data"] for message in self.received if message["event"] == name]


@pytest.fixture(scope="function")
def session_factory() -> Generator[sessionmaker, None, None]:
    """
    Create a fresh in-memory SQLite database for each test.

    Every session from the returned factory shares the single in-memory
    connection, so the test session and the WebSocket sessions see the same data.
    """
    logger.debug("Creating test database")

    # Create engine with SQLite in-memory
    engine = create_engine(
        SQLALCHEMY_TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Replace PostgreSQL-specific types with SQLite-compatible types
    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()

    # Create all tables
    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    try:
        yield TestingSessionLocal
    finally:
        # Drop all tables after test
        Base.metadata.drop_all(bind=engine)
        logger.debug("Test database cleaned up")


@pytest.fixture(scope="function")
def test_db(session_factory: sessionmaker) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def email_service() -> RecordingEmailService:
    return RecordingEmailService()


@pytest.fixture(scope="function")
def registry() -> InMemoryChannelRegistry:
    """A fresh channel registry per test so events never leak between tests."""
    return InMemoryChannelRegistry()


@pytest.fixture(scope="function")
def client(
    test_db: Session,
    session_factory: sessionmaker,
    email_service: RecordingEmailService,
    registry: InMemoryChannelRegistry,
) -> TestClient:
    """
    Create FastAPI test client with dependency overrides.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_email_service] = lambda: email_service
    app.dependency_overrides[get_channel_registry] = lambda: registry

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def create_user(test_db: Session, email: str, username: str, **kwargs) -> models.User:
    """Insert an active, verified user with TEST_PASSWORD."""
    user = models.User(
        email=email,
        username=username,
        password_hash=hash_password(TEST_PASSWORD),
        is_active=kwargs.pop("is_active", True),
        email_verified=kwargs.pop("email_verified", True),
        **kwargs,
    )
    test_db.add(user)
    test_db.commit()
    test_db.refresh(user)
    logger.info(f"Created user {username} with ID: {user.id}")
    return user


@pytest.fixture(scope="function")
def user_a(test_db: Session) -> models.User:
    return create_user(test_db, "alice@test.com", "alice", first_name="Alice")


@pytest.fixture(scope="function")
def user_b(test_db: Session) -> models.User:
    return create_user(test_db, "bob@test.com", "bob", first_name="Bob")


@pytest.fixture(scope="function")
def user_c(test_db: Session) -> models.User:
    return create_user(test_db, "carol@test.com", "carol", first_name="Carol")


def create_auth_token(user: models.User, expires_delta: timedelta = None) -> str:
    """
    Helper to create JWT access token for a user.

    Args:
        user: User to create token for
        expires_delta: Optional expiration time override

    Returns:
        JWT access token string
    """
    logger.debug(f"Creating auth token for user {user.id}")
    return create_access_token(token_claims(user), expires_delta)


def auth_headers_for(user: models.User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_auth_token(user)}"}


@pytest.fixture(scope="function")
def headers_a(user_a: models.User) -> Dict[str, str]:
    return auth_headers_for(user_a)


@pytest.fixture(scope="function")
def headers_b(user_b: models.User) -> Dict[str, str]:
    return auth_headers_for(user_b)


@pytest.fixture(scope="function")
def headers_c(user_c: models.User) -> Dict[str, str]:
    return auth_headers_for(user_c)


@pytest.fixture(scope="function")
def connect(registry: InMemoryChannelRegistry):
    """
    Subscribe a recording connection to a user's personal room.

    Usage: conn = connect(user.id)
    """
    def _connect(user_id: int) -> RecordingConnection:
        connection = RecordingConnection()
        registry.join(user_room(user_id), connection)
        return connection

    return _connect


@pytest.fixture(scope="function")
def task_a(test_db: Session, user_a: models.User) -> models.Task:
    """
    Create a task owned by user A.
    """
    task = models.Task(
        user_id=user_a.id,
        title="Buy milk",
        priority=models.TaskPriority.MEDIUM,
        tags=[],
        completed=False,
    )
    test_db.add(task)
    test_db.commit()
    test_db.refresh(task)
    logger.info(f"Created task with ID: {task.id}")
    return task


@pytest.fixture(scope="function")
def shared_view_task(test_db: Session, task_a: models.Task, user_a: models.User, user_b: models.User) -> models.Task:
    """
    User A's task shared with user B as VIEW.
    """
    share = models.TaskShare(
        task_id=task_a.id,
        user_id=user_b.id,
        permission=models.SharePermission.VIEW,
        shared_by=user_a.id,
    )
    test_db.add(share)
    test_db.commit()
    test_db.refresh(task_a)
    return task_a


@pytest.fixture(scope="function")
def team_a(test_db: Session, user_a: models.User) -> models.Team:
    """
    Create a team with user A as its sole OWNER.
    """
    team = models.Team(
        name="Test Team",
        description="A team for testing",
        owner_id=user_a.id,
        invite_code="invite-test-team",
        settings={},
    )
    test_db.add(team)
    test_db.commit()
    test_db.refresh(team)

    test_db.add(models.TeamMember(team_id=team.id, user_id=user_a.id, role=models.TeamRole.OWNER))
    test_db.commit()
    test_db.refresh(team)

    logger.info(f"Created test team with ID: {team.id}")
    return team


def add_team_member(test_db: Session, team: models.Team, user: models.User, role: models.TeamRole) -> models.TeamMember:
    member = models.TeamMember(team_id=team.id, user_id=user.id, role=role)
    test_db.add(member)
    test_db.commit()
    test_db.refresh(member)
    test_db.refresh(team)
    return member
