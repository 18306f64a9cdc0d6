"""
Pytest configuration and fixtures for DailyLearn backend tests.

Provides:
- A fresh in-memory SQLite database per test
- FastAPI test client wired to that database and to fake gateways
- Topic / question / user factories
- Fake clock, sleep, push gateway and completion client
"""

import os
from datetime import datetime, timedelta
from typing import Callable, Generator, Iterable, Optional

import pytest

# Set test environment before importing the app
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["OPENAI_API_KEY"] = "test-key-not-real"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["ENABLE_SCHEDULER"] = "false"
for _name in ("SENTRY_DSN", "VAPID_PRIVATE_KEY", "VAPID_PUBLIC_KEY"):
    os.environ.pop(_name, None)

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dailylearn.config import Settings
from dailylearn.database import Base, get_db
from dailylearn.models.models import AiAnswer, Question, Topic, User
from dailylearn.services import answer_generator as answer_generator_module
from dailylearn.services import daily_flow as daily_flow_module
from dailylearn.services import notification_dispatcher as dispatcher_module
from dailylearn.services import push_gateway as push_gateway_module
from dailylearn.services.answer_generator import AnswerGenerator
from dailylearn.services.background_tasks import JobRunner
from dailylearn.services.catalog import TopicCatalog
from dailylearn.services.daily_flow import DailyFlowService
from dailylearn.services.notification_dispatcher import NotificationDispatcher
from dailylearn.utils.cache import TTLCache
from tests.mocks import FIXED_NOW, FakeClock, FakeCompletionClient, FakePushGateway, RecordingSleep, subscription_token


# =========================================================================
# Database
# =========================================================================

@pytest.fixture(scope="function")
def engine():
    """One in-memory database per test, shared across threads."""
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine) -> Callable[[], Session]:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db(session_factory) -> Generator[Session, None, None]:
    """Provide a database session for each test"""
    session = session_factory()
    yield session
    session.close()


# =========================================================================
# Time
# =========================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(FIXED_NOW)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


# =========================================================================
# Gateways and services
# =========================================================================

@pytest.fixture
def push_gateway() -> FakePushGateway:
    return FakePushGateway()


@pytest.fixture
def completion_client() -> FakeCompletionClient:
    return FakeCompletionClient()


@pytest.fixture
def job_runner() -> Generator[JobRunner, None, None]:
    runner = JobRunner(max_workers=1)
    yield runner
    runner.shutdown(wait=True)


@pytest.fixture
def dispatcher(push_gateway, clock) -> NotificationDispatcher:
    return NotificationDispatcher(gateway=push_gateway, batch_limit=500, clock=clock)


@pytest.fixture
def catalog(clock) -> TopicCatalog:
    return TopicCatalog(cache=TTLCache(maxsize=16, default_ttl=60, clock=clock))


@pytest.fixture
def daily_flow(dispatcher, catalog, job_runner, session_factory, clock) -> DailyFlowService:
    return DailyFlowService(
        dispatcher=dispatcher,
        catalog=catalog,
        job_runner=job_runner,
        session_factory=session_factory,
        clock=clock,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(openai_api_key="test-key-not-real", ai_batch_size=10, ai_batch_delay_seconds=2.0)


@pytest.fixture
def generator(completion_client, settings, sleep, clock, job_runner, session_factory) -> AnswerGenerator:
    return AnswerGenerator(
        completion_client=completion_client,
        settings=settings,
        sleep=sleep,
        clock=clock,
        job_runner=job_runner,
        session_factory=session_factory,
    )


@pytest.fixture(scope="function")
def client(
    session_factory, daily_flow, dispatcher, generator, push_gateway, monkeypatch
) -> Generator[TestClient, None, None]:
    """Provide FastAPI test client with database and service overrides"""
    from dailylearn.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    monkeypatch.setattr(daily_flow_module, "_daily_flow_service", daily_flow)
    monkeypatch.setattr(dispatcher_module, "_dispatcher", dispatcher)
    monkeypatch.setattr(answer_generator_module, "_answer_generator", generator)
    monkeypatch.setattr(push_gateway_module, "_push_gateway", push_gateway)

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


# =========================================================================
# Factories
# =========================================================================

@pytest.fixture
def make_topic(db: Session) -> Callable[..., Topic]:
    def _make_topic(name: str, sort_order: int = 0, is_active: bool = True, icon: Optional[str] = None) -> Topic:
        slug = name.lower().replace(" ", "-")
        topic = Topic(
            id=f"topic-{slug}",
            name=name,
            slug=slug,
            category="programming",
            description=f"{name} questions",
            icon=icon,
            is_active=is_active,
            sort_order=sort_order,
        )
        db.add(topic)
        db.commit()
        db.refresh(topic)
        return topic
    return _make_topic


@pytest.fixture
def make_question(db: Session) -> Callable[..., Question]:
    counter = {"n": 0}

    def _make_question(
        topic: Topic,
        text: Optional[str] = None,
        last_used_date: Optional[datetime] = None,
        is_active: bool = True,
        difficulty: str = "intermediate",
        tags: Optional[list] = None,
    ) -> Question:
        counter["n"] += 1
        question = Question(
            id=f"{topic.id}-q{counter['n']}",
            topic_id=topic.id,
            text=text or f"{topic.name} question {counter['n']}?",
            difficulty=difficulty,
            tags=tags or [],
            is_active=is_active,
            last_used_date=last_used_date,
            usage_count=0 if last_used_date is None else 1,
            # Strictly increasing creation times for deterministic ordering
            created_at=FIXED_NOW - timedelta(days=365) + timedelta(minutes=counter["n"]),
        )
        db.add(question)
        db.commit()
        db.refresh(question)
        return question
    return _make_question


@pytest.fixture
def make_answer(db: Session) -> Callable[..., AiAnswer]:
    def _make_answer(question: Question, answer: str = "Cached answer", is_stale: bool = False) -> AiAnswer:
        ai_answer = AiAnswer(
            question_id=question.id,
            answer=answer,
            generated_at=FIXED_NOW - timedelta(days=1),
            model="gpt-4",
            token_count=100,
            is_stale=is_stale,
        )
        db.add(ai_answer)
        db.commit()
        db.refresh(ai_answer)
        return ai_answer
    return _make_answer


@pytest.fixture
def make_user(db: Session) -> Callable[..., User]:
    counter = {"n": 0}

    def _make_user(
        topics: Iterable[Topic] = (),
        token: Optional[str] = "default",
        is_active: bool = True,
        streak_count: int = 0,
        streak_last_active_date=None,
        user_id: Optional[str] = None,
    ) -> User:
        counter["n"] += 1
        n = counter["n"]
        user = User(
            id=user_id or f"user-{n:03d}",
            email=f"user{n}@dailylearn.test",
            username=f"user{n}",
            is_active=is_active,
            notification_token=subscription_token(f"user-{n}") if token == "default" else token,
            streak_count=streak_count,
            streak_last_active_date=streak_last_active_date,
        )
        user.subscribed_topics = list(topics)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make_user
