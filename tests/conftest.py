import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import itertools
from typing import Callable, Optional, Union
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import relay.models  # noqa: F401  registers tables on Base.metadata
from relay.config import Settings
from relay.database import Base
from relay.models import FAQ, Tenant, User
from relay.services.llm.base import LLMProvider, LLMResponse
from relay.services.result import Result


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    """Real SQLite session; tables are created per test."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed SQLite: every session gets its own connection, so threads really contend."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'relay.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        llm_api_key="test-key",
        tier_1_model="tier-1",
        tier_2_model="tier-2",
        tier_3_model="tier-3",
        fallback_model="fallback",
        twilio_account_sid="AC123",
        twilio_auth_token="twilio-token",
        admin_token="admin-secret",
    )


_phones = itertools.count(1)


@pytest.fixture
def make_tenant(db_session):
    def _make(**overrides) -> Tenant:
        values = {
            "name": "Salon Belle",
            "business_type": "salon",
            "whatsapp_number": f"+3360000{next(_phones):04d}",
            "whatsapp_active": True,
            "timezone": "Europe/Paris",
            "services": ["Coupe", "Couleur"],
            "assignment_strategy": "manual",
            "auto_assign_enabled": False,
        }
        values.update(overrides)
        tenant = Tenant(**values)
        db_session.add(tenant)
        db_session.commit()
        return tenant

    return _make


@pytest.fixture
def make_faq(db_session):
    def _make(tenant: Tenant, question: str, answer: str, **overrides) -> FAQ:
        faq = FAQ(tenant_id=tenant.id, question=question, answer=answer, **overrides)
        db_session.add(faq)
        db_session.commit()
        return faq

    return _make


@pytest.fixture
def make_agent(db_session):
    def _make(tenant: Tenant, name: str, **overrides) -> User:
        values = {"tenant_id": tenant.id, "name": name, "role": "AGENT", "is_available": True, "max_conversations": 10}
        values.update(overrides)
        agent = User(**values)
        db_session.add(agent)
        db_session.commit()
        return agent

    return _make


Answer = Union[str, Exception, Callable[[list, str], str]]


class FakeLLM(LLMProvider):
    """Scripted provider: one answer per model; exceptions are raised."""

    def __init__(self, answers: Optional[dict] = None, default: Answer = "OK"):
        self.answers = dict(answers or {})
        self.default = default
        self.calls: list[tuple[str, list]] = []

    def generate(self, messages, model=None, temperature=0.7, max_tokens=1000, timeout_seconds=None):
        self.calls.append((model, messages))
        answer = self.answers.get(model, self.default)
        if isinstance(answer, list):
            answer = answer.pop(0) if len(answer) > 1 else answer[0]
        if isinstance(answer, Exception):
            raise answer
        if callable(answer):
            answer = answer(messages, model)
        return LLMResponse(content=answer, model=model, usage={"prompt_tokens": 100, "completion_tokens": 20})

    @property
    def models_called(self) -> list[str]:
        return [model for model, _ in self.calls]


@pytest.fixture
def make_llm():
    return FakeLLM


@pytest.fixture
def fake_sender():
    sender = Mock()
    sids = itertools.count(1)
    sender.send_whatsapp_message.side_effect = lambda from_number, to_number, body: Result.success(
        f"SMout{next(sids):04d}"
    )
    return sender
