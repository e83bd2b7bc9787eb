from __future__ import annotations

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("APP_ENVIRONMENT", "testing")

from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from moobee.application.campaigns import create_campaign
from moobee.application.generation import GenerationCache, QuestionGenerator
from moobee.application.notifications import RecordingNotificationDispatcher
from moobee.application.templates import create_template
from moobee.infrastructure.ai_client import Completion
from moobee.infrastructure.config import AIConfig, SecurityConfig
from moobee.infrastructure.db import create_session_factory
from moobee.infrastructure.exceptions import AIProviderError
from moobee.infrastructure.models import (
    Base,
    CampaignORM,
    EmployeeORM,
    EmployeeRoleORM,
    RoleORM,
    RoleSoftSkillORM,
    SoftSkillORM,
    TemplateORM,
)
from moobee.web.dependencies import get_db_session
from moobee.web.main import create_application

TENANT = "tenant-1"
OTHER_TENANT = "tenant-2"
SECRET = "test-secret-value"
NOW = datetime(2025, 3, 3, 9, 0, 0)

BIG_FIVE_ORDER = ("OPENNESS", "CONSCIENTIOUSNESS", "EXTRAVERSION", "AGREEABLENESS", "NEUROTICISM")


@pytest.fixture
def engine() -> Iterator[Engine]:
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def SessionLocal(engine: Engine) -> sessionmaker[Session]:
    return create_session_factory(engine)


@pytest.fixture
def session(SessionLocal: sessionmaker[Session]) -> Iterator[Session]:
    with SessionLocal() as s:
        yield s


class Seeder:
    """Builds tenants' employees, roles, templates and campaigns for a test."""

    def __init__(self, session: Session):
        self.s = session

    def employee(
        self,
        first_name: str = "Ada",
        user_id: str | None = None,
        tenant_id: str = TENANT,
        manager: EmployeeORM | None = None,
    ) -> EmployeeORM:
        employee = EmployeeORM(
            tenant_id=tenant_id,
            user_id=user_id,
            first_name=first_name,
            last_name="Tester",
            email=f"{first_name.lower()}@example.com",
            manager_id=manager.id if manager else None,
        )
        self.s.add(employee)
        self.s.flush()
        return employee

    def soft_skill(self, code: str, name: str) -> SoftSkillORM:
        skill = SoftSkillORM(code=code, name=name)
        self.s.add(skill)
        self.s.flush()
        return skill

    def role(
        self,
        name: str,
        requirements: list[dict[str, Any]],
        employee: EmployeeORM | None = None,
        is_primary: bool = True,
    ) -> RoleORM:
        role = RoleORM(tenant_id=TENANT, name=name)
        self.s.add(role)
        self.s.flush()
        for req in requirements:
            self.s.add(RoleSoftSkillORM(role_id=role.id, **req))
        if employee is not None:
            self.s.add(EmployeeRoleORM(employee_id=employee.id, role_id=role.id, is_primary=is_primary))
        self.s.flush()
        return role

    def template(self, kind: str, questions: list[dict[str, Any]], **extra: Any) -> TemplateORM:
        tenant_id = extra.pop("tenant_id", TENANT)
        payload = {"name": extra.pop("name", f"{kind} template"), "type": kind, "questions": questions}
        payload.update(extra)
        return create_template(self.s, tenant_id, payload)

    def likert_template(
        self,
        kind: str,
        categories: list[str],
        *,
        required: bool = True,
        reversed_positions: tuple[int, ...] = (),
        **extra: Any,
    ) -> TemplateORM:
        questions = [
            {
                "text": f"Statement {i + 1}",
                "category": code,
                "response_kind": "likert",
                "scale_min": 1,
                "scale_max": 5,
                "is_required": required,
                "is_reversed": i in reversed_positions,
            }
            for i, code in enumerate(categories)
        ]
        return self.template(kind, questions, **extra)

    def big_five(self, **extra: Any) -> TemplateORM:
        categories = [code for code in BIG_FIVE_ORDER for _ in range(2)]
        return self.likert_template("big_five", categories, **extra)

    def gallup(self, **extra: Any) -> TemplateORM:
        areas = ["LEADERSHIP", "GROWTH", "RECOGNITION", "BELONGING"]
        return self.likert_template("gallup_q12", [areas[i // 3] for i in range(12)], **extra)

    def campaign(
        self,
        template: TemplateORM,
        employees: list[EmployeeORM],
        *,
        name: str = "Spring cycle",
        start: datetime | None = None,
        deadline: datetime | None = None,
        now: datetime = NOW,
        dispatcher: Any = None,
        **extra: Any,
    ) -> CampaignORM:
        payload = {
            "templateId": template.id,
            "name": name,
            "employeeIds": [e.id for e in employees],
            "startDate": start or now - timedelta(hours=1),
            "deadline": deadline or now + timedelta(days=14),
        }
        payload.update(extra)
        campaign, _ = create_campaign(self.s, TENANT, payload, dispatcher=dispatcher, now=now)
        return campaign


def answers_for(template: TemplateORM, values: list[Any]) -> list[dict[str, Any]]:
    """Answer items in question order; None leaves a question unanswered."""
    return [
        {"questionId": q.id, "value": v}
        for q, v in zip(template.questions, values)
        if v is not None
    ]


@pytest.fixture
def seed(session: Session) -> Seeder:
    return Seeder(session)


@pytest.fixture
def dispatcher() -> RecordingNotificationDispatcher:
    return RecordingNotificationDispatcher()


class FakeProvider:
    """Chat provider returning canned text, or raising a provider error."""

    name = "openai"

    def __init__(self, text: str = "", error: AIProviderError | None = None):
        self.text = text
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def complete(self, **kwargs: Any) -> Completion:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return Completion(text=self.text, model=kwargs["model"], prompt_tokens=1200, completion_tokens=800)


def make_generator(provider: FakeProvider, **config: Any) -> QuestionGenerator:
    ai = AIConfig(openai_api_key="sk-test", **config)
    return QuestionGenerator(ai, provider_factory=lambda name: provider, cache=GenerationCache(60))


def token_for(
    user_id: str,
    role: str = "employee",
    tenant_id: str = TENANT,
    secret: str = SECRET,
    expires_in: timedelta = timedelta(hours=1),
) -> str:
    claims = {
        "userId": user_id,
        "tenantId": tenant_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    return jwt.encode(claims, secret, algorithm="HS256")


def auth(user_id: str, role: str = "employee", **kwargs: Any) -> dict[str, str]:
    return {"Authorization": f"Bearer {token_for(user_id, role, **kwargs)}"}


@pytest.fixture
def app(SessionLocal: sessionmaker[Session], dispatcher: RecordingNotificationDispatcher):
    app = create_application()

    def override_get_db_session():
        session = SessionLocal()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db_session] = override_get_db_session
    app.state.security_config = SecurityConfig(jwt_secret=SECRET)
    app.state.dispatcher = dispatcher
    app.state.generator = make_generator(FakeProvider(error=AIProviderError("offline", "openai")))
    return app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app, raise_server_exceptions=False)

