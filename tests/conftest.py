"""
Pytest configuration and fixtures for the approval workflow engine tests
"""

import os
from types import SimpleNamespace
from typing import Generator
from uuid import uuid4

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Set test environment variable before any imports
os.environ["TESTING"] = "true"

from approval_engine.api.deps import get_services
from approval_engine.core.exceptions import ExternalDependencyError
from approval_engine.db.database import Base, get_db
from approval_engine.main import app
from approval_engine.models.user import Role, Site, User
from approval_engine.schemas.workflow import WorkflowTemplateCreate
from approval_engine.services import build_services
from approval_engine.services.notification_dispatcher import NotificationDispatcher
from approval_engine.services.realtime_publisher import RealtimePublisher


class FakeSender:
    """Records templated sends; the first ``failures`` calls raise"""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.sent = []
        self.attempts = 0

    def send_templated(self, template_key, locale, variables, to):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise ExternalDependencyError(f"Failed to send '{template_key}' email to {to}")
        self.sent.append(
            {"template": template_key, "locale": locale, "variables": variables, "to": to}
        )

    def sent_to(self, email, template=None):
        return [
            message
            for message in self.sent
            if message["to"] == email and (template is None or message["template"] == template)
        ]


async def _no_sleep(seconds):
    return None


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so separate sessions use separate connections"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'approvals.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    """Create a fresh database session for each test"""
    db = session_factory()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def publisher():
    return RealtimePublisher()


@pytest.fixture
def make_services(sender, publisher):
    """Build engine services around any session, sharing sender and publisher"""

    def factory(session, actions=None):
        dispatcher = NotificationDispatcher(
            session,
            sender=sender,
            publisher=publisher,
            retry_base_delay=0,
            sleep=_no_sleep,
            run_in_background=False,
        )
        return build_services(session, dispatcher=dispatcher, actions=actions)

    return factory


@pytest.fixture
def services(db_session, make_services):
    return make_services(db_session)


@pytest.fixture
def directory(db_session):
    """One company: requester, two approvers, a manager, an admin and an outsider"""
    company_id = str(uuid4())

    approver_role = Role(company_id=company_id, name="Approver", permissions=["approve_workflows"])
    requester_role = Role(company_id=company_id, name="Requester", permissions=["create_workflows"])
    manager_role = Role(
        company_id=company_id,
        name="Manager",
        permissions=["approve_workflows", "create_workflows"],
    )
    admin_role = Role(company_id=company_id, name="Admin", permissions=[])
    viewer_role = Role(company_id=company_id, name="Viewer", permissions=[])
    db_session.add_all([approver_role, requester_role, manager_role, admin_role, viewer_role])
    db_session.flush()

    def user(name, role, **kwargs):
        account = User(
            company_id=company_id,
            email=f"{name}@example.com",
            full_name=name.title(),
            role_id=role.id,
            is_active=True,
            **kwargs,
        )
        db_session.add(account)
        db_session.flush()
        return account

    manager = user("manager", manager_role)
    requester = user("requester", requester_role, manager_id=manager.id)
    approver1 = user("approver1", approver_role)
    approver2 = user("approver2", approver_role)
    admin = user("admin", admin_role)
    viewer = user("viewer", viewer_role)

    site = Site(company_id=company_id, name="Head office", head_user_id=manager.id)
    db_session.add(site)
    db_session.flush()
    requester.site_id = site.id

    db_session.commit()
    return SimpleNamespace(
        company_id=company_id,
        approver_role=approver_role,
        requester_role=requester_role,
        manager_role=manager_role,
        admin_role=admin_role,
        viewer_role=viewer_role,
        manager=manager,
        requester=requester,
        approver1=approver1,
        approver2=approver2,
        admin=admin,
        viewer=viewer,
        site=site,
    )


@pytest.fixture
def make_template(services, directory):
    """Create a template from step dicts through the template service"""

    async def factory(steps, **kwargs):
        payload = {
            "name": kwargs.pop("name", "Purchase order approval"),
            "entity_type": kwargs.pop("entity_type", "purchase_order"),
            "trigger_type": kwargs.pop("trigger_type", "purchase_order_create"),
            "steps": steps,
        }
        payload.update(kwargs)
        return await services.templates.create_template(
            WorkflowTemplateCreate.model_validate(payload),
            directory.company_id,
            directory.requester.id,
        )

    return factory


@pytest.fixture
def client(db_session, sender, publisher) -> Generator:
    """Create a test client bound to the test database"""

    def override_get_db():
        yield db_session

    def override_get_services(db=Depends(get_db)):
        dispatcher = NotificationDispatcher(
            db,
            sender=sender,
            publisher=publisher,
            retry_base_delay=0,
            sleep=_no_sleep,
            run_in_background=False,
        )
        return build_services(db, dispatcher=dispatcher)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_services] = override_get_services
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
