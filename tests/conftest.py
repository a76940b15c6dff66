from datetime import datetime, timezone
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.auth import UserProfile, get_identity_provider
from app.db import Base
from app.errors import IdentityProviderError
from app.main import app, get_db
from app.models import ExpenseCategory


class FakeIdentityProvider:
    """In-memory stand-in for the identity provider; records every call."""

    def __init__(self) -> None:
        self.tokens: dict[str, str] = {}
        self.profiles: dict[str, UserProfile] = {}
        self.expired: set[str] = set()
        self.unreachable = False
        self.verify_calls: list[str] = []
        self.profile_calls: list[str] = []

    def add_user(
        self,
        token: str,
        subject_id: str,
        role: Optional[str] = None,
        tenant_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> None:
        metadata = {}
        if role is not None:
            metadata["role"] = role
        if tenant_id is not None:
            metadata["tenantId"] = tenant_id
        self.tokens[token] = subject_id
        self.profiles[subject_id] = UserProfile(
            subject_id=subject_id,
            email_addresses=[email] if email else [],
            public_metadata=metadata,
        )

    def verify_token(self, token: str) -> str:
        self.verify_calls.append(token)
        if token in self.expired:
            raise IdentityProviderError("token expired")
        if token not in self.tokens:
            raise IdentityProviderError("signature mismatch")
        return self.tokens[token]

    def fetch_profile(self, subject_id: str) -> UserProfile:
        self.profile_calls.append(subject_id)
        if self.unreachable:
            raise IdentityProviderError("connection refused")
        if subject_id not in self.profiles:
            raise IdentityProviderError("user not found")
        return self.profiles[subject_id]


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture
def count_rows(session_factory):
    def count(model) -> int:
        with session_factory() as db:
            return db.scalar(select(func.count()).select_from(model))

    return count


@pytest.fixture
def categories(session_factory):
    now = datetime.now(timezone.utc)
    with session_factory() as db:
        db.add_all(
            [
                ExpenseCategory(id=5, name="Utilities", is_active=True, created_at=now, updated_at=now),
                ExpenseCategory(id=6, name="Rent", is_active=True, created_at=now, updated_at=now),
                ExpenseCategory(id=7, name="Marketing", is_active=False, created_at=now, updated_at=now),
            ]
        )
        db.commit()


@pytest.fixture
def identity() -> FakeIdentityProvider:
    provider = FakeIdentityProvider()
    provider.add_user("owner-token", "user_owner", role="tenant_owner", tenant_id="T1", email="owner@example.com")
    provider.add_user("clerk-token", "user_clerk", tenant_id="T1")
    provider.add_user("other-token", "user_other", role="tenant_owner", tenant_id="T2")
    provider.add_user("admin-token", "user_admin", role="admin", email="admin@example.com")
    return provider


@pytest.fixture
def client(session_factory, identity):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_identity_provider] = lambda: identity
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
