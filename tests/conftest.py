"""Shared pytest fixtures for Label Engine tests."""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from label_engine.engine import ClassificationEngine
from label_engine.entities import EntityRef
from label_engine.models import Base, Label, LabelKind, Rule
from label_engine.services.labels import LabelService
from label_engine.services.rules import RuleService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


# In-memory SQLite by default; point at Postgres with TEST_DATABASE_URL
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")


@pytest.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create a test database engine.

    This creates all tables at the start and drops them at the end.
    """
    options: dict[str, Any] = {"echo": False}
    if TEST_DATABASE_URL.startswith("sqlite"):
        # One shared connection so every session sees the same in-memory database
        options.update(connect_args={"check_same_thread": False}, poolclass=StaticPool)
    engine = create_async_engine(TEST_DATABASE_URL, **options)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session with transaction rollback.

    Each test gets its own transaction that is rolled back at the end.
    """
    async with session_factory() as session:
        async with session.begin():
            yield session
            await session.rollback()


@pytest.fixture
def engine(session_factory: async_sessionmaker[AsyncSession]) -> ClassificationEngine:
    """Engine facade bound to the test database."""
    return ClassificationEngine(session_factory)


@pytest.fixture
def ref() -> EntityRef:
    return EntityRef("store-1", "product-1")


# Type aliases for factory fixtures
MakeLabel = Callable[..., Awaitable[Label]]
MakeRule = Callable[..., Awaitable[Rule]]


@pytest.fixture
def make_label(db_session: AsyncSession) -> MakeLabel:
    """Factory fixture for vocabulary labels in the test session."""

    async def _make(
        name: str,
        *,
        kind: LabelKind = LabelKind.TAG,
        tenant_id: str = "store-1",
        description: str | None = None,
        aliases: list[str] | None = None,
    ) -> Label:
        label, _ = await LabelService(db_session).create_label(
            tenant_id, kind, name, description=description, aliases=aliases
        )
        return label

    return _make


@pytest.fixture
def make_rule(db_session: AsyncSession) -> MakeRule:
    """Factory fixture for rules in the test session."""

    async def _make(
        name: str,
        conditions: Any,
        *,
        tenant_id: str = "store-1",
        target_labels: list[str] | None = None,
        **definition: Any,
    ) -> Rule:
        definition.setdefault("action", "assign")
        definition.setdefault("kind", LabelKind.TAG)
        return await RuleService(db_session).create_rule(
            tenant_id,
            name,
            conditions=conditions,
            target_labels=target_labels or ["red"],
            **definition,
        )

    return _make
