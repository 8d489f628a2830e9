"""Tests for ContactRepository query construction.

The session factory yields an AsyncMock session that records the executed
statement, so the SQL is inspected without a database.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

from sqlalchemy.dialects import postgresql

from src.app.contacts.repository import ContactRepository


def _make_repository():
    session = AsyncMock()
    result = MagicMock()
    result.scalars.return_value.first.return_value = None
    session.execute.return_value = result

    async def session_factory():
        yield session

    return ContactRepository(session_factory), session


class TestOrganizationFragmentLookup:
    async def test_like_wildcards_are_escaped(self) -> None:
        repository, session = _make_repository()

        found = await repository.find_organization_by_name_fragment("50% off_sale")

        assert found is None
        stmt = session.execute.await_args.args[0]
        compiled = stmt.compile(dialect=postgresql.dialect())
        assert "ESCAPE '/'" in str(compiled)
        assert "50/% off/_sale" in compiled.params.values()
