import sqlite3
import unittest
from unittest.mock import MagicMock, patch

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlmodel import SQLModel, select

from src.core.database import atomic, engine, get_session, set_sqlite_pragma
from src.core.errors import Forbidden, TransactionFailure
from src.domain.directory.models import Company
from tests.base import BaseTest


class TestDatabaseCore(unittest.IsolatedAsyncioTestCase):
    """Test suite for database configuration and connection pragmas."""

    async def asyncSetUp(self) -> None:
        """Initializes the in-memory SQLite schema for testing."""
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def test_get_session_yields_active_session(self) -> None:
        session_gen = get_session()
        session = await anext(session_gen)

        result = await session.exec(text("SELECT 1"))
        self.assertEqual(result.first()[0], 1)

        try:
            await anext(session_gen)
        except StopAsyncIteration:
            pass

    async def test_foreign_keys_enforced(self) -> None:
        async with engine.connect() as conn:
            result = await conn.execute(text("PRAGMA foreign_keys"))
            self.assertEqual(result.scalar(), 1)

    @patch("src.core.database.logger.error")
    def test_set_sqlite_pragma_execution(self, mock_logger: MagicMock) -> None:
        mock_dbapi_connection = MagicMock()
        mock_cursor = MagicMock()
        mock_dbapi_connection.cursor.return_value = mock_cursor

        set_sqlite_pragma(mock_dbapi_connection, MagicMock())

        mock_cursor.execute.assert_any_call("PRAGMA journal_mode=WAL")
        mock_cursor.execute.assert_any_call("PRAGMA synchronous=NORMAL")
        mock_cursor.execute.assert_any_call("PRAGMA busy_timeout=30000")
        mock_cursor.execute.assert_any_call("PRAGMA foreign_keys=ON")
        mock_cursor.close.assert_called_once()
        mock_logger.assert_not_called()

    @patch("src.core.database.logger.error")
    def test_set_sqlite_pragma_exception_handling(self, mock_logger: MagicMock) -> None:
        mock_dbapi_connection = MagicMock()
        mock_cursor = MagicMock()
        mock_dbapi_connection.cursor.return_value = mock_cursor
        mock_cursor.execute.side_effect = sqlite3.OperationalError("database is locked")

        with self.assertRaises(sqlite3.OperationalError):
            set_sqlite_pragma(mock_dbapi_connection, MagicMock())

        mock_logger.assert_called_once()
        mock_cursor.close.assert_called_once()


class TestAtomic(BaseTest):
    """Test suite for the unit-of-work helper."""

    async def company_names(self) -> set[str]:
        async with self.test_session_maker() as fresh:
            return set((await fresh.exec(select(Company.c_name))).all())

    async def test_commits_on_success(self) -> None:
        async with atomic(self.session, "add company"):
            self.session.add(Company(c_name="Initech"))

        self.assertIn("Initech", await self.company_names())

    async def test_domain_error_rolls_back_and_propagates(self) -> None:
        with self.assertRaises(Forbidden):
            async with atomic(self.session, "add company"):
                self.session.add(Company(c_name="Initech"))
                await self.session.flush()
                raise Forbidden()

        self.assertNotIn("Initech", await self.company_names())

    async def test_database_error_becomes_transaction_failure(self) -> None:
        with self.assertRaises(TransactionFailure) as ctx:
            async with atomic(self.session, "add company"):
                self.session.add(Company(c_name="Initech"))
                await self.session.flush()
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        self.assertIsInstance(ctx.exception.__cause__, OperationalError)
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertNotIn("Initech", await self.company_names())


if __name__ == "__main__":
    unittest.main()
