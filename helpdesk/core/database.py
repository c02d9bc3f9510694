from __future__ import annotations

import asyncio
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

import aiomysql
import aiosqlite
from loguru import logger

from .config import get_settings

_PLACEHOLDER_PATTERN = re.compile(r"%s")


def _to_sqlite_value(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.isoformat(sep=" ")
    if isinstance(value, bool):
        return 1 if value else 0
    return value


def _prepare_sqlite(sql: str, params: tuple | list | None) -> tuple[str, tuple]:
    """Translate the ``%s`` paramstyle used by the repositories to SQLite's ``?``."""

    converted = _PLACEHOLDER_PATTERN.sub("?", sql)
    return converted, tuple(_to_sqlite_value(value) for value in (params or ()))


class Transaction:
    """Statements issued on one connection and committed together."""

    def __init__(self, conn: Any, *, sqlite: bool) -> None:
        self._conn = conn
        self._sqlite = sqlite

    async def execute(self, sql: str, params: tuple | None = None) -> None:
        if self._sqlite:
            statement, values = _prepare_sqlite(sql, params)
            await self._conn.execute(statement, values)
            return
        async with self._conn.cursor() as cursor:
            await cursor.execute(sql, params)

    async def execute_returning_lastrowid(self, sql: str, params: tuple | None = None) -> int:
        if self._sqlite:
            statement, values = _prepare_sqlite(sql, params)
            cursor = await self._conn.execute(statement, values)
            return cursor.lastrowid if cursor.lastrowid else 0
        async with self._conn.cursor() as cursor:
            await cursor.execute(sql, params)
            last_row_id = cursor.lastrowid
        return int(last_row_id) if last_row_id is not None else 0

    async def fetch_one(self, sql: str, params: tuple | None = None):
        if self._sqlite:
            statement, values = _prepare_sqlite(sql, params)
            cursor = await self._conn.execute(statement, values)
            row = await cursor.fetchone()
            return dict(row) if row else None
        async with self._conn.cursor(aiomysql.DictCursor) as cursor:
            await cursor.execute(sql, params)
            return await cursor.fetchone()


class Database:
    def __init__(self) -> None:
        self._pool: aiomysql.Pool | None = None
        self._sqlite_conn: aiosqlite.Connection | None = None
        self._sqlite_lock = asyncio.Lock()
        self._named_locks: dict[str, asyncio.Lock] = {}
        self._settings = get_settings()
        self._use_sqlite = self._should_use_sqlite()

    def _should_use_sqlite(self) -> bool:
        """Use SQLite when any of the MySQL connection settings is missing."""
        return not all([
            self._settings.database_host,
            self._settings.database_user,
            self._settings.database_name,
        ])

    def _get_sqlite_path(self) -> Path:
        if self._settings.sqlite_path:
            return self._settings.sqlite_path.expanduser()
        return Path(__file__).resolve().parent.parent.parent / "helpdesk.db"

    def is_sqlite(self) -> bool:
        return self._use_sqlite

    def _split_sql_statements(self, sql: str) -> list[str]:
        """Split a migration script into statements.

        Quote and comment state is tracked so semicolons inside string
        literals do not terminate a statement.
        """

        statements: list[str] = []
        statement_chars: list[str] = []
        in_single_quote = False
        in_double_quote = False
        i = 0
        length = len(sql)

        while i < length:
            char = sql[i]
            next_char = sql[i + 1] if i + 1 < length else ""

            if not in_single_quote and not in_double_quote:
                if char == "-" and next_char == "-":
                    i += 2
                    while i < length and sql[i] != "\n":
                        i += 1
                    continue
                if char == "/" and next_char == "*":
                    i += 2
                    while i + 1 < length and not (sql[i] == "*" and sql[i + 1] == "/"):
                        i += 1
                    i += 2
                    continue

            if char == "'" and not in_double_quote:
                statement_chars.append(char)
                if in_single_quote:
                    if next_char == "'":
                        statement_chars.append(next_char)
                        i += 2
                        continue
                    in_single_quote = False
                else:
                    in_single_quote = True
                i += 1
                continue

            if char == '"' and not in_single_quote:
                statement_chars.append(char)
                if in_double_quote:
                    if next_char == '"':
                        statement_chars.append(next_char)
                        i += 2
                        continue
                    in_double_quote = False
                else:
                    in_double_quote = True
                i += 1
                continue

            if char == ";" and not in_single_quote and not in_double_quote:
                statement = "".join(statement_chars).strip()
                if statement:
                    statements.append(statement)
                statement_chars = []
                i += 1
                continue

            statement_chars.append(char)
            i += 1

        remaining = "".join(statement_chars).strip()
        if remaining:
            statements.append(remaining)
        return statements

    async def connect(self) -> None:
        if self._pool or self._sqlite_conn:
            return

        if self._use_sqlite:
            db_path = self._get_sqlite_path()
            logger.info("Connecting to SQLite database at {path}", path=str(db_path))
            self._sqlite_conn = await aiosqlite.connect(str(db_path))
            self._sqlite_conn.row_factory = aiosqlite.Row
            await self._sqlite_conn.execute("PRAGMA foreign_keys = ON")
            await self._sqlite_conn.commit()
        else:
            logger.info("Connecting to MySQL at {host}", host=self._settings.database_host)
            self._pool = await aiomysql.create_pool(
                host=self._settings.database_host,
                user=self._settings.database_user,
                password=self._settings.database_password or "",
                db=self._settings.database_name,
                autocommit=True,
                minsize=1,
                maxsize=10,
                pool_recycle=600,
                init_command="SET time_zone = '+00:00'",
            )

    async def disconnect(self) -> None:
        if self._sqlite_conn:
            logger.info("Disconnecting from SQLite database")
            await self._sqlite_conn.close()
            self._sqlite_conn = None
            # In-process locks are tied to the event loop that used them.
            self._sqlite_lock = asyncio.Lock()
            self._named_locks.clear()
        elif self._pool:
            logger.info("Disconnecting from MySQL database")
            self._pool.close()
            await self._pool.wait_closed()
            self._pool = None

    def is_connected(self) -> bool:
        return self._pool is not None or self._sqlite_conn is not None

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Any]:
        if self._use_sqlite:
            if not self._sqlite_conn:
                raise RuntimeError("SQLite database not initialised")
            yield self._sqlite_conn
        else:
            if not self._pool:
                raise RuntimeError("Database pool not initialised")
            conn = await self._pool.acquire()
            try:
                yield conn
            finally:
                self._pool.release(conn)

    async def execute(self, sql: str, params: tuple | None = None) -> None:
        if self._use_sqlite:
            if not self._sqlite_conn:
                raise RuntimeError("SQLite database not initialised")
            statement, values = _prepare_sqlite(sql, params)
            async with self._sqlite_lock:
                await self._sqlite_conn.execute(statement, values)
                await self._sqlite_conn.commit()
        else:
            async with self.acquire() as conn:
                async with conn.cursor() as cursor:
                    await cursor.execute(sql, params)

    async def execute_returning_lastrowid(self, sql: str, params: tuple | None = None) -> int:
        if self._use_sqlite:
            if not self._sqlite_conn:
                raise RuntimeError("SQLite database not initialised")
            statement, values = _prepare_sqlite(sql, params)
            async with self._sqlite_lock:
                cursor = await self._sqlite_conn.execute(statement, values)
                await self._sqlite_conn.commit()
            return cursor.lastrowid if cursor.lastrowid else 0
        async with self.acquire() as conn:
            async with conn.cursor() as cursor:
                await cursor.execute(sql, params)
                last_row_id = cursor.lastrowid
        return int(last_row_id) if last_row_id is not None else 0

    async def fetch_one(self, sql: str, params: tuple | None = None):
        if self._use_sqlite:
            if not self._sqlite_conn:
                raise RuntimeError("SQLite database not initialised")
            statement, values = _prepare_sqlite(sql, params)
            cursor = await self._sqlite_conn.execute(statement, values)
            row = await cursor.fetchone()
            return dict(row) if row else None
        async with self.acquire() as conn:
            async with conn.cursor(aiomysql.DictCursor) as cursor:
                await cursor.execute(sql, params)
                return await cursor.fetchone()

    async def fetch_all(self, sql: str, params: tuple | None = None):
        if self._use_sqlite:
            if not self._sqlite_conn:
                raise RuntimeError("SQLite database not initialised")
            statement, values = _prepare_sqlite(sql, params)
            cursor = await self._sqlite_conn.execute(statement, values)
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]
        async with self.acquire() as conn:
            async with conn.cursor(aiomysql.DictCursor) as cursor:
                await cursor.execute(sql, params)
                return await cursor.fetchall()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """Run several statements on one connection, committing only if all succeed."""
        if self._use_sqlite:
            if not self._sqlite_conn:
                raise RuntimeError("SQLite database not initialised")
            async with self._sqlite_lock:
                try:
                    yield Transaction(self._sqlite_conn, sqlite=True)
                except BaseException:
                    await self._sqlite_conn.rollback()
                    raise
                await self._sqlite_conn.commit()
            return

        async with self.acquire() as conn:
            await conn.begin()
            try:
                yield Transaction(conn, sqlite=False)
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    def _get_migrations_dir(self) -> Path:
        return Path(__file__).resolve().parent.parent.parent / "migrations"

    async def _ensure_migrations_table(self, conn: Any) -> None:
        if self._use_sqlite:
            await conn.execute(
                "CREATE TABLE IF NOT EXISTS migrations (name VARCHAR(255) PRIMARY KEY)"
            )
            await conn.commit()
        else:
            async with conn.cursor() as cursor:
                await cursor.execute("SET sql_notes = 0")
                try:
                    await cursor.execute(
                        "CREATE TABLE IF NOT EXISTS migrations (name VARCHAR(255) PRIMARY KEY)"
                    )
                finally:
                    await cursor.execute("SET sql_notes = 1")

    def _adapt_sql_for_sqlite(self, sql: str) -> str:
        """Translate the MySQL DDL used by the migrations into SQLite DDL."""
        sql = re.sub(r'\s*ENGINE\s*=\s*\w+', '', sql, flags=re.IGNORECASE)
        sql = re.sub(r'\s*DEFAULT\s+CHARSET\s*=\s*\w+', '', sql, flags=re.IGNORECASE)
        sql = re.sub(r'\s*COLLATE\s*=\s*\w+', '', sql, flags=re.IGNORECASE)
        sql = re.sub(r'\bAUTO_INCREMENT\b', 'AUTOINCREMENT', sql, flags=re.IGNORECASE)
        sql = re.sub(r'\s*COMMENT\s+\'[^\']*\'', '', sql, flags=re.IGNORECASE)
        sql = re.sub(r'\bINT\b(\s+PRIMARY\s+KEY)', r'INTEGER\1', sql, flags=re.IGNORECASE)
        sql = re.sub(r'\bDATETIME\(\d\)', 'TEXT', sql, flags=re.IGNORECASE)
        sql = re.sub(r'\bDATETIME\b', 'TEXT', sql, flags=re.IGNORECASE)
        sql = re.sub(r'\b(MEDIUM|LONG)TEXT\b', 'TEXT', sql, flags=re.IGNORECASE)
        sql = re.sub(r'\bJSON\b', 'TEXT', sql, flags=re.IGNORECASE)
        return sql

    async def _apply_migration_file(self, conn: Any, path: Path) -> None:
        sql = path.read_text(encoding="utf-8")
        if self._use_sqlite:
            sql = self._adapt_sql_for_sqlite(sql)
        statements = self._split_sql_statements(sql)

        if self._use_sqlite:
            for statement in statements:
                try:
                    await conn.execute(statement)
                except Exception as e:
                    logger.warning(
                        "Migration statement failed (may be MySQL-specific): {error}. Statement: {stmt}",
                        error=str(e),
                        stmt=statement[:100],
                    )
            await conn.execute("INSERT INTO migrations (name) VALUES (?)", (path.name,))
            await conn.commit()
        else:
            async with conn.cursor() as cursor:
                for statement in statements:
                    await cursor.execute(statement)
                await cursor.execute(
                    "INSERT INTO migrations (name) VALUES (%s)",
                    (path.name,),
                )

    async def run_migrations(self) -> None:
        """Apply every pending ``migrations/*.sql`` file in name order."""
        if not self._use_sqlite:
            temp_conn = await aiomysql.connect(
                host=self._settings.database_host,
                user=self._settings.database_user,
                password=self._settings.database_password or "",
                autocommit=True,
                init_command="SET time_zone = '+00:00'",
            )
            async with temp_conn.cursor() as cursor:
                await cursor.execute("SET sql_notes = 0")
                try:
                    await cursor.execute(
                        f"CREATE DATABASE IF NOT EXISTS `{self._settings.database_name}`"
                    )
                finally:
                    await cursor.execute("SET sql_notes = 1")
            temp_conn.close()

        await self.connect()
        migrations_dir = self._get_migrations_dir()
        if not migrations_dir.exists():
            logger.warning("No migrations directory found at {path}", path=str(migrations_dir))
            return

        lock_name = f"{self._settings.database_name or 'helpdesk'}_migration_lock"
        lock_timeout = self._settings.migration_lock_timeout
        lock_acquired = False

        async with self.acquire() as conn:
            try:
                if not self._use_sqlite:
                    async with conn.cursor() as cursor:
                        await cursor.execute("SELECT GET_LOCK(%s, %s)", (lock_name, lock_timeout))
                        result = await cursor.fetchone()
                    lock_acquired = bool(result and result[0] == 1)
                    if not lock_acquired:
                        logger.error(
                            "Unable to obtain database migration lock {lock} within {timeout}s",
                            lock=lock_name,
                            timeout=lock_timeout,
                        )
                        raise RuntimeError("Could not obtain database migration lock")

                await self._ensure_migrations_table(conn)

                if self._use_sqlite:
                    cursor = await conn.execute("SELECT name FROM migrations")
                    applied_rows = await cursor.fetchall()
                    applied = {dict(row)["name"] for row in applied_rows}
                else:
                    async with conn.cursor(aiomysql.DictCursor) as cursor:
                        await cursor.execute("SELECT name FROM migrations")
                        applied_rows = await cursor.fetchall()
                    applied = {row["name"] for row in applied_rows}

                for path in sorted(migrations_dir.glob("*.sql")):
                    if path.name in applied:
                        continue
                    await self._apply_migration_file(conn, path)
                    logger.info("Applied migration {name}", name=path.name)
            finally:
                if lock_acquired:
                    async with conn.cursor() as cursor:
                        await cursor.execute("SELECT RELEASE_LOCK(%s)", (lock_name,))

    @asynccontextmanager
    async def acquire_lock(
        self,
        lock_name: str,
        timeout: int = 10,
    ) -> AsyncIterator[bool]:
        """Hold a named lock for the duration of the block.

        MySQL uses ``GET_LOCK()`` so the lock is shared by every worker
        process. SQLite runs in a single process, where an ``asyncio.Lock``
        per name gives the same exclusion between tasks.

        Yields ``True`` when the lock was obtained within ``timeout`` seconds.
        """
        if self._use_sqlite or not self._pool:
            lock = self._named_locks.setdefault(lock_name, asyncio.Lock())
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError:
                yield False
                return
            try:
                yield True
            finally:
                lock.release()
            return

        conn = await self._pool.acquire()
        lock_acquired = False
        try:
            async with conn.cursor() as cursor:
                await cursor.execute("SELECT GET_LOCK(%s, %s)", (lock_name, timeout))
                result = await cursor.fetchone()
                lock_acquired = bool(result and result[0] == 1)

            yield lock_acquired
        finally:
            if lock_acquired:
                try:
                    async with conn.cursor() as cursor:
                        await cursor.execute("SELECT RELEASE_LOCK(%s)", (lock_name,))
                except Exception as exc:
                    # Released by the server when the connection closes.
                    logger.warning(
                        "Failed to explicitly release lock {lock}: {error}",
                        lock=lock_name,
                        error=str(exc),
                    )
            self._pool.release(conn)


db = Database()
